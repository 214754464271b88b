"""Profile provisioning — exactly one profile per identity, created lazily.

Learn: Identities are created upstream (the credential provider); our
profile row appears the first time an authenticated request needs it —
sign-in, sign-up, the /session endpoint, or the first route-guard pass.
Several of those can race for the same brand-new identity (two tabs, a
double-clicked button), so creation is an INSERT ... ON CONFLICT DO
NOTHING keyed on the identity id:

    read ── found ──────────────────────────────► return it
      └──── missing ─► insert-or-ignore ─► read ─► return it

Whoever loses the race inserts nothing, then reads the winner's row.
No error, no duplicate, and an existing row's names/role are never
overwritten. Safe to call redundantly.
"""

import uuid

import structlog
from sqlalchemy import insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coachguard.db.models import Profile, utcnow
from coachguard.policy.roles import Role

logger = structlog.get_logger()


async def ensure_profile(db: AsyncSession, identity_id: uuid.UUID) -> Profile:
    """Return the identity's profile, creating an empty User profile if absent."""
    profile = await db.get(Profile, identity_id)
    if profile is not None:
        return profile

    now = utcnow()
    values = {
        "id": identity_id,
        "first_name": "",
        "last_name": "",
        "role": Role.USER.value,
        "created_at": now,
        "updated_at": now,
    }

    dialect = db.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        dialect_insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = (
            dialect_insert(Profile)
            .values(**values)
            .on_conflict_do_nothing(index_elements=[Profile.id])
        )
        result = await db.execute(stmt)
        inserted = result.rowcount == 1
        await db.commit()
    else:
        # No portable upsert. Fall back to insert and treat a duplicate
        # key as "someone else won".
        try:
            async with db.begin_nested():
                await db.execute(insert(Profile).values(**values))
            inserted = True
        except IntegrityError:
            inserted = False
        await db.commit()

    profile = await db.get(Profile, identity_id, populate_existing=True)
    if profile is None:
        raise RuntimeError(f"Profile for {identity_id} vanished after provisioning")

    if inserted:
        logger.info("profile.provisioned", identity_id=str(identity_id))
    else:
        logger.info("profile.provision_race_lost", identity_id=str(identity_id))
    return profile
