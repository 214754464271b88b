"""Profile store — reads and the few permitted mutations of profiles.

Learn: Who may change what:
- the owning identity: first_name / last_name only
- an admin session: role only
- nobody: id, created_at (deletion happens only in the identity purge)

The route decides *who* is calling; this class enforces *which fields*
each kind of caller can touch by exposing one method per mutation.
"""

import uuid
from typing import Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from coachguard.db.models import Profile
from coachguard.policy.roles import Role

logger = structlog.get_logger()


class ProfileStore:
    """Business logic for profiles."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, identity_id: uuid.UUID) -> Optional[Profile]:
        return await self.db.get(Profile, identity_id)

    async def list(self, limit: int = 50, offset: int = 0) -> list[Profile]:
        result = await self.db.execute(
            select(Profile)
            .order_by(Profile.created_at, Profile.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def update_names(
        self,
        identity_id: uuid.UUID,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Optional[Profile]:
        profile = await self.get(identity_id)
        if profile is None:
            return None
        if first_name is not None:
            profile.first_name = first_name
        if last_name is not None:
            profile.last_name = last_name
        await self.db.commit()
        await self.db.refresh(profile)
        return profile

    async def set_role(self, identity_id: uuid.UUID, role: Role) -> Optional[Profile]:
        profile = await self.get(identity_id)
        if profile is None:
            return None
        previous = profile.role
        profile.role = role.value
        await self.db.commit()
        await self.db.refresh(profile)
        logger.info(
            "profile.role_changed",
            identity_id=str(identity_id),
            previous=previous,
            role=role.value,
        )
        return profile

    async def delete(self, identity_id: uuid.UUID) -> bool:
        """Remove the row. Only the identity purge calls this; no commit."""
        result = await self.db.execute(delete(Profile).where(Profile.id == identity_id))
        return result.rowcount > 0


def role_of(profile: Profile) -> Role:
    """The one way a stored role string becomes a Role."""
    return Role.parse(profile.role)
