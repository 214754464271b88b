"""Built-in credential provider — bcrypt passwords + signed JWTs.

Learn: Used when no external identity service is configured (local dev,
tests, small single-node deployments). Identities live in the
"identities" table; revoked token ids in "revoked_tokens".

Refresh rotates: each successful refresh revokes the presented refresh
token's jti and issues a brand-new pair. A replayed (already rotated)
refresh token is rejected — which is also why the session resolver must
single-flight refreshes per identity.
"""

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coachguard.auth.jwt import (
    TokenError,
    create_access_token,
    create_refresh_token,
    read_claims,
    verify_token,
)
from coachguard.auth.password import (
    burn_verification,
    hash_password,
    is_legacy_hash,
    verify_password,
)
from coachguard.auth.providers.base import CredentialProvider, Identity, TokenPair
from coachguard.db.models import LocalIdentity, RevokedToken
from coachguard.errors import CredentialRejected, UpstreamUnavailable

logger = structlog.get_logger()


class LocalCredentialProvider(CredentialProvider):
    """Identity issuer backed by our own database."""

    name = "local"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def sign_up(self, email: str, password: str, metadata: dict) -> Identity:
        try:
            async with self._session_factory() as db:
                existing = await db.execute(
                    select(LocalIdentity.id).where(LocalIdentity.email == email)
                )
                if existing.first() is not None:
                    raise CredentialRejected("Email already registered")

                identity = Identity(id=uuid.uuid4(), email=email, metadata=dict(metadata))
                row = LocalIdentity(
                    id=identity.id,
                    email=email,
                    password_hash=hash_password(password),
                    meta=dict(metadata),
                )
                db.add(row)
                try:
                    await db.commit()
                except IntegrityError:
                    # Lost a race with a concurrent sign-up for the same email
                    await db.rollback()
                    raise CredentialRejected("Email already registered")

                return identity
        except OperationalError as e:
            raise UpstreamUnavailable("Identity store unavailable", error=str(e)) from e

    async def sign_in(self, email: str, password: str) -> TokenPair:
        try:
            async with self._session_factory() as db:
                q = select(LocalIdentity).where(LocalIdentity.email == email)
                row = (await db.execute(q)).scalars().first()

                if row is None:
                    burn_verification(password)
                    raise CredentialRejected("Unknown email")

                if not verify_password(password, row.password_hash):
                    raise CredentialRejected("Wrong password")

                identity_id, row_email = row.id, row.email

                # Auto-upgrade legacy SHA-256 hashes to bcrypt on successful sign-in
                if is_legacy_hash(row.password_hash):
                    row.password_hash = hash_password(password)
                    await db.commit()
                    logger.info("local_provider.hash_upgraded", identity_id=str(identity_id))

                return self._issue(identity_id, row_email)
        except OperationalError as e:
            raise UpstreamUnavailable("Identity store unavailable", error=str(e)) from e

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            payload = verify_token(refresh_token, expected_type="refresh")
        except TokenError as e:
            raise CredentialRejected(str(e))

        try:
            async with self._session_factory() as db:
                if await db.get(RevokedToken, payload["jti"]) is not None:
                    logger.warning(
                        "local_provider.refresh_replayed", identity_id=payload["sub"]
                    )
                    raise CredentialRejected("Refresh token revoked")

                row = await db.get(LocalIdentity, uuid.UUID(payload["sub"]))
                if row is None:
                    raise CredentialRejected("Identity no longer exists")

                identity_id, row_email = row.id, row.email
                db.add(RevokedToken(jti=payload["jti"], identity_id=identity_id))
                try:
                    await db.commit()
                except IntegrityError:
                    # Someone else rotated this exact token first
                    await db.rollback()
                    raise CredentialRejected("Refresh token revoked")

                return self._issue(identity_id, row_email)
        except OperationalError as e:
            raise UpstreamUnavailable("Identity store unavailable", error=str(e)) from e

    async def revoke(self, token: str) -> None:
        try:
            payload = read_claims(token)
        except TokenError as e:
            raise CredentialRejected(str(e))
        jti = payload.get("jti")
        if not jti:
            raise CredentialRejected("Token has no jti")

        try:
            async with self._session_factory() as db:
                if await db.get(RevokedToken, jti) is None:
                    db.add(RevokedToken(jti=jti, identity_id=uuid.UUID(payload["sub"])))
                    try:
                        await db.commit()
                    except IntegrityError:
                        # Revoked concurrently; already in the state we want
                        await db.rollback()
        except OperationalError as e:
            raise UpstreamUnavailable("Identity store unavailable", error=str(e)) from e

    async def delete_identity(self, identity_id: uuid.UUID) -> None:
        try:
            async with self._session_factory() as db:
                await db.execute(
                    delete(LocalIdentity).where(LocalIdentity.id == identity_id)
                )
                await db.commit()
        except OperationalError as e:
            raise UpstreamUnavailable("Identity store unavailable", error=str(e)) from e

    def _issue(self, identity_id: uuid.UUID, email: str) -> TokenPair:
        now = datetime.now(timezone.utc)
        return TokenPair(
            access_token=create_access_token(str(identity_id), email=email, now=now),
            refresh_token=create_refresh_token(str(identity_id), now=now),
        )
