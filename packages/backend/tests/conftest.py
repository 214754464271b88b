"""Test fixtures — a throwaway SQLite database and a scripted credential provider.

Learn: Testing pattern for async SQLAlchemy + FastAPI + an external identity issuer:

1. Each test gets its own SQLite file (aiosqlite) with the schema created
   from Base.metadata — no shared state, nothing to roll back.
2. The app is built per test with create_app(provider=..., session_factory=...),
   which overrides get_db so every request talks to that file.
3. FakeCredentialProvider stands in for Supabase / the local provider. It
   issues real signed JWTs (so the session resolver verifies them for
   real), records every call, and lets a test script failures and delays.

Environment is set before anything from coachguard is imported: settings
are read once, at import.
"""

import asyncio
import os
import uuid
from datetime import datetime, timezone

os.environ["COACHGUARD_ENVIRONMENT"] = "test"
os.environ["COACHGUARD_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["COACHGUARD_JWT_SECRET"] = "test-secret-0123456789abcdef0123456789abcdef"
os.environ["COACHGUARD_BCRYPT_ROUNDS"] = "4"
os.environ["COACHGUARD_RATE_LIMIT_BACKEND"] = "memory"

import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from coachguard.auth.jwt import (  # noqa: E402
    TokenError,
    create_access_token,
    create_refresh_token,
    read_claims,
)
from coachguard.auth.providers.base import (  # noqa: E402
    CredentialProvider,
    Identity,
    TokenPair,
)
from coachguard.config import settings  # noqa: E402
from coachguard.db.models import Base, Profile  # noqa: E402
from coachguard.errors import CredentialRejected, UpstreamUnavailable  # noqa: E402
from coachguard.main import create_app  # noqa: E402
from coachguard.ratelimit import MemoryBucketStore, RateLimiter  # noqa: E402


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def issue_pair(identity_id: uuid.UUID, email: str = "user@example.com", now=None, **kw) -> TokenPair:
    """A signed token pair as a provider would issue it."""
    now = now or utcnow()
    return TokenPair(
        access_token=create_access_token(str(identity_id), email=email, now=now, **kw),
        refresh_token=create_refresh_token(str(identity_id), now=now),
    )


def bearer(pair: TokenPair) -> dict:
    """Header-based token transport for API clients."""
    return {
        "Authorization": f"Bearer {pair.access_token}",
        "X-Refresh-Token": pair.refresh_token,
    }


# ═══════════════════════════════════════════════════════════
# Scripted credential provider
# ═══════════════════════════════════════════════════════════


class FakeCredentialProvider(CredentialProvider):
    """In-memory identity issuer with knobs for failure and latency."""

    name = "fake"

    def __init__(self):
        self.accounts: dict[str, tuple[uuid.UUID, str]] = {}
        self.calls: list[tuple[str, str]] = []
        self.revoked: list[str] = []
        self.deleted: list[uuid.UUID] = []
        self.codes: dict[str, tuple[uuid.UUID, str]] = {}
        self.clock = utcnow
        # Knobs
        self.require_verification = False
        self.refresh_delay = 0.0
        self.refresh_error: Exception | None = None

    @property
    def refresh_calls(self) -> int:
        return sum(1 for op, _ in self.calls if op == "refresh")

    def register(self, email: str, password: str) -> uuid.UUID:
        identity_id = uuid.uuid4()
        self.accounts[email] = (identity_id, password)
        return identity_id

    async def sign_up(self, email, password, metadata):
        self.calls.append(("sign_up", email))
        if email in self.accounts:
            raise CredentialRejected("User already registered", status_code=422)
        return Identity(id=self.register(email, password), email=email, metadata=metadata)

    async def sign_in(self, email, password):
        self.calls.append(("sign_in", email))
        account = self.accounts.get(email)
        if account is None or account[1] != password:
            raise CredentialRejected("Invalid login credentials", status_code=400)
        if self.require_verification:
            raise CredentialRejected("Email not confirmed", status_code=400)
        return issue_pair(account[0], email, now=self.clock())

    async def refresh(self, refresh_token):
        self.calls.append(("refresh", refresh_token))
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        try:
            subject = read_claims(refresh_token)["sub"]
        except (TokenError, KeyError):
            raise CredentialRejected("Invalid refresh token", status_code=400)
        return issue_pair(uuid.UUID(subject), now=self.clock())

    def issue_code(self, identity_id: uuid.UUID, verifier: str = "pkce-verifier") -> str:
        """A one-time authorization code, as an email link would carry."""
        code = uuid.uuid4().hex
        self.codes[code] = (identity_id, verifier)
        return code

    async def exchange_code(self, code, code_verifier=None):
        self.calls.append(("exchange_code", code))
        identity_id, verifier = self.codes.pop(code, (None, None))
        if identity_id is None or verifier != code_verifier:
            raise CredentialRejected("invalid flow state", status_code=400)
        return issue_pair(identity_id, now=self.clock())

    async def revoke(self, token):
        self.calls.append(("revoke", token))
        self.revoked.append(token)

    async def delete_identity(self, identity_id):
        self.calls.append(("delete_identity", str(identity_id)))
        self.deleted.append(identity_id)
        self.accounts = {e: a for e, a in self.accounts.items() if a[0] != identity_id}


class UnreachableProvider(FakeCredentialProvider):
    """Every call times out."""

    async def sign_in(self, email, password):
        raise UpstreamUnavailable("connect timeout")

    async def exchange_code(self, code, code_verifier=None):
        raise UpstreamUnavailable("connect timeout")

    async def refresh(self, refresh_token):
        self.calls.append(("refresh", refresh_token))
        raise UpstreamUnavailable("connect timeout")


# ═══════════════════════════════════════════════════════════
# Database
# ═══════════════════════════════════════════════════════════


@pytest_asyncio.fixture()
async def engine(tmp_path):
    """Fresh SQLite file per test with the full schema."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'coachguard.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ═══════════════════════════════════════════════════════════
# App + clients
# ═══════════════════════════════════════════════════════════


@pytest_asyncio.fixture()
async def provider():
    return FakeCredentialProvider()


@pytest_asyncio.fixture()
async def app(provider, session_factory):
    limiter = RateLimiter.from_settings(settings, MemoryBucketStore())
    return create_app(provider=provider, session_factory=session_factory, rate_limiter=limiter)


@pytest_asyncio.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture()
async def make_user(provider, session_factory):
    """Factory: register an identity with the provider and return its token pair.

    role="admin" also provisions the profile with the admin role.
    """

    async def _make(email: str | None = None, role: str = "user"):
        email = email or f"user-{uuid.uuid4().hex[:8]}@example.com"
        identity_id = provider.register(email, "correct-horse")
        if role != "user":
            async with session_factory() as db:
                db.add(Profile(id=identity_id, role=role))
                await db.commit()
        return identity_id, issue_pair(identity_id, email)

    return _make
