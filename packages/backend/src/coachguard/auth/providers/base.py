"""Credential provider base — the identity issuer the access layer consumes.

Learn: CoachGuard doesn't own identities. Something else signs people up,
checks their passwords, and issues/refreshes/revokes tokens — Supabase in
the hosted deployment, the built-in LocalCredentialProvider otherwise.
Both implement this interface; nothing else in the codebase knows which
one is configured.

Failure contract (every implementation must honor it):
- The provider answered "no" (bad password, duplicate email, revoked or
  unknown refresh token) → raise CredentialRejected
- The provider couldn't answer (network error, timeout, 5xx, storage
  down) → raise UpstreamUnavailable

Callers fail closed on both.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import ClassVar, Optional

from coachguard.errors import CredentialRejected


@dataclass(frozen=True)
class Identity:
    """The externally managed principal. Immutable from our side."""

    id: uuid.UUID
    email: str
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class TokenPair:
    """Access + refresh token as issued by the provider."""

    access_token: str
    refresh_token: str


class CredentialProvider(ABC):
    """Abstract identity issuer."""

    name: ClassVar[str]

    @abstractmethod
    async def sign_up(self, email: str, password: str, metadata: dict) -> Identity:
        """Create a new identity. Duplicate email → CredentialRejected."""

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> TokenPair:
        """Exchange email + password for a fresh token pair."""

    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair.

        Providers may rotate: the old refresh token is dead afterwards.
        """

    @abstractmethod
    async def revoke(self, token: str) -> None:
        """Invalidate a token (sign-out)."""

    @abstractmethod
    async def delete_identity(self, identity_id: uuid.UUID) -> None:
        """Permanently remove an identity. Unknown ids are a no-op."""

    async def exchange_code(
        self, code: str, code_verifier: Optional[str] = None
    ) -> TokenPair:
        """Redeem a one-time authorization code (email link, OAuth) for a pair.

        Providers without a redirect flow reject every code.
        """
        raise CredentialRejected("Authorization codes are not supported")

    async def close(self) -> None:
        """Release network clients / pools. Called at app shutdown."""
