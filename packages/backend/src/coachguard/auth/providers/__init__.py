"""Credential provider registry.

Learn: The provider is chosen by COACHGUARD_CREDENTIAL_PROVIDER and built
once at startup:
    provider = build_provider(settings, async_session_factory)

Only the SessionResolver and the auth routes ever call it.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coachguard.auth.providers.base import CredentialProvider, Identity, TokenPair
from coachguard.auth.providers.local import LocalCredentialProvider
from coachguard.auth.providers.supabase import SupabaseCredentialProvider
from coachguard.config import Settings

__all__ = [
    "CredentialProvider",
    "Identity",
    "LocalCredentialProvider",
    "SupabaseCredentialProvider",
    "TokenPair",
    "build_provider",
]


def build_provider(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> CredentialProvider:
    """Construct the configured provider.

    Raises ValueError for an unknown provider name.
    """
    if settings.credential_provider == "local":
        return LocalCredentialProvider(session_factory)
    if settings.credential_provider == "supabase":
        return SupabaseCredentialProvider(
            base_url=settings.supabase_url,
            anon_key=settings.supabase_anon_key,
            service_role_key=settings.supabase_service_role_key,
            timeout=settings.upstream_timeout_seconds,
        )
    raise ValueError(f"Unknown credential provider '{settings.credential_provider}'")
