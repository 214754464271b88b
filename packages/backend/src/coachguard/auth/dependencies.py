"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers to turn the inbound
request into a resolved session, a profile and an authorization principal.

    get_resolution            → SessionResolution (always; never raises)
    get_current_user_optional → CurrentUser | None (provisions the profile)
    get_current_user          → CurrentUser, or AuthRequired (401)
    require_admin_user        → CurrentUser with the admin role, or Forbidden

The resolution is computed once per request and cached on request.state,
so a route that depends on several of these still makes at most one
refresh call. Cookie writes the resolver asks for are applied to the
dependency's Response; the error handlers re-apply them when the route
raises instead of returning.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from coachguard.auth.providers.base import CredentialProvider
from coachguard.auth.session import SessionResolution, SessionResolver, Session
from coachguard.auth.transport import apply_resolution, read_tokens
from coachguard.db.engine import get_db
from coachguard.db.models import Profile
from coachguard.errors import AuthRequired
from coachguard.policy.ownership import require_admin
from coachguard.policy.roles import Principal, Role
from coachguard.services.profile_store import role_of
from coachguard.services.provisioning import ensure_profile


@dataclass
class CurrentUser:
    """The authenticated caller: session + profile.

    Learn: role comes from the profile row, never from the token, so a
    role change takes effect on the next request rather than at the next
    sign-in.
    """

    session: Session
    profile: Profile

    @property
    def identity_id(self):
        return self.session.identity_id

    @property
    def role(self) -> Role:
        return role_of(self.profile)

    @property
    def principal(self) -> Principal:
        return Principal(identity_id=self.session.identity_id, role=self.role)


def get_session_resolver(request: Request) -> SessionResolver:
    return request.app.state.session_resolver


def get_credential_provider(request: Request) -> CredentialProvider:
    return request.app.state.credential_provider


async def resolve_request(
    request: Request, resolver: SessionResolver
) -> SessionResolution:
    """Resolve once per request; later calls reuse the cached result."""
    cached = getattr(request.state, "session_resolution", None)
    if cached is not None:
        return cached
    access_token, refresh_token = read_tokens(request)
    resolution = await resolver.resolve(access_token, refresh_token)
    request.state.session_resolution = resolution
    return resolution


async def get_resolution(
    request: Request,
    response: Response,
    resolver: SessionResolver = Depends(get_session_resolver),
) -> SessionResolution:
    resolution = await resolve_request(request, resolver)
    apply_resolution(response, resolution)
    return resolution


async def get_current_user_optional(
    resolution: SessionResolution = Depends(get_resolution),
    db: AsyncSession = Depends(get_db),
) -> Optional[CurrentUser]:
    """Current user, or None without a valid session.

    Learn: This is the "soft" auth dependency. Used for endpoints that
    work both authenticated and unauthenticated. For mandatory auth,
    use get_current_user instead.
    """
    if not resolution.is_valid:
        return None
    profile = await ensure_profile(db, resolution.session.identity_id)
    return CurrentUser(session=resolution.session, profile=profile)


async def get_current_user(
    user: Optional[CurrentUser] = Depends(get_current_user_optional),
    resolution: SessionResolution = Depends(get_resolution),
) -> CurrentUser:
    """Current user (required — AuthRequired if no valid session)."""
    if user is None:
        raise AuthRequired(reason=resolution.reason)
    return user


async def require_admin_user(
    user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    require_admin(user.principal)
    return user
