"""Auth API — sign-up, sign-in, refresh, sign-out.

Learn: These routes are the only callers of the credential provider
besides the session resolver:
- POST /auth/signup  → create identity, provision profile, try to sign in
- POST /auth/login   → email/password → token pair (cookies + body)
- POST /auth/refresh → refresh token → new pair (single-flighted)
- POST /auth/logout  → revoke upstream (best effort), clear cookies

signup and login are throttled by the "auth" rate-limit class in the
middleware, before they run. Every provider rejection, whatever its
cause (unknown email, wrong password, duplicate sign-up), leaves here as
the same InvalidCredentials; the real reason goes to the log.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from coachguard.auth.dependencies import get_credential_provider, get_session_resolver
from coachguard.auth.jwt import TokenError
from coachguard.auth.providers.base import CredentialProvider, TokenPair
from coachguard.auth.session import Session, SessionResolver
from coachguard.auth.transport import (
    apply_resolution,
    clear_tokens,
    persist_tokens,
    read_tokens,
)
from coachguard.db.engine import get_db
from coachguard.db.models import Profile
from coachguard.errors import (
    AuthRequired,
    CredentialRejected,
    InvalidCredentials,
    UpstreamUnavailable,
)
from coachguard.schemas.auth import (
    AuthResponse,
    LoginRequest,
    RefreshRequest,
    SignupRequest,
    UserSummary,
)
from coachguard.services.provisioning import ensure_profile

logger = structlog.get_logger()

router = APIRouter(prefix="/auth")


def _summary(profile: Profile, email: Optional[str]) -> UserSummary:
    return UserSummary(
        id=profile.id,
        email=email,
        first_name=profile.first_name,
        last_name=profile.last_name,
        role=profile.role,
    )


def _adopt(resolver: SessionResolver, pair: TokenPair) -> Session:
    try:
        return resolver.adopt(pair)
    except TokenError as e:
        # Provider and resolver disagree on keys or audience: a deployment error
        logger.error("auth.unverifiable_provider_token", error=str(e))
        raise UpstreamUnavailable("Provider issued a token we cannot verify")


def _signed_in(session: Session, profile: Profile) -> AuthResponse:
    return AuthResponse(
        user=_summary(profile, session.email),
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        expires_at=session.expires_at,
    )


# ─── Sign-up ─────────────────────────────────────────────


@router.post("/signup", response_model=AuthResponse, status_code=201)
async def signup(
    body: SignupRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    provider: CredentialProvider = Depends(get_credential_provider),
    resolver: SessionResolver = Depends(get_session_resolver),
):
    """Create an identity and its (empty) profile, then sign in if allowed."""
    try:
        identity = await provider.sign_up(
            body.email,
            body.password,
            {"first_name": body.first_name, "last_name": body.last_name},
        )
    except CredentialRejected as e:
        logger.info("auth.signup_rejected", email=body.email, reason=str(e))
        raise InvalidCredentials()

    profile = await ensure_profile(db, identity.id)
    logger.info("auth.signup", identity_id=str(identity.id), provider=provider.name)

    try:
        pair = await provider.sign_in(body.email, body.password)
    except CredentialRejected as e:
        # Typically "email not confirmed": the account exists, no session yet
        logger.info(
            "auth.signup_pending_verification",
            identity_id=str(identity.id),
            reason=str(e),
        )
        return AuthResponse(
            user=_summary(profile, identity.email),
            requires_email_verification=True,
        )

    session = _adopt(resolver, pair)
    persist_tokens(response, pair)
    return _signed_in(session, profile)


# ─── Sign-in ─────────────────────────────────────────────


@router.post("/login", response_model=AuthResponse)
async def login(
    body: LoginRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    provider: CredentialProvider = Depends(get_credential_provider),
    resolver: SessionResolver = Depends(get_session_resolver),
):
    """Email + password → token pair, set as cookies and returned."""
    try:
        pair = await provider.sign_in(body.email, body.password)
    except CredentialRejected as e:
        logger.info("auth.login_failed", email=body.email, reason=str(e))
        raise InvalidCredentials()

    session = _adopt(resolver, pair)
    profile = await ensure_profile(db, session.identity_id)
    persist_tokens(response, pair)
    logger.info("auth.login", identity_id=str(session.identity_id))
    return _signed_in(session, profile)


# ─── Refresh ────────────────────────────────────────────


@router.post("/refresh", response_model=AuthResponse)
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    db: AsyncSession = Depends(get_db),
    resolver: SessionResolver = Depends(get_session_resolver),
):
    """Exchange a refresh token for a new pair.

    Goes through the resolver's single-flight, so an explicit refresh
    racing an implicit one (another tab's page load) doesn't burn the
    rotated token twice.
    """
    refresh_token = body.refresh_token if body else None
    if not refresh_token:
        _, refresh_token = read_tokens(request)
    if not refresh_token:
        raise AuthRequired("No refresh token presented")

    resolution = await resolver.refresh(refresh_token)
    request.state.session_resolution = resolution
    apply_resolution(response, resolution)

    if not resolution.is_valid:
        if resolution.reason == "upstream_unavailable":
            raise UpstreamUnavailable("Refresh could not reach the provider")
        raise AuthRequired(reason=resolution.reason)

    session = resolution.session
    profile = await ensure_profile(db, session.identity_id)
    return _signed_in(session, profile)


# ─── Sign-out ───────────────────────────────────────────


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    provider: CredentialProvider = Depends(get_credential_provider),
    resolver: SessionResolver = Depends(get_session_resolver),
):
    """Revoke upstream and clear cookies. Succeeds without a session too."""
    access_token, refresh_token = read_tokens(request)
    if body and body.refresh_token:
        refresh_token = body.refresh_token
    if refresh_token:
        resolver.discard_refresh(refresh_token)

    for kind, token in (("refresh", refresh_token), ("access", access_token)):
        if not token:
            continue
        try:
            await provider.revoke(token)
        except (CredentialRejected, UpstreamUnavailable) as e:
            # Sign-out must still clear the client; a token we couldn't
            # revoke dies at its own expiry.
            logger.info("auth.revoke_failed", token_kind=kind, error=str(e))

    clear_tokens(response)
    return {"signed_out": True}
