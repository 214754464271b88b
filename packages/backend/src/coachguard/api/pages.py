"""Page routes and the route-guard gate.

Learn: Rendering lives elsewhere; these handlers return small JSON
placeholders. What matters is the router-level dependency, route_gate,
which runs before any page handler:

    resolve session → (valid) ensure_profile → role → GuardState
                    → RouteGuard.decide(path, state)
                    → allowed: continue   denied: 307 to redirect_to

The gate is advisory — it shapes navigation. Data routes don't rely on
it; they go through get_current_user and the ownership policy.

/auth/callback sits outside the gate: the browser arrives there from the
credential provider with a one-time code and no session yet.
"""

from typing import Optional
from urllib.parse import urlsplit

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from coachguard.auth.dependencies import (
    get_credential_provider,
    get_session_resolver,
    resolve_request,
)
from coachguard.auth.jwt import TokenError
from coachguard.auth.providers.base import CredentialProvider
from coachguard.auth.session import SessionResolver
from coachguard.auth.transport import apply_resolution, persist_tokens
from coachguard.config import settings
from coachguard.db.engine import get_db
from coachguard.errors import (
    CredentialRejected,
    NavigationRedirect,
    UpstreamUnavailable,
)
from coachguard.policy.roles import Role
from coachguard.policy.route_guard import GuardDecision, RouteGuard, state_for
from coachguard.services.profile_store import role_of
from coachguard.services.provisioning import ensure_profile

logger = structlog.get_logger()


def get_route_guard(request: Request) -> RouteGuard:
    return request.app.state.route_guard


async def route_gate(
    request: Request,
    response: Response,
    resolver: SessionResolver = Depends(get_session_resolver),
    guard: RouteGuard = Depends(get_route_guard),
    db: AsyncSession = Depends(get_db),
) -> GuardDecision:
    resolution = await resolve_request(request, resolver)
    apply_resolution(response, resolution)

    role: Optional[Role] = None
    if resolution.is_valid:
        profile = await ensure_profile(db, resolution.session.identity_id)
        role = role_of(profile)

    decision = guard.decide(
        request.url.path, state_for(role), reason=resolution.reason
    )
    if not decision.allowed:
        raise NavigationRedirect(decision.redirect_to)
    request.state.guard_decision = decision
    return decision


router = APIRouter(dependencies=[Depends(route_gate)])


def _page(name: str, request: Request) -> dict:
    decision: GuardDecision = request.state.guard_decision
    return {"page": name, "path": request.url.path, "state": decision.state.value}


# ─── Public ─────────────────────────────────────────────

@router.get("/")
async def home(request: Request):
    return _page("home", request)


@router.get("/auth/login")
async def sign_in_page(
    request: Request,
    redirect_to: Optional[str] = Query(None, alias="redirectTo"),
    message: Optional[str] = Query(None),
):
    page = _page("sign_in", request)
    page.update({"redirect_to": redirect_to, "message": message})
    return page


# ─── Protected (user) ───────────────────────────────────

@router.get("/learn")
@router.get("/learn/{rest:path}")
async def learn_page(request: Request):
    return _page("learn", request)


@router.get("/chat")
@router.get("/chat/{rest:path}")
async def chat_page(request: Request):
    return _page("chat", request)


# ─── Protected (admin) ──────────────────────────────────

@router.get("/admin")
@router.get("/admin/{rest:path}")
async def admin_page(request: Request):
    return _page("admin", request)


# ─── Provider callback ──────────────────────────────────

callback_router = APIRouter()


def safe_return_path(target: Optional[str], default: str) -> str:
    """Only same-origin absolute paths; anything else falls back to default."""
    if not target or not target.startswith("/") or target.startswith("//"):
        return default
    if "\\" in target or any(ord(c) < 0x20 for c in target):
        return default
    parts = urlsplit(target)
    if parts.scheme or parts.netloc:
        return default
    return target


@callback_router.get("/auth/callback")
async def auth_callback(
    request: Request,
    code: Optional[str] = Query(None),
    next_path: Optional[str] = Query(None, alias="next"),
    db: AsyncSession = Depends(get_db),
    provider: CredentialProvider = Depends(get_credential_provider),
    resolver: SessionResolver = Depends(get_session_resolver),
    guard: RouteGuard = Depends(get_route_guard),
):
    """Finish an email-link or OAuth sign-in.

    Learn: The provider sends the browser here with ?code=. The code and
    the PKCE verifier cookie are exchanged for a token pair, the profile
    is provisioned, and the browser continues to ?next= (landing page by
    default) with the session cookies set. Any failure lands on the
    sign-in page with a message instead.
    """
    target = safe_return_path(next_path, guard.landing_path)
    failed = NavigationRedirect(guard.sign_in_url(target, "callback_failed"))
    if not code:
        logger.info("auth.callback_without_code")
        raise failed

    verifier = request.cookies.get(settings.code_verifier_cookie_name)
    try:
        pair = await provider.exchange_code(code, verifier)
        session = resolver.adopt(pair)
    except CredentialRejected as e:
        logger.info("auth.callback_rejected", reason=str(e))
        raise failed
    except UpstreamUnavailable as e:
        logger.warning("auth.callback_upstream_unavailable", error=e.detail)
        raise failed
    except TokenError as e:
        logger.error("auth.callback_token_invalid", error=str(e))
        raise failed

    await ensure_profile(db, session.identity_id)
    logger.info("auth.callback", identity_id=str(session.identity_id))

    response = RedirectResponse(target, status_code=307)
    persist_tokens(response, pair)
    response.delete_cookie(settings.code_verifier_cookie_name, path="/")
    return response
