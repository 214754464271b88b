"""Token transport — where the token pair lives on the wire.

Learn: Browsers carry the pair in two HttpOnly cookies; API clients send
    Authorization: Bearer <access>
    X-Refresh-Token: <refresh>
Headers win over cookies when both are present.

The resolver never touches the response. It only signals:
    refreshed     → persist_tokens() writes the new pair back
    clear_tokens  → clear_tokens() deletes the cookies
apply_resolution() does whichever applies.

Both cookies get the refresh token's lifetime. The access token has to
stay readable after its own exp so the resolver can see issued_at and
apply the hard ceiling.
"""

from typing import Optional

from fastapi import Request, Response

from coachguard.auth.providers.base import TokenPair
from coachguard.auth.session import SessionResolution
from coachguard.config import settings

ACCESS_HEADER = "X-Access-Token"
REFRESH_HEADER = "X-Refresh-Token"


def read_tokens(request: Request) -> tuple[Optional[str], Optional[str]]:
    """Return (access_token, refresh_token) from headers or cookies."""
    access_token = None
    authorization = request.headers.get("authorization")
    if authorization and authorization.startswith("Bearer "):
        access_token = authorization[7:].strip() or None
    if access_token is None:
        access_token = request.cookies.get(settings.access_cookie_name) or None

    refresh_token = request.headers.get(REFRESH_HEADER) or None
    if refresh_token is None:
        refresh_token = request.cookies.get(settings.refresh_cookie_name) or None

    return access_token, refresh_token


def persist_tokens(response: Response, pair: TokenPair) -> None:
    max_age = settings.refresh_token_expire_days * 24 * 60 * 60
    for name, value in (
        (settings.access_cookie_name, pair.access_token),
        (settings.refresh_cookie_name, pair.refresh_token),
    ):
        response.set_cookie(
            key=name,
            value=value,
            max_age=max_age,
            httponly=True,
            secure=settings.secure_cookies,
            samesite=settings.cookie_samesite,
            path="/",
        )
    # Header-based clients pick the rotated pair up from here
    response.headers[ACCESS_HEADER] = pair.access_token
    response.headers[REFRESH_HEADER] = pair.refresh_token


def clear_tokens(response: Response) -> None:
    for name in (settings.access_cookie_name, settings.refresh_cookie_name):
        response.delete_cookie(
            key=name,
            path="/",
            httponly=True,
            secure=settings.secure_cookies,
            samesite=settings.cookie_samesite,
        )


def apply_resolution(response: Response, resolution: SessionResolution) -> None:
    """Write the resolver's cookie signals onto an outgoing response."""
    if resolution.refreshed and resolution.session is not None:
        session = resolution.session
        if session.refresh_token:
            persist_tokens(
                response,
                TokenPair(
                    access_token=session.access_token,
                    refresh_token=session.refresh_token,
                ),
            )
    elif resolution.clear_tokens:
        clear_tokens(response)
