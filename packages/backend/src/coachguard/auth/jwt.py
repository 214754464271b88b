"""JWT token creation and verification.

Learn: JWT (JSON Web Token) provides stateless authentication.
- Access token: short-lived (60min), used for API calls
- Refresh token: long-lived (30 days), used to get new access tokens

Every token carries a jti so a single token can be revoked (sign-out,
refresh rotation). Access tokens also carry the email so the session
resolver never needs a provider round-trip just to know who's calling.

decode_access_claims() deliberately skips the library's own exp check:
the session resolver applies its own, stricter expiry policy (refresh
threshold + 24h hard ceiling) and needs to *see* expired tokens to know
that a refresh is due.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from coachguard.config import settings


class TokenError(Exception):
    """Raised when token creation/verification fails."""


def _encode(payload: dict) -> str:
    if settings.jwt_audience:
        payload["aud"] = settings.jwt_audience
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_access_token(
    user_id: str,
    email: Optional[str] = None,
    expires_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> str:
    """Create a JWT access token."""
    issued = now or datetime.now(timezone.utc)
    expires = issued + timedelta(
        minutes=expires_minutes or settings.access_token_expire_minutes
    )
    payload = {
        "sub": user_id,
        "type": "access",
        "jti": uuid.uuid4().hex,
        "exp": expires,
        "iat": issued,
    }
    if email:
        payload["email"] = email
    return _encode(payload)


def create_refresh_token(
    user_id: str,
    expires_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> str:
    """Create a JWT refresh token."""
    issued = now or datetime.now(timezone.utc)
    expires = issued + timedelta(
        days=expires_days or settings.refresh_token_expire_days
    )
    payload = {
        "sub": user_id,
        "type": "refresh",
        "jti": uuid.uuid4().hex,
        "exp": expires,
        "iat": issued,
    }
    return _encode(payload)


def _decode(token: str, verify_exp: bool) -> dict:
    options = {
        "verify_exp": verify_exp,
        "verify_aud": settings.jwt_audience is not None,
    }
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")


def verify_token(token: str, expected_type: Optional[str] = None) -> dict:
    """Verify and decode a JWT token (signature AND expiry).

    Returns the payload dict on success.
    Raises TokenError on failure.
    """
    payload = _decode(token, verify_exp=True)
    if expected_type and payload.get("type") != expected_type:
        raise TokenError(f"Not a {expected_type} token")
    return payload


def read_claims(token: str) -> dict:
    """Verify signature, skip expiry. Any token type."""
    return _decode(token, verify_exp=False)


def decode_access_claims(token: str) -> dict:
    """Verify an access token's signature and shape, ignoring expiry.

    Tokens without a "type" claim are accepted (Supabase access tokens
    don't carry one); tokens typed as anything other than "access" are not.
    """
    payload = read_claims(token)
    if payload.get("type", "access") != "access":
        raise TokenError("Not an access token")
    for claim in ("sub", "iat", "exp"):
        if claim not in payload:
            raise TokenError(f"Missing {claim} claim")
    return payload


def peek_issued_at(token: str) -> Optional[datetime]:
    """Read the iat claim WITHOUT verifying anything.

    Lets the resolver apply the hard session ceiling to a bare refresh
    token before spending an upstream call on it. Opaque (non-JWT)
    refresh tokens return None.
    """
    try:
        iat = jwt.decode(token, options={"verify_signature": False}).get("iat")
        return datetime.fromtimestamp(int(iat), tz=timezone.utc) if iat is not None else None
    except (jwt.InvalidTokenError, TypeError, ValueError):
        return None
