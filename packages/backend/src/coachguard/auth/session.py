"""Session resolution — the single authority on "who is this request?".

Learn: A request carries a token pair (access + refresh). The resolver
turns that pair into one of three answers:

    NONE     no usable session (missing, forged, timed out, refresh failed)
    VALID    a session we trust for this request
    EXPIRED  intermediate only — the access token is past (or within the
             refresh threshold of) its expiry; resolve() immediately tries
             exactly one refresh and comes back with VALID or NONE

Two independent expiry rules:
1. Token expiry: exp claim in the past, or closer than the refresh
   threshold → EXPIRED → refresh.
2. Hard ceiling: access token issued more than session_hard_timeout ago
   → NONE, no refresh. This closes the gap where a provider hands out
   long-lived tokens; refreshing would just reset the clock.

Refresh is single-flighted: concurrent requests holding the same expiring
session share one upstream call. With rotating refresh tokens a second
call would present an already-rotated token and get the user logged out.
The new pair is also kept for a few seconds (session_refresh_reuse_seconds)
so requests that left the browser before its Set-Cookie landed reuse it.

Failure is always closed: an unreachable provider means NONE, never VALID.
"""

import asyncio
import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from coachguard.auth.jwt import (
    TokenError,
    decode_access_claims,
    peek_issued_at,
)
from coachguard.auth.providers.base import CredentialProvider, TokenPair
from coachguard.config import Settings
from coachguard.errors import CredentialRejected, UpstreamUnavailable

logger = structlog.get_logger()

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    NONE = "none"
    VALID = "valid"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Session:
    """A validated, time-bounded association between a request and an identity."""

    identity_id: uuid.UUID
    email: Optional[str]
    access_token: str
    refresh_token: Optional[str]
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class SessionPolicy:
    hard_timeout: timedelta
    refresh_threshold: timedelta
    refresh_timeout: float
    refresh_reuse: timedelta = timedelta(seconds=10)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionPolicy":
        return cls(
            hard_timeout=timedelta(seconds=settings.session_hard_timeout_seconds),
            refresh_threshold=timedelta(
                seconds=settings.session_refresh_threshold_seconds
            ),
            refresh_timeout=settings.refresh_timeout_seconds,
            refresh_reuse=timedelta(seconds=settings.session_refresh_reuse_seconds),
        )


@dataclass(frozen=True)
class SessionResolution:
    """What the resolver decided, plus what the caller must do with cookies.

    refreshed     → persist session's new token pair to the client
    clear_tokens  → remove client-held tokens
    """

    status: SessionStatus
    session: Optional[Session] = None
    reason: Optional[str] = None
    refreshed: bool = False
    clear_tokens: bool = False

    @property
    def is_valid(self) -> bool:
        return self.status == SessionStatus.VALID and self.session is not None


NO_SESSION = SessionResolution(status=SessionStatus.NONE, reason="no_session")


def session_from_tokens(access_token: str, refresh_token: Optional[str]) -> Session:
    """Verify an access token's signature and build a Session from its claims.

    Raises TokenError for anything forged or malformed.
    """
    claims = decode_access_claims(access_token)
    try:
        identity_id = uuid.UUID(str(claims["sub"]))
        issued_at = datetime.fromtimestamp(int(claims["iat"]), tz=timezone.utc)
        expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
    except (TypeError, ValueError) as e:
        raise TokenError(f"Malformed claims: {e}")
    return Session(
        identity_id=identity_id,
        email=claims.get("email"),
        access_token=access_token,
        refresh_token=refresh_token,
        issued_at=issued_at,
        expires_at=expires_at,
    )


def classify_session(
    session: Session, now: datetime, policy: SessionPolicy
) -> tuple[SessionStatus, Optional[str]]:
    """Apply both expiry rules. Pure — no I/O.

    The hard ceiling is checked first: a session past it is dead even if
    its token would also be due for a refresh.
    """
    if now - session.issued_at > policy.hard_timeout:
        return SessionStatus.NONE, "session_timeout"
    if session.expires_at <= now:
        return SessionStatus.EXPIRED, "jwt_expired"
    if session.expires_at - now < policy.refresh_threshold:
        return SessionStatus.EXPIRED, "needs_refresh"
    return SessionStatus.VALID, None


class SingleFlight:
    """Coalesce calls with the same key into one in-flight task.

    Learn: The first caller for a key starts the work as a Task; everyone
    arriving while it runs awaits the same Task. Waiters go through
    asyncio.shield, so a client that disconnects (its request task gets
    cancelled) stops waiting without cancelling the shared work for the
    others. The in-flight entry is dropped when the task finishes, success
    or failure; the work itself must be time-bounded so the entry can't
    be held forever.

    A successful result is also kept for reuse_for after it lands. Callers
    that show up just after the work finished (still holding the old
    input) get the same result instead of starting the work again. For
    refreshes that matters: the old refresh token is already rotated, and
    a second upstream call would be rejected.

    No await sits between the registry lookup and the insert, so the
    check-and-set is atomic on the event loop.
    """

    def __init__(
        self,
        reuse_for: timedelta = timedelta(0),
        clock: Callable[[], datetime] = utcnow,
    ):
        self._inflight: dict[str, asyncio.Task] = {}
        self._recent: dict[str, tuple[datetime, Any]] = {}
        self._reuse_for = reuse_for
        self._clock = clock

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        self._sweep()
        if key in self._recent:
            return self._recent[key][1]
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(fn())
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._forget(key, t))
        return await asyncio.shield(task)

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    def discard(self, match: Callable[[str, Any], bool]) -> None:
        """Drop kept results for which match(key, result) is true."""
        for key, (_, result) in list(self._recent.items()):
            if match(key, result):
                del self._recent[key]

    def _sweep(self) -> None:
        now = self._clock()
        for key, (finished_at, _) in list(self._recent.items()):
            if now - finished_at >= self._reuse_for:
                del self._recent[key]

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if task.cancelled():
            return
        # Retrieving the exception marks it handled even if every waiter left
        if task.exception() is None and self._reuse_for > timedelta(0):
            self._recent[key] = (self._clock(), task.result())


class SessionResolver:
    """Turns an inbound token pair into a SessionResolution.

    The only component that talks to the credential provider on behalf of
    an in-flight request.
    """

    def __init__(
        self,
        provider: CredentialProvider,
        policy: SessionPolicy,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.provider = provider
        self.policy = policy
        self._clock = clock
        self._refreshes = SingleFlight(reuse_for=policy.refresh_reuse, clock=clock)

    async def resolve(
        self, access_token: Optional[str], refresh_token: Optional[str]
    ) -> SessionResolution:
        if not access_token:
            if refresh_token:
                return await self.refresh(refresh_token)
            return NO_SESSION

        try:
            session = session_from_tokens(access_token, refresh_token)
        except TokenError as e:
            logger.info("session.invalid_token", error=str(e))
            return SessionResolution(
                status=SessionStatus.NONE, reason="invalid_token", clear_tokens=True
            )

        status, reason = classify_session(session, self._clock(), self.policy)

        if status == SessionStatus.VALID:
            return SessionResolution(status=SessionStatus.VALID, session=session)

        if status == SessionStatus.NONE:
            logger.info(
                "session.hard_timeout",
                identity_id=str(session.identity_id),
                issued_at=session.issued_at.isoformat(),
            )
            return SessionResolution(
                status=SessionStatus.NONE, reason=reason, clear_tokens=True
            )

        # EXPIRED: exactly one refresh attempt
        if not refresh_token:
            return SessionResolution(
                status=SessionStatus.NONE, reason=reason, clear_tokens=True
            )
        return await self.refresh(refresh_token, identity_id=session.identity_id)

    async def refresh(
        self, refresh_token: str, identity_id: Optional[uuid.UUID] = None
    ) -> SessionResolution:
        """Single-flighted refresh. Never raises; failures resolve to NONE."""
        # The pair was issued together, so the ceiling applies to a bare
        # refresh token too.
        issued_at = peek_issued_at(refresh_token)
        if issued_at is not None and self._clock() - issued_at > self.policy.hard_timeout:
            logger.info("session.hard_timeout", issued_at=issued_at.isoformat())
            return SessionResolution(
                status=SessionStatus.NONE, reason="session_timeout", clear_tokens=True
            )

        key = self._flight_key(refresh_token)

        try:
            pair = await self._refreshes.do(
                key, lambda: self._refresh_upstream(refresh_token)
            )
        except CredentialRejected as e:
            logger.info(
                "session.refresh_failed",
                identity_id=str(identity_id) if identity_id else None,
                reason=str(e),
            )
            return SessionResolution(
                status=SessionStatus.NONE, reason="refresh_failed", clear_tokens=True
            )
        except UpstreamUnavailable as e:
            # Fail closed. Tokens are kept: the outage may be transient and
            # the refresh token is still good.
            logger.warning(
                "session.refresh_upstream_unavailable",
                identity_id=str(identity_id) if identity_id else None,
                error=e.detail,
            )
            return SessionResolution(
                status=SessionStatus.NONE, reason="upstream_unavailable"
            )

        try:
            session = session_from_tokens(pair.access_token, pair.refresh_token)
        except TokenError as e:
            logger.error("session.refreshed_token_invalid", error=str(e))
            return SessionResolution(
                status=SessionStatus.NONE, reason="refresh_failed", clear_tokens=True
            )

        status, reason = classify_session(session, self._clock(), self.policy)
        if status != SessionStatus.VALID:
            logger.warning(
                "session.refreshed_session_unusable",
                identity_id=str(session.identity_id),
                reason=reason,
            )
            return SessionResolution(
                status=SessionStatus.NONE, reason="refresh_failed", clear_tokens=True
            )

        logger.info("session.refreshed", identity_id=str(session.identity_id))
        return SessionResolution(
            status=SessionStatus.VALID, session=session, refreshed=True
        )

    def adopt(self, pair: TokenPair) -> Session:
        """Build a session from a pair the provider just issued (sign-in).

        Raises TokenError if the provider's tokens don't verify.
        """
        return session_from_tokens(pair.access_token, pair.refresh_token)

    async def _refresh_upstream(self, refresh_token: str) -> TokenPair:
        try:
            return await asyncio.wait_for(
                self.provider.refresh(refresh_token),
                timeout=self.policy.refresh_timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable("Refresh timed out") from e

    def discard_refresh(self, refresh_token: str) -> None:
        """Forget kept refresh results involving a revoked token.

        Sign-out may present the pre-rotation token or the pair it was
        rotated into; either way nothing may hand that session out again.
        """
        key = self._flight_key(refresh_token)
        self._refreshes.discard(
            lambda k, pair: k == key or pair.refresh_token == refresh_token
        )

    @staticmethod
    def _flight_key(refresh_token: str) -> str:
        # The refresh token alone names the session: every request of one
        # session shares it (opaque or JWT), another device holds its own.
        return hashlib.sha256(refresh_token.encode()).hexdigest()
