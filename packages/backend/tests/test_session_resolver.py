"""Session resolver tests — expiry rules, refresh, single-flight, failing closed.

Learn: The resolver takes an injectable clock, and tokens are minted
with an explicit issue time, so "25 hours later" is a value rather than
a sleep. The provider's refresh_delay is the one real wait, used only to
hold a refresh in flight while concurrent requests pile up behind it.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest

from conftest import FakeCredentialProvider, UnreachableProvider, issue_pair, utcnow

from coachguard.auth.jwt import create_access_token
from coachguard.auth.providers.base import TokenPair
from coachguard.auth.session import (
    SessionPolicy,
    SessionResolver,
    SessionStatus,
    SingleFlight,
    classify_session,
    session_from_tokens,
)
from coachguard.errors import CredentialRejected, UpstreamUnavailable


POLICY = SessionPolicy(
    hard_timeout=timedelta(hours=24),
    refresh_threshold=timedelta(minutes=5),
    refresh_timeout=1.0,
    refresh_reuse=timedelta(seconds=10),
)


def _resolver(provider, now):
    provider.clock = lambda: now
    return SessionResolver(provider, POLICY, clock=lambda: now)


# ═══════════════════════════════════════════════════════════
# classify_session (pure)
# ═══════════════════════════════════════════════════════════


def test_fresh_session_is_valid():
    now = utcnow()
    pair = issue_pair(uuid.uuid4(), now=now)
    session = session_from_tokens(pair.access_token, pair.refresh_token)
    assert classify_session(session, now + timedelta(minutes=1), POLICY) == (
        SessionStatus.VALID,
        None,
    )


def test_expired_token_is_expired():
    issued = utcnow() - timedelta(hours=2)
    pair = issue_pair(uuid.uuid4(), now=issued, expires_minutes=60)
    session = session_from_tokens(pair.access_token, pair.refresh_token)
    status, reason = classify_session(session, utcnow(), POLICY)
    assert status == SessionStatus.EXPIRED
    assert reason == "jwt_expired"


def test_token_inside_refresh_threshold_is_expired():
    now = utcnow()
    pair = issue_pair(uuid.uuid4(), now=now, expires_minutes=60)
    session = session_from_tokens(pair.access_token, pair.refresh_token)
    status, reason = classify_session(session, now + timedelta(minutes=57), POLICY)
    assert status == SessionStatus.EXPIRED
    assert reason == "needs_refresh"


def test_hard_timeout_wins_over_long_lived_token():
    """A provider-issued 7-day token is still dead after 24h."""
    issued = utcnow() - timedelta(hours=25)
    pair = issue_pair(uuid.uuid4(), now=issued, expires_minutes=7 * 24 * 60)
    session = session_from_tokens(pair.access_token, pair.refresh_token)
    assert classify_session(session, utcnow(), POLICY) == (
        SessionStatus.NONE,
        "session_timeout",
    )


# ═══════════════════════════════════════════════════════════
# resolve()
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_no_tokens_is_no_session():
    resolver = _resolver(FakeCredentialProvider(), utcnow())
    resolution = await resolver.resolve(None, None)
    assert resolution.status == SessionStatus.NONE
    assert not resolution.clear_tokens


@pytest.mark.asyncio
async def test_valid_token_resolves_without_provider_call():
    provider = FakeCredentialProvider()
    now = utcnow()
    identity_id = uuid.uuid4()
    pair = issue_pair(identity_id, now=now)

    resolution = await _resolver(provider, now).resolve(pair.access_token, pair.refresh_token)

    assert resolution.is_valid
    assert resolution.session.identity_id == identity_id
    assert not resolution.refreshed
    assert provider.calls == []


@pytest.mark.asyncio
async def test_forged_token_is_no_session_and_cleared():
    provider = FakeCredentialProvider()
    pair = issue_pair(uuid.uuid4())
    head, body, sig = pair.access_token.split(".")
    forged = ".".join([head, body, sig[::-1]])

    resolution = await _resolver(provider, utcnow()).resolve(forged, pair.refresh_token)

    assert resolution.status == SessionStatus.NONE
    assert resolution.reason == "invalid_token"
    assert resolution.clear_tokens
    assert provider.refresh_calls == 0


@pytest.mark.asyncio
async def test_refresh_token_as_access_token_is_rejected():
    pair = issue_pair(uuid.uuid4())
    resolution = await _resolver(FakeCredentialProvider(), utcnow()).resolve(
        pair.refresh_token, None
    )
    assert resolution.reason == "invalid_token"


@pytest.mark.asyncio
async def test_hard_timeout_is_terminal_no_refresh():
    """Past 24h the session is gone: no refresh, tokens cleared."""
    provider = FakeCredentialProvider()
    issued = utcnow() - timedelta(hours=25)
    pair = issue_pair(uuid.uuid4(), now=issued, expires_minutes=60)

    resolution = await _resolver(provider, utcnow()).resolve(
        pair.access_token, pair.refresh_token
    )

    assert resolution.status == SessionStatus.NONE
    assert resolution.reason == "session_timeout"
    assert resolution.clear_tokens
    assert provider.refresh_calls == 0


@pytest.mark.asyncio
async def test_hard_timeout_applies_to_bare_refresh_token():
    """Dropping the access token doesn't sidestep the ceiling."""
    provider = FakeCredentialProvider()
    issued = utcnow() - timedelta(hours=25)
    pair = issue_pair(uuid.uuid4(), now=issued)

    resolution = await _resolver(provider, utcnow()).resolve(None, pair.refresh_token)

    assert resolution.reason == "session_timeout"
    assert provider.refresh_calls == 0


@pytest.mark.asyncio
async def test_expired_session_refreshes_once():
    provider = FakeCredentialProvider()
    now = utcnow()
    identity_id = uuid.uuid4()
    pair = issue_pair(identity_id, now=now - timedelta(minutes=90), expires_minutes=60)

    resolution = await _resolver(provider, now).resolve(pair.access_token, pair.refresh_token)

    assert resolution.is_valid
    assert resolution.refreshed
    assert resolution.session.identity_id == identity_id
    assert resolution.session.access_token != pair.access_token
    assert provider.refresh_calls == 1


@pytest.mark.asyncio
async def test_expired_session_without_refresh_token():
    provider = FakeCredentialProvider()
    now = utcnow()
    pair = issue_pair(uuid.uuid4(), now=now - timedelta(minutes=90), expires_minutes=60)

    resolution = await _resolver(provider, now).resolve(pair.access_token, None)

    assert resolution.status == SessionStatus.NONE
    assert resolution.clear_tokens
    assert provider.refresh_calls == 0


@pytest.mark.asyncio
async def test_rejected_refresh_clears_tokens():
    provider = FakeCredentialProvider()
    provider.refresh_error = CredentialRejected("Invalid Refresh Token: Already Used")
    now = utcnow()
    pair = issue_pair(uuid.uuid4(), now=now - timedelta(minutes=90), expires_minutes=60)

    resolution = await _resolver(provider, now).resolve(pair.access_token, pair.refresh_token)

    assert resolution.status == SessionStatus.NONE
    assert resolution.reason == "refresh_failed"
    assert resolution.clear_tokens


@pytest.mark.asyncio
async def test_unreachable_provider_fails_closed():
    """Upstream down → NONE (never VALID), tokens kept for a later retry."""
    provider = UnreachableProvider()
    now = utcnow()
    pair = issue_pair(uuid.uuid4(), now=now - timedelta(minutes=90), expires_minutes=60)

    resolution = await _resolver(provider, now).resolve(pair.access_token, pair.refresh_token)

    assert resolution.status == SessionStatus.NONE
    assert resolution.reason == "upstream_unavailable"
    assert not resolution.clear_tokens
    assert provider.refresh_calls == 1


@pytest.mark.asyncio
async def test_slow_refresh_times_out_closed():
    provider = FakeCredentialProvider()
    provider.refresh_delay = 0.5
    now = utcnow()
    policy = SessionPolicy(
        hard_timeout=timedelta(hours=24),
        refresh_threshold=timedelta(minutes=5),
        refresh_timeout=0.05,
    )
    resolver = SessionResolver(provider, policy, clock=lambda: now)
    pair = issue_pair(uuid.uuid4(), now=now - timedelta(minutes=90), expires_minutes=60)

    resolution = await resolver.resolve(pair.access_token, pair.refresh_token)

    assert resolution.status == SessionStatus.NONE
    assert resolution.reason == "upstream_unavailable"
    assert not resolver._refreshes.in_flight(resolver._flight_key(pair.refresh_token))


# ═══════════════════════════════════════════════════════════
# Single-flight
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_concurrent_expiry_triggers_exactly_one_refresh():
    """10 requests see the same expired session → 1 upstream refresh."""
    provider = FakeCredentialProvider()
    provider.refresh_delay = 0.05
    now = utcnow()
    resolver = _resolver(provider, now)
    pair = issue_pair(uuid.uuid4(), now=now - timedelta(minutes=90), expires_minutes=60)

    results = await asyncio.gather(
        *[resolver.resolve(pair.access_token, pair.refresh_token) for _ in range(10)]
    )

    assert provider.refresh_calls == 1
    assert all(r.is_valid and r.refreshed for r in results)
    assert len({r.session.access_token for r in results}) == 1


@pytest.mark.asyncio
async def test_other_devices_refresh_independently():
    """Two sessions of one identity hold different refresh tokens."""
    provider = FakeCredentialProvider()
    provider.refresh_delay = 0.02
    now = utcnow()
    resolver = _resolver(provider, now)
    identity_id = uuid.uuid4()
    laptop = issue_pair(identity_id, now=now - timedelta(minutes=90), expires_minutes=60)
    phone = issue_pair(identity_id, now=now - timedelta(minutes=80), expires_minutes=60)

    await asyncio.gather(
        resolver.resolve(laptop.access_token, laptop.refresh_token),
        resolver.resolve(phone.access_token, phone.refresh_token),
    )

    assert provider.refresh_calls == 2


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_refresh():
    provider = FakeCredentialProvider()
    provider.refresh_delay = 0.05
    now = utcnow()
    resolver = _resolver(provider, now)
    pair = issue_pair(uuid.uuid4(), now=now - timedelta(minutes=90), expires_minutes=60)

    leaver = asyncio.create_task(resolver.resolve(pair.access_token, pair.refresh_token))
    stayer = asyncio.create_task(resolver.resolve(pair.access_token, pair.refresh_token))
    await asyncio.sleep(0.01)
    leaver.cancel()

    resolution = await stayer
    assert resolution.is_valid
    assert provider.refresh_calls == 1
    with pytest.raises(asyncio.CancelledError):
        await leaver


@pytest.mark.asyncio
async def test_single_flight_releases_key_after_failure():
    flight = SingleFlight()

    async def boom():
        raise UpstreamUnavailable("down")

    with pytest.raises(UpstreamUnavailable):
        await flight.do("k", boom)
    assert not flight.in_flight("k")

    async def ok():
        return 42

    assert await flight.do("k", ok) == 42


@pytest.mark.asyncio
async def test_single_flight_keeps_only_successes():
    now = utcnow()
    flight = SingleFlight(reuse_for=timedelta(seconds=10), clock=lambda: now)
    calls = []

    async def boom():
        calls.append("boom")
        raise UpstreamUnavailable("down")

    for _ in range(2):
        with pytest.raises(UpstreamUnavailable):
            await flight.do("k", boom)
    assert calls == ["boom", "boom"]


# ═══════════════════════════════════════════════════════════
# Opaque rotating refresh tokens (Supabase-style)
# ═══════════════════════════════════════════════════════════


class RotatingOpaqueProvider(FakeCredentialProvider):
    """Refresh tokens are random strings, each good for exactly one refresh."""

    def __init__(self):
        super().__init__()
        self.live: dict[str, uuid.UUID] = {}

    def issue(self, identity_id: uuid.UUID) -> str:
        token = f"opaque-{uuid.uuid4().hex}"
        self.live[token] = identity_id
        return token

    async def refresh(self, refresh_token):
        self.calls.append(("refresh", refresh_token))
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        identity_id = self.live.pop(refresh_token, None)
        if identity_id is None:
            raise CredentialRejected("Invalid Refresh Token: Already Used", status_code=400)
        return TokenPair(
            access_token=create_access_token(str(identity_id), now=self.clock()),
            refresh_token=self.issue(identity_id),
        )


def _expired_opaque_session(provider, now):
    identity_id = uuid.uuid4()
    access = create_access_token(
        str(identity_id), expires_minutes=60, now=now - timedelta(minutes=90)
    )
    return identity_id, access, provider.issue(identity_id)


@pytest.mark.asyncio
async def test_page_load_and_explicit_refresh_share_one_call():
    """resolve() and refresh() for the same opaque token coalesce."""
    provider = RotatingOpaqueProvider()
    provider.refresh_delay = 0.05
    now = utcnow()
    resolver = _resolver(provider, now)
    identity_id, access, refresh_token = _expired_opaque_session(provider, now)

    page, explicit = await asyncio.gather(
        resolver.resolve(access, refresh_token),
        resolver.refresh(refresh_token),
    )

    assert provider.refresh_calls == 1
    assert page.is_valid and explicit.is_valid
    assert page.session.identity_id == identity_id
    assert page.session.refresh_token == explicit.session.refresh_token
    assert not explicit.clear_tokens


@pytest.mark.asyncio
async def test_late_request_reuses_the_rotated_pair():
    """A request still carrying the old pair right after a refresh is not logged out."""
    provider = RotatingOpaqueProvider()
    now = utcnow()
    resolver = _resolver(provider, now)
    _, access, refresh_token = _expired_opaque_session(provider, now)

    first = await resolver.resolve(access, refresh_token)
    late = await resolver.resolve(access, refresh_token)

    assert first.is_valid
    assert late.is_valid and late.refreshed
    assert late.session.access_token == first.session.access_token
    assert late.session.refresh_token == first.session.refresh_token
    assert not late.clear_tokens
    assert provider.refresh_calls == 1


@pytest.mark.asyncio
async def test_rotated_pair_is_not_reused_after_the_window():
    provider = RotatingOpaqueProvider()
    clock = [utcnow()]
    provider.clock = lambda: clock[0]
    resolver = SessionResolver(provider, POLICY, clock=lambda: clock[0])
    _, access, refresh_token = _expired_opaque_session(provider, clock[0])

    assert (await resolver.resolve(access, refresh_token)).is_valid
    clock[0] += timedelta(seconds=11)
    stale = await resolver.resolve(access, refresh_token)

    assert stale.status == SessionStatus.NONE
    assert stale.reason == "refresh_failed"
    assert provider.refresh_calls == 2


@pytest.mark.asyncio
async def test_discarded_refresh_is_not_handed_out_again():
    provider = RotatingOpaqueProvider()
    now = utcnow()
    resolver = _resolver(provider, now)
    _, access, refresh_token = _expired_opaque_session(provider, now)

    first = await resolver.resolve(access, refresh_token)
    # Sign-out with the rotated pair
    resolver.discard_refresh(first.session.refresh_token)
    replay = await resolver.resolve(access, refresh_token)

    assert replay.status == SessionStatus.NONE
    assert replay.clear_tokens
    assert provider.refresh_calls == 2
