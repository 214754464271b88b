"""Auth API tests.

Learn: Tests cover:
1. Sign-up → empty User profile, session cookies
2. Generic rejection — duplicate, unknown email, wrong password look alike
3. Boundary validation (400 before any provider call)
4. GET /session with and without a session
5. Explicit refresh and sign-out
6. Sign-up against a provider that requires email verification

Each test stays under the auth-class rate limit (5 POSTs to signup/login).
"""

import uuid
from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import UnreachableProvider, bearer, issue_pair, utcnow

from coachguard.db.models import Profile
from coachguard.main import create_app


def _signup_body(email=None, **overrides):
    body = {
        "email": email or f"new-{uuid.uuid4().hex[:8]}@example.com",
        "password": "correct-horse",
        "first_name": "Ada",
        "last_name": "Lovelace",
    }
    body.update(overrides)
    return body


def _cookies(resp) -> str:
    return " ".join(resp.headers.get_list("set-cookie"))


# ═══════════════════════════════════════════════════════════
# Sign-up
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_signup_creates_user_profile_and_session(client, db_session):
    r = await client.post("/api/v1/auth/signup", json=_signup_body("Ada@Example.com"))
    assert r.status_code == 201
    data = r.json()
    assert data["user"]["email"] == "ada@example.com"
    assert data["user"]["role"] == "user"
    assert data["access_token"]
    assert data["requires_email_verification"] is False
    assert "coachguard-access-token=" in _cookies(r)
    assert "HttpOnly" in _cookies(r)

    profile = await db_session.get(Profile, uuid.UUID(data["user"]["id"]))
    assert profile.role == "user"
    # Names are captured upstream; the profile starts empty
    assert profile.first_name == ""
    assert profile.last_name == ""


@pytest.mark.asyncio
async def test_signup_cannot_choose_role(client):
    r = await client.post("/api/v1/auth/signup", json=_signup_body(role="admin"))
    assert r.status_code == 201
    assert r.json()["user"]["role"] == "user"


@pytest.mark.asyncio
async def test_duplicate_signup_is_generic_401(client):
    body = _signup_body()
    assert (await client.post("/api/v1/auth/signup", json=body)).status_code == 201

    r = await client.post("/api/v1/auth/signup", json=body)
    assert r.status_code == 401
    assert r.json() == {
        "error": {"code": "INVALID_CREDENTIALS", "message": "Invalid credentials"}
    }


@pytest.mark.asyncio
async def test_signup_pending_verification(client, provider):
    provider.require_verification = True
    r = await client.post("/api/v1/auth/signup", json=_signup_body())

    assert r.status_code == 201
    data = r.json()
    assert data["requires_email_verification"] is True
    assert data["access_token"] is None
    assert "coachguard-access-token" not in _cookies(r)


# ═══════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_signup_validation_rejected_before_provider(client, provider):
    r = await client.post(
        "/api/v1/auth/signup",
        json=_signup_body(email="not-an-email", password="123", first_name="   "),
    )
    assert r.status_code == 400
    error = r.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    fields = " ".join(error["details"])
    assert "email" in fields
    assert "password" in fields
    assert "first_name" in fields
    assert provider.calls == []


@pytest.mark.asyncio
async def test_signup_name_too_long(client):
    r = await client.post("/api/v1/auth/signup", json=_signup_body(last_name="x" * 51))
    assert r.status_code == 400


# ═══════════════════════════════════════════════════════════
# Sign-in
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_login_returns_tokens_and_provisions_profile(client, make_user, db_session):
    identity_id, _ = await make_user(email="grace@example.com")

    r = await client.post(
        "/api/v1/auth/login",
        json={"email": "grace@example.com", "password": "correct-horse"},
    )
    assert r.status_code == 200
    data = r.json()
    assert data["user"]["id"] == str(identity_id)
    assert data["token_type"] == "bearer"
    assert "coachguard-refresh-token=" in _cookies(r)
    assert await db_session.get(Profile, identity_id) is not None


@pytest.mark.asyncio
async def test_wrong_password_and_unknown_email_look_identical(client, make_user):
    await make_user(email="grace@example.com")

    wrong = await client.post(
        "/api/v1/auth/login",
        json={"email": "grace@example.com", "password": "not-her-password"},
    )
    unknown = await client.post(
        "/api/v1/auth/login",
        json={"email": "nobody@example.com", "password": "not-her-password"},
    )
    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json() == unknown.json()


@pytest.mark.asyncio
async def test_login_upstream_down_is_503(session_factory):
    app = create_app(provider=UnreachableProvider(), session_factory=session_factory)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        r = await ac.post(
            "/api/v1/auth/login",
            json={"email": "grace@example.com", "password": "correct-horse"},
        )
    assert r.status_code == 503
    assert r.json()["error"]["code"] == "SERVICE_UNAVAILABLE"
    assert "timeout" not in r.text


# ═══════════════════════════════════════════════════════════
# Session
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_session_is_null_without_tokens(client):
    r = await client.get("/api/v1/session")
    assert r.status_code == 200
    assert r.json() == {"session": None}


@pytest.mark.asyncio
async def test_session_with_bearer(client, make_user):
    identity_id, pair = await make_user(role="admin")
    r = await client.get("/api/v1/session", headers=bearer(pair))
    assert r.status_code == 200
    session = r.json()["session"]
    assert session["identity_id"] == str(identity_id)
    assert session["role"] == "admin"


@pytest.mark.asyncio
async def test_session_from_cookies(client, make_user):
    await make_user(email="cookie@example.com")
    r = await client.post(
        "/api/v1/auth/login",
        json={"email": "cookie@example.com", "password": "correct-horse"},
    )
    assert r.status_code == 200

    # The client's cookie jar carries the pair from here on
    r = await client.get("/api/v1/session")
    assert r.json()["session"]["email"] == "cookie@example.com"


@pytest.mark.asyncio
async def test_session_timeout_clears_cookies(client):
    stale = issue_pair(uuid.uuid4(), now=utcnow() - timedelta(hours=25))
    r = await client.get("/api/v1/session", headers=bearer(stale))
    assert r.json() == {"session": None}
    assert "coachguard-access-token=" in _cookies(r)


# ═══════════════════════════════════════════════════════════
# Refresh + sign-out
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_refresh_with_body(client, make_user, provider):
    identity_id, pair = await make_user()
    r = await client.post(
        "/api/v1/auth/refresh", json={"refresh_token": pair.refresh_token}
    )
    assert r.status_code == 200
    data = r.json()
    assert data["user"]["id"] == str(identity_id)
    assert data["access_token"] != pair.access_token
    assert provider.refresh_calls == 1


@pytest.mark.asyncio
async def test_refresh_without_token_is_401(client):
    r = await client.post("/api/v1/auth/refresh")
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "UNAUTHORIZED"


@pytest.mark.asyncio
async def test_refresh_past_hard_timeout_is_401(client, provider):
    stale = issue_pair(uuid.uuid4(), now=utcnow() - timedelta(hours=25))
    r = await client.post(
        "/api/v1/auth/refresh", json={"refresh_token": stale.refresh_token}
    )
    assert r.status_code == 401
    assert provider.refresh_calls == 0


@pytest.mark.asyncio
async def test_logout_revokes_and_clears(client, make_user, provider):
    _, pair = await make_user()
    r = await client.post("/api/v1/auth/logout", headers=bearer(pair))

    assert r.status_code == 200
    assert r.json() == {"signed_out": True}
    assert set(provider.revoked) == {pair.access_token, pair.refresh_token}
    cookies = _cookies(r)
    assert "coachguard-access-token=" in cookies
    assert "coachguard-refresh-token=" in cookies


@pytest.mark.asyncio
async def test_logout_without_session_still_succeeds(client, provider):
    r = await client.post("/api/v1/auth/logout")
    assert r.status_code == 200
    assert provider.revoked == []


@pytest.mark.asyncio
async def test_auth_responses_are_not_cacheable(client):
    r = await client.get("/api/v1/session")
    assert r.headers["cache-control"] == "no-store"
