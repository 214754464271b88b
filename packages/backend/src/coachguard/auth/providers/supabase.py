"""Supabase (GoTrue) credential provider.

Learn: The hosted deployment delegates identities to Supabase Auth. We
talk to its REST API directly with httpx instead of pulling in the
Supabase SDK — six endpoints are all we need:

    POST   /auth/v1/signup
    POST   /auth/v1/token?grant_type=password
    POST   /auth/v1/token?grant_type=refresh_token
    POST   /auth/v1/token?grant_type=pkce     (email link / OAuth callback)
    POST   /auth/v1/logout                 (Bearer <access token>)
    DELETE /auth/v1/admin/users/{id}       (service-role key)

Status mapping: 4xx → CredentialRejected, 5xx / timeout / connection
error → UpstreamUnavailable. Error bodies are logged, never forwarded.

Supabase access tokens are HS256 JWTs signed with the project's JWT
secret — set COACHGUARD_JWT_SECRET to it and COACHGUARD_JWT_AUDIENCE to
"authenticated" so the session resolver can verify them locally.
"""

import uuid
from typing import Any, Optional

import httpx
import structlog

from coachguard.auth.providers.base import CredentialProvider, Identity, TokenPair
from coachguard.errors import CredentialRejected, UpstreamUnavailable

logger = structlog.get_logger()


class SupabaseCredentialProvider(CredentialProvider):
    """Identity issuer backed by a Supabase project's auth server."""

    name = "supabase"

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        service_role_key: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._service_role_key = service_role_key
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"apikey": anon_key},
            transport=transport,
        )

    async def sign_up(self, email: str, password: str, metadata: dict) -> Identity:
        body = await self._request(
            "POST",
            "/auth/v1/signup",
            json={"email": email, "password": password, "data": metadata},
        )
        # With email confirmation on, the user object is the whole body;
        # otherwise it's nested next to a session.
        user = body.get("user") or body
        if "id" not in user:
            raise UpstreamUnavailable("Malformed sign-up response")
        return Identity(
            id=uuid.UUID(user["id"]),
            email=user.get("email", email),
            metadata=user.get("user_metadata") or {},
        )

    async def sign_in(self, email: str, password: str) -> TokenPair:
        body = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        return self._token_pair(body)

    async def refresh(self, refresh_token: str) -> TokenPair:
        body = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        return self._token_pair(body)

    async def exchange_code(
        self, code: str, code_verifier: Optional[str] = None
    ) -> TokenPair:
        if not code_verifier:
            # PKCE codes are useless without the verifier the browser kept
            raise CredentialRejected("Missing code verifier")
        body = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "pkce"},
            json={"auth_code": code, "code_verifier": code_verifier},
        )
        return self._token_pair(body)

    async def revoke(self, token: str) -> None:
        # Supabase refresh tokens are opaque strings; logging out with the
        # access token revokes every refresh token of that session.
        if token.count(".") != 2:
            return
        await self._request(
            "POST",
            "/auth/v1/logout",
            headers={"Authorization": f"Bearer {token}"},
        )

    async def delete_identity(self, identity_id: uuid.UUID) -> None:
        if not self._service_role_key:
            raise UpstreamUnavailable(
                "Service-role key not configured; identities cannot be deleted"
            )
        try:
            await self._request(
                "DELETE",
                f"/auth/v1/admin/users/{identity_id}",
                headers={
                    "apikey": self._service_role_key,
                    "Authorization": f"Bearer {self._service_role_key}",
                },
            )
        except CredentialRejected as e:
            if e.status_code != 404:
                raise
            logger.info("supabase.delete_identity_missing", identity_id=str(identity_id))

    async def close(self) -> None:
        await self._client.aclose()

    # ─── Internals ─────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> dict[str, Any]:
        try:
            resp = await self._client.request(
                method, path, params=params, json=json, headers=headers
            )
        except httpx.TimeoutException as e:
            logger.warning("supabase.timeout", path=path)
            raise UpstreamUnavailable("Credential provider timed out", path=path) from e
        except httpx.HTTPError as e:
            logger.warning("supabase.transport_error", path=path, error=str(e))
            raise UpstreamUnavailable("Credential provider unreachable", path=path) from e

        if resp.status_code >= 500:
            logger.error("supabase.server_error", path=path, status=resp.status_code)
            raise UpstreamUnavailable(
                "Credential provider error", path=path, status=resp.status_code
            )
        if resp.status_code >= 400:
            logger.info(
                "supabase.rejected",
                path=path,
                status=resp.status_code,
                reason=_error_message(resp),
            )
            raise CredentialRejected(_error_message(resp), status_code=resp.status_code)

        if not resp.content:
            return {}
        return resp.json()

    @staticmethod
    def _token_pair(body: dict) -> TokenPair:
        try:
            return TokenPair(
                access_token=body["access_token"],
                refresh_token=body["refresh_token"],
            )
        except KeyError as e:
            raise UpstreamUnavailable("Malformed token response") from e


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if not isinstance(body, dict):
        return f"HTTP {resp.status_code}"
    return (
        body.get("error_description")
        or body.get("msg")
        or body.get("message")
        or body.get("error")
        or f"HTTP {resp.status_code}"
    )
