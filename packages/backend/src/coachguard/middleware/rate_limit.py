"""Rate limiting middleware — fixed window per client IP and endpoint class.

Learn: Classifies each request, then asks the RateLimiter before the
route runs:

    POST /api/v1/auth/signup, POST /api/v1/auth/login   → auth (5/min)
    any other /api/v1/* except /api/v1/health           → api  (30/min)
    everything else (pages, docs)                       → not throttled

A rejected request never reaches the session resolver or the route —
it gets a 429 with Retry-After straight from here. Allowed requests get
X-RateLimit-Limit / X-RateLimit-Remaining on the way out.

If the Redis backend is unreachable the request goes through unthrottled
and the outage is logged; the limiter guards against abuse, it isn't an
availability dependency.
"""

from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from coachguard.api.errors import error_response
from coachguard.errors import RateLimited
from coachguard.ratelimit import EndpointClass, RateLimitBackendError, RateLimiter

logger = structlog.get_logger()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Throttle the API per client IP."""

    def __init__(
        self,
        app,
        limiter: Optional[RateLimiter],
        api_prefix: str = "/api/v1",
        trust_forwarded_for: bool = False,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.api_prefix = api_prefix.rstrip("/")
        self.trust_forwarded_for = trust_forwarded_for
        self._auth_paths = {
            f"{self.api_prefix}/auth/signup",
            f"{self.api_prefix}/auth/login",
        }
        self._exempt_paths = {f"{self.api_prefix}/health"}

    def classify(self, request: Request) -> Optional[EndpointClass]:
        path = request.url.path.rstrip("/") or "/"
        if request.method == "POST" and path in self._auth_paths:
            return EndpointClass.AUTH
        if path in self._exempt_paths:
            return None
        if path.startswith(self.api_prefix + "/"):
            return EndpointClass.API
        return None

    def client_ip(self, request: Request) -> str:
        if self.trust_forwarded_for:
            forwarded = request.headers.get("X-Forwarded-For", "")
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
        return request.client.host if request.client else "unknown"

    async def dispatch(self, request: Request, call_next) -> Response:
        if self.limiter is None or request.method == "OPTIONS":
            return await call_next(request)

        endpoint_class = self.classify(request)
        if endpoint_class is None:
            return await call_next(request)

        client_ip = self.client_ip(request)
        try:
            result = await self.limiter.check(client_ip, endpoint_class)
        except RateLimitBackendError as e:
            logger.warning("ratelimit.backend_unavailable", error=str(e))
            return await call_next(request)

        if not result.allowed:
            return error_response(
                RateLimited(retry_after=result.retry_after, limit=result.limit)
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(result.retry_after)
        return response
