"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running and its
dependencies are reachable: the database always, Redis only when the
rate limiter is configured to use it. Not rate limited.
"""

from fastapi import APIRouter, Request
from sqlalchemy import text

from coachguard import __version__
from coachguard.ratelimit import RedisBucketStore

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    # Check the database
    try:
        async with request.app.state.session_factory() as db:
            await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {type(e).__name__}"

    # Check Redis (only when it backs the rate limiter)
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is not None and isinstance(limiter.store, RedisBucketStore):
        try:
            await limiter.store.redis.ping()
            checks["redis"] = "ok"
        except Exception as e:
            checks["redis"] = f"error: {type(e).__name__}"

    checks["credential_provider"] = request.app.state.credential_provider.name

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k in ("server", "database", "redis")
    ) else "degraded"

    return {"status": status, **checks}
