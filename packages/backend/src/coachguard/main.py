"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown (logging, provider clients,
rate-limit store, database engine). Middleware, CORS, exception handlers
and routers all registered here.

The long-lived collaborators are built once per app and parked on
app.state, where the dependencies in auth/dependencies.py find them:
    credential_provider  the identity issuer
    session_resolver     the only caller of the provider per request
    rate_limiter         buckets (memory or Redis)
    route_guard          page classification
    session_factory      DB sessions (health check, local provider)

Tests pass their own provider / session factory / limiter in.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coachguard import __version__
from coachguard.api import api_router, callback_router, pages_router
from coachguard.api.errors import register_exception_handlers
from coachguard.auth.providers import CredentialProvider, build_provider
from coachguard.auth.session import SessionPolicy, SessionResolver
from coachguard.config import Settings, settings as default_settings
from coachguard.db.engine import async_session_factory, engine, get_db
from coachguard.log import configure_logging
from coachguard.middleware.rate_limit import RateLimitMiddleware
from coachguard.middleware.request_id import RequestIdMiddleware
from coachguard.middleware.security import SecurityHeadersMiddleware
from coachguard.policy.route_guard import RouteGuard
from coachguard.ratelimit import RateLimiter, build_rate_limiter

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at
    shutdown.
    """
    configure_logging(app.state.settings)
    logger.info(
        "coachguard.starting",
        version=__version__,
        environment=app.state.settings.environment,
        credential_provider=app.state.credential_provider.name,
        rate_limit_backend=(
            app.state.settings.rate_limit_backend
            if app.state.rate_limiter is not None
            else "disabled"
        ),
    )

    yield

    # Shutdown
    logger.info("coachguard.shutdown")
    await app.state.credential_provider.close()
    if app.state.rate_limiter is not None:
        await app.state.rate_limiter.close()
    if app.state.owns_engine:
        await engine.dispose()


def create_app(
    provider: Optional[CredentialProvider] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    rate_limiter: Optional[RateLimiter] = None,
    settings: Settings = default_settings,
) -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="CoachGuard",
        description="Access control for the coaching platform — sessions, profiles, ownership, throttling",
        version=__version__,
        lifespan=lifespan,
    )

    factory = session_factory or async_session_factory
    provider = provider or build_provider(settings, factory)
    if settings.rate_limit_enabled and rate_limiter is None:
        rate_limiter = build_rate_limiter(settings)
    elif not settings.rate_limit_enabled:
        rate_limiter = None

    app.state.settings = settings
    app.state.session_factory = factory
    app.state.owns_engine = session_factory is None
    app.state.credential_provider = provider
    app.state.session_resolver = SessionResolver(
        provider, SessionPolicy.from_settings(settings)
    )
    app.state.rate_limiter = rate_limiter
    app.state.route_guard = RouteGuard.from_settings(settings)

    if session_factory is not None:
        async def _get_db():
            async with session_factory() as session:
                yield session

        app.dependency_overrides[get_db] = _get_db

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: RequestId → Security → CORS → RateLimit → handler

    app.add_middleware(
        RateLimitMiddleware,
        limiter=rate_limiter,
        api_prefix=api_router.prefix,
        trust_forwarded_for=settings.trust_forwarded_for,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Access-Token", "X-Refresh-Token", "Retry-After"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIdMiddleware)

    register_exception_handlers(app)

    # Mount API routes, then pages at the root
    app.include_router(api_router)
    app.include_router(callback_router, tags=["auth"])
    app.include_router(pages_router, tags=["pages"])

    return app


# Default app instance (used by uvicorn: coachguard.main:app)
app = create_app()
