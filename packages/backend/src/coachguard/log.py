"""Structured logging setup.

Learn: structlog everywhere. Events are dotted names ("auth.login_failed")
with keyword context. The request_id bound by RequestIdMiddleware is merged
into every event via contextvars. Token and password values never reach
the log output — the redaction processor replaces them before rendering.
"""

import logging

import structlog

from coachguard.config import Settings, settings as default_settings

SENSITIVE_KEYS = frozenset({
    "password",
    "access_token",
    "refresh_token",
    "token",
    "authorization",
    "secret",
    "apikey",
})

REDACTED = "***REDACTED***"


def redact_sensitive(logger, method_name, event_dict):
    """structlog processor — blank out credential-bearing keys."""
    for key in list(event_dict):
        lowered = key.lower()
        if lowered in SENSITIVE_KEYS or "password" in lowered:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(settings: Settings = default_settings) -> None:
    """Configure structlog once at startup (called from the app lifespan)."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive,
        structlog.processors.format_exc_info,
    ]
    if settings.environment == "development":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
