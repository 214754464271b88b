"""Access-control error taxonomy.

Learn: every failure the access layer can produce is one of a small set
of kinds. Each kind carries the HTTP status and the *safe* message that
is allowed to cross the boundary. Full detail (upstream status, identity
id, exception chain) goes to the server log only — see api/errors.py for
the translation into responses.
"""

from typing import Optional


class AccessError(Exception):
    """Base class for errors that map onto a client-visible kind."""

    kind = "INTERNAL_ERROR"
    status_code = 500
    safe_message = "An error occurred. Please try again later"

    def __init__(self, detail: Optional[str] = None, **context):
        super().__init__(detail or self.safe_message)
        self.detail = detail or self.safe_message
        self.context = context


class AuthRequired(AccessError):
    """No valid session on a protected route."""

    kind = "UNAUTHORIZED"
    status_code = 401
    safe_message = "Authentication required"


class InvalidCredentials(AccessError):
    """Sign-in or sign-up rejected.

    Always reported with the same message, whatever the cause, so callers
    can't probe which emails are registered.
    """

    kind = "INVALID_CREDENTIALS"
    status_code = 401
    safe_message = "Invalid credentials"


class Forbidden(AccessError):
    """Authenticated, but not authorized for this resource or route."""

    kind = "FORBIDDEN"
    status_code = 403
    safe_message = "Access denied"

    def __init__(self, detail: Optional[str] = None, *, resource: Optional[str] = None, **context):
        super().__init__(detail, **context)
        # Set when the denial concerns an owned resource; rendered as 404.
        self.resource = resource


class NotFound(AccessError):
    kind = "NOT_FOUND"
    status_code = 404
    safe_message = "Resource not found"


class RateLimited(AccessError):
    """Throttle threshold exceeded for (client IP, endpoint class)."""

    kind = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    safe_message = "Too many requests. Please try again later"

    def __init__(self, retry_after: int, limit: int, **context):
        super().__init__(None, **context)
        self.retry_after = retry_after
        self.limit = limit


class ValidationFailed(AccessError):
    """Malformed input, rejected at the boundary."""

    kind = "VALIDATION_ERROR"
    status_code = 400
    safe_message = "Invalid input provided"

    def __init__(self, errors: Optional[list[str]] = None, **context):
        self.errors = errors or []
        detail = ", ".join(self.errors) if self.errors else None
        super().__init__(detail, **context)


class UpstreamUnavailable(AccessError):
    """Credential provider unreachable, timed out, or erroring."""

    kind = "SERVICE_UNAVAILABLE"
    status_code = 503
    safe_message = "Authentication service unavailable. Please try again later"


class CredentialRejected(Exception):
    """The credential provider answered, and the answer was no.

    Raised by provider adapters. Never crosses the boundary as-is — the
    auth routes turn it into InvalidCredentials and the session resolver
    turns it into "no session".
    """

    def __init__(self, reason: str = "", status_code: Optional[int] = None):
        super().__init__(reason)
        self.status_code = status_code


class NavigationRedirect(Exception):
    """Control flow, not a failure: the route guard sent this page request elsewhere.

    Rendered as a 307 to location by api/errors.py.
    """

    def __init__(self, location: str):
        super().__init__(location)
        self.location = location
