"""Route guard — the per-request navigation state machine.

Learn: Each page request walks a tiny state machine:

    resolve session ──► NONE  ──────────────► ANONYMOUS
                    └─► VALID ─► load profile ─► AUTHENTICATED_ADMIN (role admin)
                                              └► AUTHENTICATED_USER  (otherwise)

then the state is checked against the route's class:

    PUBLIC           always allowed
    PROTECTED_USER   user/admin allowed; anonymous → sign-in (?redirectTo=path)
    PROTECTED_ADMIN  admin allowed; user → landing page; anonymous → sign-in

A refused request ends in DENIED with a redirect target — never an
error page. This module is pure (no I/O); api/pages.py wires it to the
session resolver and the profile provisioner.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import urlencode

from coachguard.config import Settings
from coachguard.policy.roles import Role


class RouteClass(str, Enum):
    PUBLIC = "public"
    PROTECTED_USER = "protected_user"
    PROTECTED_ADMIN = "protected_admin"


class GuardState(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED_USER = "authenticated_user"
    AUTHENTICATED_ADMIN = "authenticated_admin"
    DENIED = "denied"


@dataclass(frozen=True)
class GuardDecision:
    state: GuardState
    allowed: bool
    redirect_to: Optional[str] = None


# Shown on the sign-in page, keyed by the resolver's reason.
SIGN_IN_MESSAGES = {
    "session_timeout": "Your session has expired. Please sign in again.",
    "jwt_expired": "Your session has expired. Please sign in again.",
    "refresh_failed": "Unable to refresh session. Please sign in again.",
    "upstream_unavailable": "Unable to refresh session. Please sign in again.",
    "callback_failed": "Unable to complete sign-in. Please try again.",
}


def _matches(path: str, prefix: str) -> bool:
    # Segment-aware: "/learn" covers "/learn" and "/learn/x", not "/learning"
    prefix = prefix.rstrip("/") or "/"
    return path == prefix or path.startswith(prefix + "/")


def state_for(role: Optional[Role]) -> GuardState:
    """Authenticated state from the profile role; None means no session."""
    if role is None:
        return GuardState.ANONYMOUS
    if role == Role.ADMIN:
        return GuardState.AUTHENTICATED_ADMIN
    return GuardState.AUTHENTICATED_USER


class RouteGuard:
    """Classifies paths and decides allow/redirect. Stateless."""

    def __init__(
        self,
        user_prefixes: list[str],
        admin_prefixes: list[str],
        sign_in_path: str = "/auth/login",
        landing_path: str = "/learn",
    ):
        self.user_prefixes = list(user_prefixes)
        self.admin_prefixes = list(admin_prefixes)
        self.sign_in_path = sign_in_path
        self.landing_path = landing_path

    @classmethod
    def from_settings(cls, settings: Settings) -> "RouteGuard":
        return cls(
            user_prefixes=settings.protected_user_paths,
            admin_prefixes=settings.protected_admin_paths,
            sign_in_path=settings.sign_in_path,
            landing_path=settings.landing_path,
        )

    def classify(self, path: str) -> RouteClass:
        # Admin first: an admin prefix nested under a user prefix stays admin
        if any(_matches(path, p) for p in self.admin_prefixes):
            return RouteClass.PROTECTED_ADMIN
        if any(_matches(path, p) for p in self.user_prefixes):
            return RouteClass.PROTECTED_USER
        return RouteClass.PUBLIC

    def decide(
        self,
        path: str,
        state: GuardState,
        reason: Optional[str] = None,
        return_to: Optional[str] = None,
    ) -> GuardDecision:
        """Decide for an already-evaluated state.

        reason is the session resolver's reason for an anonymous state
        (drives the sign-in page message); return_to defaults to path.
        """
        route_class = self.classify(path)

        if route_class == RouteClass.PUBLIC:
            return GuardDecision(state=state, allowed=True)

        if state == GuardState.ANONYMOUS:
            return GuardDecision(
                state=GuardState.DENIED,
                allowed=False,
                redirect_to=self.sign_in_url(return_to or path, reason),
            )

        if route_class == RouteClass.PROTECTED_USER:
            return GuardDecision(state=state, allowed=True)

        # PROTECTED_ADMIN
        if state == GuardState.AUTHENTICATED_ADMIN:
            return GuardDecision(state=state, allowed=True)
        return GuardDecision(
            state=GuardState.DENIED, allowed=False, redirect_to=self.landing_path
        )

    def sign_in_url(self, return_to: str, reason: Optional[str] = None) -> str:
        params = {"redirectTo": return_to}
        message = SIGN_IN_MESSAGES.get(reason or "")
        if message:
            params["message"] = message
        return f"{self.sign_in_path}?{urlencode(params)}"
