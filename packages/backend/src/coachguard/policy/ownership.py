"""Ownership policy — the authoritative per-row access check.

Learn: Every conversation, message and progress record carries owner_id.
The rule is deliberately narrow:

    ALLOW  iff  principal.identity_id == owner_id
           or   the principal was explicitly scoped to a named
                maintenance operation AND that is the operation running

Admin role alone grants nothing here. An admin reading another user's
conversation through a normal route is denied like anyone else — admin
governs *content* management, not other people's private data. That
keeps the blast radius of a compromised admin account small.

Denials raise Forbidden(resource=...). The error handler renders those
as 404 "not found" so a non-owner can't tell a foreign row from a
missing one; the server log still records the denial.
"""

import uuid
from dataclasses import replace
from enum import Enum
from typing import Union

import structlog

from coachguard.errors import Forbidden
from coachguard.policy.roles import MaintenanceOperation, Principal

logger = structlog.get_logger()


class Action(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


Operation = Union[Action, MaintenanceOperation]


def authorize(
    principal: Principal, owner_id: uuid.UUID, operation: Operation
) -> Decision:
    """Pure decision. No logging, no raising — see enforce()."""
    if principal.identity_id == owner_id:
        return Decision.ALLOW
    if (
        isinstance(operation, MaintenanceOperation)
        and principal.maintenance == operation
        and principal.is_admin
    ):
        return Decision.ALLOW
    return Decision.DENY


def enforce(
    principal: Principal,
    owner_id: uuid.UUID,
    operation: Operation,
    resource: str = "resource",
) -> None:
    """authorize() or raise Forbidden."""
    if authorize(principal, owner_id, operation) == Decision.ALLOW:
        if principal.identity_id != owner_id:
            logger.info(
                "ownership.bypass",
                actor_id=str(principal.identity_id),
                owner_id=str(owner_id),
                operation=operation.value,
                resource=resource,
            )
        return
    logger.warning(
        "ownership.denied",
        actor_id=str(principal.identity_id),
        actor_role=principal.role.value,
        owner_id=str(owner_id),
        operation=operation.value,
        resource=resource,
    )
    raise Forbidden(
        f"{principal.identity_id} may not {operation.value} {resource} of {owner_id}",
        resource=resource,
    )


def maintenance_principal(
    principal: Principal, operation: MaintenanceOperation
) -> Principal:
    """Scope an admin principal to exactly one bypass operation."""
    if not principal.is_admin:
        logger.warning(
            "ownership.maintenance_refused",
            actor_id=str(principal.identity_id),
            operation=operation.value,
        )
        raise Forbidden("Maintenance operations require the admin role")
    return replace(principal, maintenance=operation)


def require_admin(principal: Principal) -> None:
    """Gate for administrative content routes (not for private user data)."""
    if not principal.is_admin:
        logger.warning("policy.admin_required", actor_id=str(principal.identity_id))
        raise Forbidden("Admin privileges required")
