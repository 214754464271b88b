"""Roles and the authorization principal."""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Unknown stored values degrade to USER, never to ADMIN."""
        try:
            return cls(value)
        except ValueError:
            return cls.USER


class MaintenanceOperation(str, Enum):
    """The explicit list of operations allowed to cross the owner boundary.

    Anything not named here is subject to plain ownership, admin or not.
    """

    PURGE_IDENTITY = "purge_identity"
    PRUNE_ORPHANED_MESSAGES = "prune_orphaned_messages"


@dataclass(frozen=True)
class Principal:
    """Who is asking, as far as authorization is concerned.

    maintenance is set only by ownership.maintenance_principal() and only
    for admins; a principal built from a request session never carries it.
    """

    identity_id: uuid.UUID
    role: Role = Role.USER
    maintenance: Optional[MaintenanceOperation] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


# Identity used by operator tooling (CLI), with no end-user session behind it.
OPERATOR_ID = uuid.UUID(int=0)


def operator_principal() -> Principal:
    return Principal(identity_id=OPERATOR_ID, role=Role.ADMIN)
