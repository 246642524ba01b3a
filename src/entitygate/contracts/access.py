"""Identity and access-right contracts.

Authentication happens outside the gateway. The gateway only consumes the
resulting identity (to scope mutation transactions) and per-operation access
rights (to decide which tools exist at all).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class RestrictedOperation(StrEnum):
    """Operation classes a role restriction can grant."""

    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


ALL_OPERATIONS: frozenset[RestrictedOperation] = frozenset(RestrictedOperation)


@dataclass(frozen=True, slots=True)
class Restriction:
    """Grant of operations to a role.

    An empty ``operations`` set grants every operation to the role.
    """

    role: str
    operations: frozenset[RestrictedOperation] = frozenset()


@dataclass(frozen=True, slots=True)
class Identity:
    """Caller identity used to tag transactions."""

    user_id: str
    roles: frozenset[str] = frozenset()
    privileged: bool = False

    def has_role(self, role: str) -> bool:
        return self.privileged or role in self.roles


PRIVILEGED_IDENTITY = Identity(user_id="privileged", privileged=True)


@dataclass(frozen=True, slots=True)
class AccessRights:
    """Per-operation booleans gating which modes get synthesized."""

    can_read: bool = False
    can_create: bool = False
    can_update: bool = False
    can_delete: bool = False

    @classmethod
    def full(cls) -> AccessRights:
        return cls(can_read=True, can_create=True, can_update=True, can_delete=True)

    @classmethod
    def from_operations(cls, operations: frozenset[RestrictedOperation]) -> AccessRights:
        return cls(
            can_read=RestrictedOperation.READ in operations,
            can_create=RestrictedOperation.CREATE in operations,
            can_update=RestrictedOperation.UPDATE in operations,
            can_delete=RestrictedOperation.DELETE in operations,
        )

