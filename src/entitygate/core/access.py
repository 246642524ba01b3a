"""Access resolution: which operations an identity may perform on an entity."""

from __future__ import annotations

from collections.abc import Iterable

from entitygate.contracts.access import (
    ALL_OPERATIONS,
    PRIVILEGED_IDENTITY,
    AccessRights,
    Identity,
    RestrictedOperation,
    Restriction,
)


def resolve_access(identity: Identity, restrictions: Iterable[Restriction]) -> AccessRights:
    """Resolve per-operation rights for ``identity``.

    - no restrictions: everything is allowed
    - privileged identity: everything is allowed
    - otherwise: the union of operations granted to roles the identity holds;
      a restriction without operations grants all of them
    """
    restrictions = list(restrictions)
    if not restrictions or identity.privileged:
        return AccessRights.full()

    granted: set[RestrictedOperation] = set()
    for restriction in restrictions:
        if identity.has_role(restriction.role):
            granted |= restriction.operations or ALL_OPERATIONS
    return AccessRights.from_operations(frozenset(granted))


def mutation_identity(caller: Identity, auth_mode: str) -> Identity:
    """Identity that scopes a mutation transaction.

    With authentication disabled (``auth: none``) mutations run as the
    privileged identity; otherwise as the caller.
    """
    if auth_mode == "none":
        return PRIVILEGED_IDENTITY
    return caller
