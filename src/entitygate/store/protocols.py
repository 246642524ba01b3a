# src/entitygate/store/protocols.py
"""Backing-store protocols.

The executor talks to live stores only through these protocols:

- ``BackingService`` runs compiled read statements and opens transactions
- ``Transaction`` performs identity-scoped writes with explicit commit/rollback

``store/sqlalchemy_store.py`` provides the SQLAlchemy Core implementation.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from sqlalchemy.sql import Executable

from entitygate.contracts.access import Identity
from entitygate.contracts.entity import EntityDescriptor


class StoreError(Exception):
    """Raised when the backing store rejects or fails a statement."""


class TransactionClosedError(StoreError):
    """Raised when work is attempted on a committed, rolled back or abandoned transaction."""


@runtime_checkable
class Transaction(Protocol):
    """One unit of write work tagged with a caller identity."""

    identity: Identity

    async def insert(self, entity: EntityDescriptor, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Insert one record (and any nested deep-insert children).

        Returns:
            The stored record, including store-generated values
        """
        ...

    async def update(
        self,
        entity: EntityDescriptor,
        keys: Mapping[str, Any],
        payload: Mapping[str, Any],
    ) -> dict[str, Any] | None:
        """Update the record identified by ``keys``.

        Returns:
            The updated record, or None if no record matched
        """
        ...

    async def delete(self, entity: EntityDescriptor, keys: Mapping[str, Any]) -> int:
        """Delete the record identified by ``keys``; returns the number of records deleted."""
        ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None:
        """Roll back. Safe to call more than once and after a failed commit."""
        ...


@runtime_checkable
class BackingService(Protocol):
    """A live service owning a set of entities."""

    name: str

    async def execute(self, statement: Executable) -> list[dict[str, Any]]:
        """Run a read statement and return its rows as dicts."""
        ...

    def transaction(self, identity: Identity) -> Transaction:
        """Open a transaction scoped to ``identity``."""
        ...
