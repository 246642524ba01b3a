"""Backing-store protocols, the SQLAlchemy reference store and the service registry."""

from entitygate.store.protocols import BackingService, StoreError, Transaction, TransactionClosedError
from entitygate.store.registry import ServiceRegistry
from entitygate.store.sqlalchemy_store import SqlAlchemyService, SqlAlchemyTransaction, TransactionState

__all__ = [
    "BackingService",
    "ServiceRegistry",
    "SqlAlchemyService",
    "SqlAlchemyTransaction",
    "StoreError",
    "Transaction",
    "TransactionClosedError",
    "TransactionState",
]
