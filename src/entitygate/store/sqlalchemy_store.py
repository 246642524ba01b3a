# src/entitygate/store/sqlalchemy_store.py
"""SQLAlchemy Core reference implementation of the backing-store protocols.

Handles SQLite (development, tests) and any other SQLAlchemy backend. One
table is created per owned entity descriptor. SQLite runs in WAL mode, so
plain reads never see the uncommitted writes of an open transaction.

Blocking database work runs in worker threads via ``anyio.to_thread`` so the
event loop stays responsive and an outer timeout can fire while a statement
is still running.

A transaction that is rolled back while one of its statements is still in a
worker thread is marked abandoned: the statement is allowed to finish, its
result is discarded, and the rollback happens as soon as the thread returns.
An abandoned transaction can never commit.
"""

from __future__ import annotations

import shutil
import tempfile
import threading
import uuid
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from enum import StrEnum
from pathlib import Path
from typing import Any, Self, TypeVar

import structlog
from anyio import to_thread
from sqlalchemy import Connection, MetaData, RootTransaction, Table, and_, create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import Executable

from entitygate.contracts.access import Identity
from entitygate.contracts.entity import AssociationField, EntityDescriptor
from entitygate.contracts.enums import TypeTag
from entitygate.query.tables import bind_payload, decode_row, table_for, to_bind_value
from entitygate.store.protocols import StoreError, TransactionClosedError
from entitygate.synthesis.composition import EntityResolver

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class TransactionState(StrEnum):
    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    ABANDONED = "abandoned"


class SqlAlchemyService:
    """A backing service whose entities live in one SQLAlchemy database."""

    def __init__(
        self,
        name: str,
        engine: Engine,
        descriptors: Iterable[EntityDescriptor],
        resolver: EntityResolver,
        *,
        create_tables: bool = True,
    ) -> None:
        """Initialize the service.

        Args:
            name: Service name, matched against descriptors' owning service
            engine: Configured SQLAlchemy engine
            descriptors: Entities stored by this service
            resolver: Resolves deep-insert children and association targets
            create_tables: Whether to create missing tables
        """
        self.name = name
        self._engine = engine
        self._resolver = resolver
        self._metadata = MetaData()
        self._tables: dict[str, Table] = {}
        self._scratch_dir: str | None = None
        for descriptor in descriptors:
            if descriptor.column_types():
                self._tables[descriptor.qualified_name] = table_for(descriptor, self._metadata)
        if create_tables:
            self._metadata.create_all(engine)

    @classmethod
    def from_url(
        cls,
        name: str,
        url: str,
        descriptors: Iterable[EntityDescriptor],
        resolver: EntityResolver,
        *,
        create_tables: bool = True,
    ) -> Self:
        """Create a service from a SQLAlchemy connection URL.

        In-memory SQLite URLs get a private scratch database file, removed by
        ``close()``. Each transaction then holds its own pooled connection,
        which a single shared in-memory connection cannot provide.
        """
        scratch_dir: str | None = None
        if _is_memory_sqlite(url):
            scratch_dir = tempfile.mkdtemp(prefix="entitygate-")
            url = f"{url.split(':', 1)[0]}:///{Path(scratch_dir) / 'store.db'}"
        if url.startswith("sqlite"):
            engine = create_engine(url, echo=False, connect_args={"check_same_thread": False})
            cls._configure_sqlite(engine)
        else:
            engine = create_engine(url, echo=False)
        try:
            service = cls(name, engine, descriptors, resolver, create_tables=create_tables)
        except Exception:
            engine.dispose()
            if scratch_dir is not None:
                shutil.rmtree(scratch_dir, ignore_errors=True)
            raise
        service._scratch_dir = scratch_dir
        return service

    @classmethod
    def in_memory(cls, name: str, descriptors: Iterable[EntityDescriptor], resolver: EntityResolver) -> Self:
        """Create a service on a private throwaway SQLite database (for testing)."""
        return cls.from_url(name, "sqlite:///:memory:", descriptors, resolver)

    @staticmethod
    def _configure_sqlite(engine: Engine) -> None:
        """Configure SQLite connections.

        Registers a connection event hook that sets:
        - PRAGMA journal_mode=WAL (readers never block on an open writer)
        - PRAGMA foreign_keys=ON
        - PRAGMA busy_timeout=5000 (concurrent writers wait instead of failing)
        """

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection: object, connection_record: object) -> None:
            cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    @property
    def engine(self) -> Engine:
        return self._engine

    def close(self) -> None:
        self._engine.dispose()
        if self._scratch_dir is not None:
            shutil.rmtree(self._scratch_dir, ignore_errors=True)
            self._scratch_dir = None

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        """Connection with automatic commit on success and rollback on error."""
        with self._engine.begin() as conn:
            yield conn

    def table(self, descriptor: EntityDescriptor) -> Table:
        try:
            return self._tables[descriptor.qualified_name]
        except KeyError:
            raise StoreError(f"Entity '{descriptor.qualified_name}' is not stored by service '{self.name}'") from None

    def owns(self, descriptor: EntityDescriptor) -> bool:
        return descriptor.qualified_name in self._tables

    async def execute(self, statement: Executable) -> list[dict[str, Any]]:
        return await to_thread.run_sync(self._execute_sync, statement)

    def _execute_sync(self, statement: Executable) -> list[dict[str, Any]]:
        try:
            with self._engine.connect() as conn:
                return [dict(row) for row in conn.execute(statement).mappings()]
        except SQLAlchemyError as e:
            raise StoreError(_describe(e)) from e

    def transaction(self, identity: Identity) -> SqlAlchemyTransaction:
        return SqlAlchemyTransaction(self, identity)

    def child(self, parent: EntityDescriptor, child_name: str) -> EntityDescriptor:
        child = self._resolver.find(child_name, parent.owning_service)
        if child is None:
            raise StoreError(f"Composed entity '{child_name}' of '{parent.qualified_name}' is not in the catalog")
        return child

    def back_references(self, parent: EntityDescriptor, child: EntityDescriptor) -> list[AssociationField]:
        """To-one associations of ``child`` that point at ``parent``."""
        refs = []
        for assoc in child.associations().values():
            if assoc.foreign_key is None:
                continue
            target = self._resolver.find(assoc.target, child.owning_service)
            if target is not None and target.qualified_name == parent.qualified_name:
                refs.append(assoc)
        return refs


class SqlAlchemyTransaction:
    """Identity-scoped transaction over one pooled connection.

    Every unit of work runs in a worker thread. The connection is checked out
    lazily by the first statement.
    """

    def __init__(self, service: SqlAlchemyService, identity: Identity) -> None:
        self._service = service
        self.identity = identity
        self._lock = threading.Lock()
        self._state = TransactionState.OPEN
        self._in_flight = 0
        self._connection: Connection | None = None
        self._transaction: RootTransaction | None = None

    @property
    def state(self) -> TransactionState:
        return self._state

    async def insert(self, entity: EntityDescriptor, payload: Mapping[str, Any]) -> dict[str, Any]:
        return await self._run(lambda conn: self._insert(conn, entity, payload))

    async def update(
        self,
        entity: EntityDescriptor,
        keys: Mapping[str, Any],
        payload: Mapping[str, Any],
    ) -> dict[str, Any] | None:
        return await self._run(lambda conn: self._update(conn, entity, keys, payload))

    async def delete(self, entity: EntityDescriptor, keys: Mapping[str, Any]) -> int:
        return await self._run(lambda conn: self._delete(conn, entity, keys))

    async def commit(self) -> None:
        await self._run(self._commit, closing=True)

    async def rollback(self) -> None:
        with self._lock:
            if self._state is not TransactionState.OPEN:
                return
            if self._in_flight:
                self._state = TransactionState.ABANDONED
                logger.warning("Transaction abandoned with statement in flight", user=self.identity.user_id)
                return
            self._state = TransactionState.ROLLED_BACK
        await to_thread.run_sync(self._close, False)

    # === Worker-thread plumbing ===

    async def _run(self, work: Callable[[Connection], T], *, closing: bool = False) -> T:
        return await to_thread.run_sync(self._run_sync, work, closing)

    def _run_sync(self, work: Callable[[Connection], T], closing: bool) -> T:
        with self._lock:
            if self._state is not TransactionState.OPEN:
                raise TransactionClosedError(f"Transaction is {self._state.value}")
            self._in_flight += 1
        try:
            conn = self._checkout()
            try:
                result = work(conn)
            except SQLAlchemyError as e:
                raise StoreError(_describe(e)) from e
        finally:
            with self._lock:
                self._in_flight -= 1
                finish_abandoned = self._state is TransactionState.ABANDONED and self._in_flight == 0
            if finish_abandoned:
                self._close(False)
        if finish_abandoned:
            raise TransactionClosedError("Transaction was abandoned; result discarded")
        if closing:
            with self._lock:
                self._state = TransactionState.COMMITTED
        return result

    def _checkout(self) -> Connection:
        if self._connection is None:
            self._connection = self._service.engine.connect()
            self._connection.info["entitygate.user_id"] = self.identity.user_id
            self._transaction = self._connection.begin()
        return self._connection

    def _commit(self, conn: Connection) -> None:
        with self._lock:
            if self._state is TransactionState.ABANDONED:
                raise TransactionClosedError("Transaction was abandoned; refusing to commit")
        if self._transaction is not None:
            self._transaction.commit()
        conn.close()
        self._connection = None
        self._transaction = None

    def _close(self, commit: bool) -> None:
        conn, tx = self._connection, self._transaction
        self._connection = None
        self._transaction = None
        if conn is None:
            return
        try:
            if tx is not None and tx.is_active:
                if commit:
                    tx.commit()
                else:
                    tx.rollback()
        finally:
            conn.close()

    # === Statements (worker thread) ===

    def _key_condition(self, entity: EntityDescriptor, table: Table, keys: Mapping[str, Any]) -> Any:
        key_types = entity.key_types()
        return and_(*(table.c[name] == to_bind_value(keys[name], tag) for name, tag in key_types.items()))

    def _read(self, conn: Connection, entity: EntityDescriptor, keys: Mapping[str, Any]) -> dict[str, Any] | None:
        table = self._service.table(entity)
        row = conn.execute(select(table).where(self._key_condition(entity, table, keys))).mappings().first()
        return decode_row(entity, row) if row is not None else None

    def _insert(self, conn: Connection, entity: EntityDescriptor, payload: Mapping[str, Any]) -> dict[str, Any]:
        table = self._service.table(entity)
        values = bind_payload(entity, payload)
        for name, tag in entity.key_types().items():
            if values.get(name) is None and tag is TypeTag.UUID:
                values[name] = str(uuid.uuid4())

        result = conn.execute(table.insert().values(values))
        if result.inserted_primary_key is not None:
            for column, value in zip(table.primary_key.columns, result.inserted_primary_key, strict=False):
                if value is not None:
                    values.setdefault(column.name, value)

        for assoc_name, child_name in entity.deep_insert.items():
            items = payload.get(assoc_name)
            if items:
                self._insert_children(conn, entity, values, child_name, items)

        keys = {name: values.get(name) for name in entity.key_types()}
        if keys and all(v is not None for v in keys.values()):
            stored = self._read(conn, entity, keys)
            if stored is not None:
                return stored
        return decode_row(entity, values)

    def _insert_children(
        self,
        conn: Connection,
        parent: EntityDescriptor,
        parent_values: Mapping[str, Any],
        child_name: str,
        items: Iterable[Mapping[str, Any]],
    ) -> None:
        child = self._service.child(parent, child_name)
        links = {
            assoc.foreign_key: parent_values.get(assoc.key_name)
            for assoc in self._service.back_references(parent, child)
            if assoc.foreign_key is not None
        }
        for item in items:
            self._insert(conn, child, {**item, **links})

    def _delete_children(self, conn: Connection, parent: EntityDescriptor, parent_row: Mapping[str, Any], child_name: str) -> None:
        child = self._service.child(parent, child_name)
        refs = self._service.back_references(parent, child)
        if not refs:
            return
        table = self._service.table(child)
        condition = and_(
            *(
                table.c[assoc.foreign_key] == to_bind_value(parent_row.get(assoc.key_name), assoc.key_type)
                for assoc in refs
                if assoc.foreign_key is not None
            )
        )
        for nested in self._composed_children(child):
            for row in conn.execute(select(table).where(condition)).mappings().all():
                self._delete_children(conn, child, decode_row(child, row), nested)
        conn.execute(table.delete().where(condition))

    def _composed_children(self, entity: EntityDescriptor) -> list[str]:
        names = dict(entity.deep_insert)
        for assoc in entity.associations().values():
            if assoc.composition and assoc.many:
                names.setdefault(assoc.name, assoc.target)
        return list(names.values())

    def _update(
        self,
        conn: Connection,
        entity: EntityDescriptor,
        keys: Mapping[str, Any],
        payload: Mapping[str, Any],
    ) -> dict[str, Any] | None:
        table = self._service.table(entity)
        key_names = set(entity.key_types())
        values = bind_payload(entity, {k: v for k, v in payload.items() if k not in key_names})
        if values:
            result = conn.execute(table.update().where(self._key_condition(entity, table, keys)).values(values))
            if result.rowcount == 0:
                return None
        current = self._read(conn, entity, keys)
        if current is None:
            return None

        for assoc_name, child_name in entity.deep_insert.items():
            if assoc_name not in payload or payload[assoc_name] is None:
                continue
            # Nested arrays replace the existing composed children.
            self._delete_children(conn, entity, current, child_name)
            self._insert_children(conn, entity, self._bound_keys(entity, current), child_name, payload[assoc_name])
        return current

    def _delete(self, conn: Connection, entity: EntityDescriptor, keys: Mapping[str, Any]) -> int:
        table = self._service.table(entity)
        current = self._read(conn, entity, keys)
        if current is None:
            return 0
        for child_name in self._composed_children(entity):
            self._delete_children(conn, entity, current, child_name)
        return conn.execute(table.delete().where(self._key_condition(entity, table, keys))).rowcount

    @staticmethod
    def _bound_keys(entity: EntityDescriptor, row: Mapping[str, Any]) -> dict[str, Any]:
        types = entity.column_types()
        return {name: to_bind_value(value, types[name]) for name, value in row.items() if name in types}


def _is_memory_sqlite(url: str) -> bool:
    if not url.startswith("sqlite"):
        return False
    return ":memory:" in url or "mode=memory" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:")


def _describe(error: SQLAlchemyError) -> str:
    orig = getattr(error, "orig", None)
    return str(orig) if orig is not None else str(error)
