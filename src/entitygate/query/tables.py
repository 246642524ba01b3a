# src/entitygate/query/tables.py
"""SQLAlchemy table definitions derived from entity descriptors.

Uses SQLAlchemy Core (not ORM). One ``Table`` per descriptor, with a column
for every scalar field and every generated foreign key. Association fields
themselves have no column.

Values of precision-sensitive tags travel through the gateway as strings;
they are converted to ``int``/``Decimal`` when bound and back to strings
when read.
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    MetaData,
    Numeric,
    SmallInteger,
    String,
    Table,
    Text,
    Time,
)
from sqlalchemy.types import TypeEngine

from entitygate.contracts.entity import EntityDescriptor
from entitygate.contracts.enums import TypeTag

SQL_TYPES: dict[TypeTag, TypeEngine[Any]] = {
    TypeTag.STRING: String(),
    TypeTag.LARGE_STRING: Text(),
    TypeTag.UUID: String(36),
    TypeTag.BOOLEAN: Boolean(),
    TypeTag.INTEGER: Integer(),
    TypeTag.INT16: SmallInteger(),
    TypeTag.INT32: Integer(),
    TypeTag.INT64: BigInteger(),
    TypeTag.UINT8: SmallInteger(),
    TypeTag.DECIMAL: Numeric(asdecimal=True),
    TypeTag.DOUBLE: Float(),
    TypeTag.DATE: Date(),
    TypeTag.TIME: Time(),
    TypeTag.DATETIME: DateTime(),
    TypeTag.TIMESTAMP: DateTime(timezone=True),
    TypeTag.BINARY: Text(),  # base64 text
}


def table_name(descriptor: EntityDescriptor) -> str:
    return descriptor.qualified_name.replace(".", "_")


def table_for(descriptor: EntityDescriptor, metadata: MetaData) -> Table:
    """Return the table for ``descriptor`` in ``metadata``, defining it on first use."""
    name = table_name(descriptor)
    existing = metadata.tables.get(name)
    if existing is not None:
        return existing
    keys = set(descriptor.key_types())
    columns = [
        Column(column, SQL_TYPES[tag], primary_key=column in keys, nullable=column not in keys)
        for column, tag in descriptor.column_types().items()
    ]
    return Table(name, metadata, *columns)


def to_bind_value(value: Any, tag: TypeTag) -> Any:
    """Convert a gateway value to the store's native representation."""
    if isinstance(value, str) and tag is TypeTag.INT64:
        return int(value)
    if isinstance(value, str) and tag is TypeTag.DECIMAL:
        return Decimal(value)
    return value


def from_store_value(value: Any, tag: TypeTag) -> Any:
    """Convert a native store value to its gateway representation."""
    if value is None:
        return None
    if tag is TypeTag.INT64:
        return str(value)
    if tag is TypeTag.DECIMAL:
        return decimal_text(value)
    return value


def decimal_text(value: Any) -> str:
    """Plain (non-exponent) text of a decimal without insignificant zeros."""
    number = value if isinstance(value, Decimal) else Decimal(str(value))
    text = format(number.normalize(), "f")
    return "0" if text in ("-0", "") else text


def bind_payload(descriptor: EntityDescriptor, payload: Mapping[str, Any]) -> dict[str, Any]:
    """Convert every column value of ``payload``; non-column entries are dropped."""
    types = descriptor.column_types()
    return {name: to_bind_value(value, types[name]) for name, value in payload.items() if name in types}


def decode_row(descriptor: EntityDescriptor, row: Mapping[str, Any]) -> dict[str, Any]:
    """Convert a result row to gateway values. Non-column entries pass through."""
    types = descriptor.column_types()
    return {name: from_store_value(value, types[name]) if name in types else value for name, value in row.items()}
