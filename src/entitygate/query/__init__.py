"""Query compilation against descriptor-derived SQLAlchemy tables."""

from entitygate.query.compiler import CompiledQuery, QueryCompileError, QueryCompiler
from entitygate.query.tables import SQL_TYPES, bind_payload, decode_row, table_for

__all__ = [
    "SQL_TYPES",
    "CompiledQuery",
    "QueryCompileError",
    "QueryCompiler",
    "bind_payload",
    "decode_row",
    "table_for",
]
