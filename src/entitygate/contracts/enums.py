"""All tags, modes, and codes used across subsystem boundaries.

Metadata arrives as strings (YAML catalogs, store introspection). Everything
downstream of the catalog works with these enums so that no component has to
re-derive meaning from string content at call time.
"""

from enum import StrEnum


class TypeTag(StrEnum):
    """Abstract scalar type of an entity field.

    Values use the metadata names of the backing store's type system so that
    catalogs can be written by hand ("Integer", "Decimal", ...).
    """

    STRING = "String"
    LARGE_STRING = "LargeString"
    UUID = "UUID"
    BOOLEAN = "Boolean"
    INTEGER = "Integer"
    INT16 = "Int16"
    INT32 = "Int32"
    INT64 = "Int64"
    UINT8 = "UInt8"
    DECIMAL = "Decimal"
    DOUBLE = "Double"
    DATE = "Date"
    TIME = "Time"
    DATETIME = "DateTime"
    TIMESTAMP = "Timestamp"
    BINARY = "Binary"

    @classmethod
    def parse(cls, raw: str) -> "TypeTag":
        """Parse a metadata type name, accepting a ``cds.`` namespace prefix.

        Raises:
            ValueError: If the name is not a known scalar type.
        """
        name = raw.strip()
        if name.startswith("cds."):
            name = name[len("cds.") :]
        try:
            return cls(name)
        except ValueError:
            supported = ", ".join(tag.value for tag in cls)
            raise ValueError(f"Unknown type tag '{raw}'. Supported tags: {supported}") from None


# Integer tags whose whole value range is representable by a JSON number
# without precision loss. Digit strings may be promoted to int for these.
SAFE_INTEGER_TAGS: frozenset[TypeTag] = frozenset({TypeTag.INTEGER, TypeTag.INT16, TypeTag.INT32, TypeTag.UINT8})

UNSIGNED_INTEGER_TAGS: frozenset[TypeTag] = frozenset({TypeTag.UINT8})

# Values of these tags travel as strings so that no JSON number ever loses digits.
PRECISION_SENSITIVE_TAGS: frozenset[TypeTag] = frozenset({TypeTag.INT64, TypeTag.DECIMAL})

FLOAT_TAGS: frozenset[TypeTag] = frozenset({TypeTag.DOUBLE})

TEXT_TAGS: frozenset[TypeTag] = frozenset({TypeTag.STRING, TypeTag.LARGE_STRING, TypeTag.UUID})

TEMPORAL_TAGS: frozenset[TypeTag] = frozenset({TypeTag.DATE, TypeTag.TIME, TypeTag.DATETIME, TypeTag.TIMESTAMP})


class OperationMode(StrEnum):
    """Operations synthesized per entity."""

    QUERY = "query"
    GET = "get"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# Modes that identify exactly one record and are therefore meaningless for keyless entities.
KEYED_MODES: frozenset[OperationMode] = frozenset({OperationMode.GET, OperationMode.UPDATE, OperationMode.DELETE})


class QueryCapability(StrEnum):
    """Query options an entity exposes to callers."""

    FILTER = "filter"
    ORDERBY = "orderby"
    SELECT = "select"
    TOP = "top"
    SKIP = "skip"


class ReturnMode(StrEnum):
    """Result shape of a query call."""

    ROWS = "rows"
    COUNT = "count"
    AGGREGATE = "aggregate"


class ErrorCode(StrEnum):
    """Caller-facing failure taxonomy.

    Every failure leaving the executor carries exactly one of these codes.
    """

    INVALID_INPUT = "INVALID_INPUT"
    ERR_MISSING_SERVICE = "ERR_MISSING_SERVICE"
    FILTER_PARSE_ERROR = "FILTER_PARSE_ERROR"
    MISSING_KEY = "MISSING_KEY"
    NO_FIELDS = "NO_FIELDS"
    QUERY_FAILED = "QUERY_FAILED"
    GET_FAILED = "GET_FAILED"
    CREATE_FAILED = "CREATE_FAILED"
    UPDATE_FAILED = "UPDATE_FAILED"
    DELETE_FAILED = "DELETE_FAILED"
    TIMEOUT = "TIMEOUT"


# Generic execution failure code per operation mode.
FAILURE_CODES: dict[OperationMode, ErrorCode] = {
    OperationMode.QUERY: ErrorCode.QUERY_FAILED,
    OperationMode.GET: ErrorCode.GET_FAILED,
    OperationMode.CREATE: ErrorCode.CREATE_FAILED,
    OperationMode.UPDATE: ErrorCode.UPDATE_FAILED,
    OperationMode.DELETE: ErrorCode.DELETE_FAILED,
}
