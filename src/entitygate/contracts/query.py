"""Structured query argument models.

These are the fixed-shape parts of every query contract. The schema
synthesizer derives one subclass per entity in which every ``field``
attribute is narrowed to that entity's field-name enum; the base classes
here carry the rules that hold for every entity:

- ``in`` requires a list value, every other operator a scalar
- ``contains``/``startswith``/``endswith`` require a string value
- ``return="aggregate"`` requires a non-empty ``aggregate`` list
- empty ``select``/``orderby``/``where``/``aggregate``/``expand`` lists mean "not given"
- ``expand`` is ``"*"`` (every association) or a list of association names;
  a single name is accepted in place of a one-element list
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from entitygate.contracts.enums import ReturnMode

WhereOperator = Literal["eq", "ne", "gt", "ge", "lt", "le", "contains", "startswith", "endswith", "in"]
AggregateFunction = Literal["sum", "avg", "min", "max", "count"]
OrderDirection = Literal["asc", "desc"]

TEXT_OPERATORS: frozenset[str] = frozenset({"contains", "startswith", "endswith"})
COMPARISON_OPERATORS: frozenset[str] = frozenset({"eq", "ne", "gt", "ge", "lt", "le"})

FilterScalar = str | int | float | bool
FilterValue = FilterScalar | list[str | int | float]

DEFAULT_TOP = 25
MAX_TOP = 200

EXPAND_ALL = "*"


class OrderByClause(BaseModel):
    """One ``field direction`` sort term."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    field: str
    dir: OrderDirection = "asc"


class FilterClause(BaseModel):
    """One ``field op value`` predicate. Clauses are AND-ed together."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    field: str
    op: WhereOperator
    value: FilterValue

    @model_validator(mode="after")
    def _check_value_shape(self) -> FilterClause:
        if self.op == "in":
            if not isinstance(self.value, list):
                raise ValueError("operator 'in' requires a list value")
            if not self.value:
                raise ValueError("operator 'in' requires at least one value")
            return self
        if isinstance(self.value, list):
            raise ValueError(f"operator '{self.op}' requires a single value, not a list")
        if self.op in TEXT_OPERATORS and not isinstance(self.value, str):
            raise ValueError(f"operator '{self.op}' requires a string value")
        return self


class AggregateClause(BaseModel):
    """One ``fn(field)`` aggregate column."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    field: str
    fn: AggregateFunction

    @property
    def column_name(self) -> str:
        """Deterministic result column name, e.g. ``sum_stock``."""
        return f"{self.fn}_{self.field}"


def _empty_to_none(value: Any) -> Any:
    if isinstance(value, list) and not value:
        return None
    return value


class QueryArgs(BaseModel):
    """Validated arguments of a query call.

    External names ``q`` and ``return`` are aliases; Python code uses
    ``free_text`` and ``return_mode``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    top: int = Field(DEFAULT_TOP, ge=1, le=MAX_TOP, description="Rows to return (default 25)")
    skip: int = Field(0, ge=0, description="Rows to skip")
    select: list[str] | None = Field(None, description="Columns to return")
    orderby: list[OrderByClause] | None = Field(None, description="Sort terms, applied in order")
    where: list[FilterClause] | None = Field(None, description="Predicates, all of which must hold")
    free_text: str | None = Field(None, alias="q", description="Quick text search over string fields")
    return_mode: ReturnMode = Field(ReturnMode.ROWS, alias="return", description="rows, count or aggregate")
    aggregate: list[AggregateClause] | None = Field(None, description="Aggregate columns for return=aggregate")
    expand: Literal["*"] | list[str] | None = Field(
        None, description='Associations to include in each row: "*" for all, or a list of association names'
    )

    @field_validator("select", "orderby", "where", "aggregate", mode="before")
    @classmethod
    def _normalize_empty_lists(cls, value: Any) -> Any:
        return _empty_to_none(value)

    @field_validator("expand", mode="before")
    @classmethod
    def _normalize_expand(cls, value: Any) -> Any:
        if isinstance(value, str) and value != EXPAND_ALL:
            return [value]
        if isinstance(value, list) and EXPAND_ALL in value:
            return EXPAND_ALL
        return _empty_to_none(value)

    @field_validator("free_text")
    @classmethod
    def _normalize_empty_text(cls, value: str | None) -> str | None:
        return value or None

    @model_validator(mode="after")
    def _require_aggregate_specs(self) -> QueryArgs:
        if self.return_mode is ReturnMode.AGGREGATE and not self.aggregate:
            raise ValueError("return='aggregate' requires a non-empty 'aggregate' list")
        return self
