"""Query compilation: validated ``QueryArgs`` -> SQLAlchemy Core statements.

The compiler produces a ``CompiledQuery`` that keeps the filtered base
(source table + WHERE conjunction) apart from projection, ordering and
pagination. ``rows()``, ``count()`` and ``aggregate()`` are all rendered from
that one base, so a count or aggregate always covers exactly the rows a row
listing would return before pagination.

Expanded associations are fetched by follow-up statements, one per
association, matching the link values of the returned rows. Only the
target's visible columns are selected.

All literals are bound parameters. Text predicates use LIKE with wildcard
auto-escaping, so caller-supplied ``%`` and ``_`` match literally.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError
from sqlalchemy import ColumnElement, MetaData, Select, Table, false, func, or_, select

from entitygate.contracts.entity import AssociationField, EntityDescriptor
from entitygate.contracts.enums import TEXT_TAGS, ReturnMode, TypeTag
from entitygate.contracts.query import EXPAND_ALL, AggregateClause, FilterClause, OrderByClause, QueryArgs
from entitygate.query.tables import table_for, to_bind_value
from entitygate.synthesis.composition import EntityResolver
from entitygate.synthesis.types import adapter_for, coerce_key_value

_AGGREGATES = {
    "sum": func.sum,
    "avg": func.avg,
    "min": func.min,
    "max": func.max,
    "count": func.count,
}


class QueryCompileError(ValueError):
    """Raised when query arguments cannot be compiled for an entity."""


@dataclass(frozen=True, eq=False)
class Expansion:
    """Follow-up fetch of one association's records for a page of rows.

    Target rows whose ``target_column`` equals a row's ``link_column`` are
    attached to that row under ``name``: a list for to-many associations,
    a single record (or None) for to-one.
    """

    name: str
    target: EntityDescriptor
    table: Table
    many: bool
    link_column: str
    target_column: str

    def link_values(self, rows: Sequence[Mapping[str, Any]]) -> list[Any]:
        values: list[Any] = []
        for row in rows:
            value = row.get(self.link_column)
            if value is not None and value not in values:
                values.append(value)
        return values

    def statement(self, values: Sequence[Any]) -> Select[Any]:
        columns = self.target.visible_columns()
        if self.target_column not in columns:
            columns.append(self.target_column)
        order = [self.table.c[name] for name in self.target.key_types()]
        statement = select(*(self.table.c[name] for name in columns))
        return statement.where(self.table.c[self.target_column].in_(values)).order_by(*order)


@dataclass(frozen=True, eq=False)
class CompiledQuery:
    """A filtered base query plus the shaping applied on top of it.

    Attributes:
        table: Source table
        conditions: WHERE conjunction shared by every rendered shape
        columns: Projected column names for ``rows()``
        order_by: Ordering terms for ``rows()``, in caller order
        limit: Row limit for ``rows()``
        offset: Row offset for ``rows()``
        expansions: Associations fetched after ``rows()``
        link_columns: Extra columns ``rows()`` projects only to match expansions
    """

    table: Table
    conditions: tuple[ColumnElement[bool], ...]
    columns: tuple[str, ...]
    order_by: tuple[ColumnElement[Any], ...] = ()
    limit: int | None = None
    offset: int = 0
    expansions: tuple[Expansion, ...] = ()
    link_columns: tuple[str, ...] = ()

    def rows(self) -> Select[Any]:
        if not self.columns:
            raise QueryCompileError(f"Entity table '{self.table.name}' has no visible columns to select")
        projected = (*self.columns, *self.link_columns)
        statement = select(*(self.table.c[name] for name in projected)).where(*self.conditions)
        if self.order_by:
            statement = statement.order_by(*self.order_by)
        if self.limit is not None:
            statement = statement.limit(self.limit)
        if self.offset:
            statement = statement.offset(self.offset)
        return statement

    def count(self) -> Select[Any]:
        """Single ``count`` column over the whole filtered base."""
        return select(func.count().label("count")).select_from(self.table).where(*self.conditions)

    def aggregate(self, specs: Sequence[AggregateClause]) -> Select[Any]:
        """One ``<fn>_<field>`` column per spec over the whole filtered base."""
        if not specs:
            raise QueryCompileError("aggregate requires at least one aggregate column")
        aggregates = []
        for spec in specs:
            if spec.field not in self.table.c:
                raise QueryCompileError(f"Unknown aggregate field '{spec.field}'")
            aggregates.append(_AGGREGATES[spec.fn](self.table.c[spec.field]).label(spec.column_name))
        return select(*aggregates).select_from(self.table).where(*self.conditions)

    def statement(self, return_mode: ReturnMode, specs: Sequence[AggregateClause] | None = None) -> Select[Any]:
        if return_mode is ReturnMode.COUNT:
            return self.count()
        if return_mode is ReturnMode.AGGREGATE:
            return self.aggregate(specs or ())
        return self.rows()


class QueryCompiler:
    """Compiles query and key-lookup arguments against descriptor tables.

    Tables are defined lazily in the compiler's own ``MetaData``; statements
    only refer to tables by name, so they run against any store that created
    its tables from the same descriptors.
    """

    def __init__(self, metadata: MetaData | None = None, resolver: EntityResolver | None = None) -> None:
        self._metadata = metadata if metadata is not None else MetaData()
        self._resolver = resolver

    def table(self, descriptor: EntityDescriptor) -> Table:
        return table_for(descriptor, self._metadata)

    def compile(self, descriptor: EntityDescriptor, args: QueryArgs) -> CompiledQuery:
        """Compile validated query arguments.

        Raises:
            QueryCompileError: If a field is unknown or hidden, or a literal
                does not fit its column type.
        """
        table = self.table(descriptor)
        visible = descriptor.visible_columns()

        conditions: list[ColumnElement[bool]] = []
        if args.free_text:
            conditions.append(self._free_text(descriptor, table, args.free_text))
        for clause in args.where or ():
            conditions.append(self._condition(descriptor, table, clause))

        columns = tuple(self._column(descriptor, name) for name in args.select) if args.select else tuple(visible)
        order_by = tuple(self._order_term(descriptor, table, term) for term in args.orderby or ())

        if args.aggregate:
            for spec in args.aggregate:
                self._column(descriptor, spec.field)

        expansions: tuple[Expansion, ...] = ()
        link_columns: list[str] = []
        if args.expand and args.return_mode is ReturnMode.ROWS:
            expansions = tuple(self._expansion(descriptor, name) for name in self._expanded_names(descriptor, args.expand))
            for expansion in expansions:
                if expansion.link_column not in columns and expansion.link_column not in link_columns:
                    link_columns.append(expansion.link_column)

        return CompiledQuery(
            table=table,
            conditions=tuple(conditions),
            columns=columns,
            order_by=order_by,
            limit=args.top,
            offset=args.skip,
            expansions=expansions,
            link_columns=tuple(link_columns),
        )

    def key_lookup(self, descriptor: EntityDescriptor, keys: Mapping[str, Any]) -> CompiledQuery:
        """Compile an exact match on every key column, returning at most one row."""
        table = self.table(descriptor)
        key_types = descriptor.key_types()
        conditions = tuple(
            table.c[name] == self._literal(value, key_types[name], name) for name, value in keys.items() if name in key_types
        )
        if len(conditions) != len(key_types):
            raise QueryCompileError(f"Key lookup on '{descriptor.qualified_name}' requires keys {list(key_types)}")
        return CompiledQuery(table=table, conditions=conditions, columns=tuple(descriptor.visible_columns()), limit=1)

    @staticmethod
    def _expanded_names(descriptor: EntityDescriptor, expand: str | Sequence[str]) -> list[str]:
        expandable = descriptor.expandable_associations()
        if expand == EXPAND_ALL:
            return expandable
        names: list[str] = []
        for name in expand:
            if name not in expandable:
                raise QueryCompileError(f"Unknown association '{name}' for entity '{descriptor.qualified_name}'")
            if name not in names:
                names.append(name)
        return names

    def _expansion(self, descriptor: EntityDescriptor, name: str) -> Expansion:
        """Resolve the link between ``descriptor`` rows and the records of association ``name``.

        To-one associations match the row's foreign key against the target's
        key column. To-many associations match the row's key against the
        foreign key of the target's association pointing back at
        ``descriptor``.
        """
        assoc = descriptor.associations()[name]
        if self._resolver is None:
            raise QueryCompileError(f"Association '{name}' cannot be expanded without an entity catalog")
        target = self._resolver.find(assoc.target, descriptor.owning_service)
        if target is None:
            raise QueryCompileError(f"Association '{name}' targets '{assoc.target}', which is not in the catalog")
        table = self.table(target)

        if assoc.foreign_key is not None:
            link_column, target_column = assoc.foreign_key, assoc.key_name
        else:
            back = _back_reference(self._resolver, descriptor, target)
            if back is None:
                raise QueryCompileError(
                    f"To-many association '{name}' cannot be expanded: '{target.qualified_name}' has no association back to "
                    f"'{descriptor.qualified_name}'"
                )
            link_column, target_column = back.key_name, back.foreign_key  # type: ignore[assignment]
        if link_column not in descriptor.column_types():
            raise QueryCompileError(f"Association '{name}' links through unknown column '{link_column}'")
        return Expansion(
            name=name,
            target=target,
            table=table,
            many=assoc.many,
            link_column=link_column,
            target_column=target_column,
        )

    def _column(self, descriptor: EntityDescriptor, name: str) -> str:
        """Resolve a caller field name to a visible column, rewriting associations to their foreign key."""
        spec = descriptor.fields.get(name)
        column = name
        if isinstance(spec, AssociationField):
            if spec.foreign_key is None:
                raise QueryCompileError(f"To-many association '{name}' cannot be used as a column")
            column = spec.foreign_key
        if column not in descriptor.visible_columns():
            raise QueryCompileError(f"Unknown field '{name}' for entity '{descriptor.qualified_name}'")
        return column

    def _condition(self, descriptor: EntityDescriptor, table: Table, clause: FilterClause) -> ColumnElement[bool]:
        name = self._column(descriptor, clause.field)
        column = table.c[name]
        tag = descriptor.column_types()[name]

        if clause.op == "in":
            values = clause.value if isinstance(clause.value, list) else [clause.value]
            return column.in_([self._literal(v, tag, clause.field) for v in values])
        if clause.op in ("contains", "startswith", "endswith"):
            if tag not in TEXT_TAGS:
                raise QueryCompileError(f"Operator '{clause.op}' requires a text field, '{clause.field}' is {tag}")
            text = self._literal(clause.value, tag, clause.field)
            if clause.op == "contains":
                return column.contains(text, autoescape=True)
            if clause.op == "startswith":
                return column.startswith(text, autoescape=True)
            return column.endswith(text, autoescape=True)

        value = self._literal(clause.value, tag, clause.field)
        if clause.op == "eq":
            return column == value
        if clause.op == "ne":
            return column != value
        if clause.op == "gt":
            return column > value
        if clause.op == "ge":
            return column >= value
        if clause.op == "lt":
            return column < value
        if clause.op == "le":
            return column <= value
        raise QueryCompileError(f"Unsupported operator '{clause.op}'")

    def _free_text(self, descriptor: EntityDescriptor, table: Table, text: str) -> ColumnElement[bool]:
        searchable = descriptor.text_columns()
        if not searchable:
            return false()
        return or_(*(table.c[name].contains(text, autoescape=True) for name in searchable)).self_group()

    def _order_term(self, descriptor: EntityDescriptor, table: Table, term: OrderByClause) -> ColumnElement[Any]:
        column = table.c[self._column(descriptor, term.field)]
        return column.desc() if term.dir == "desc" else column.asc()

    @staticmethod
    def _literal(value: Any, tag: TypeTag, field_name: str) -> Any:
        """Validate a filter literal against its column type and convert it for binding."""
        try:
            validated = adapter_for(tag).validate_python(coerce_key_value(value, tag))
        except ValidationError as e:
            reason = e.errors()[0]["msg"] if e.errors() else str(e)
            raise QueryCompileError(f"Invalid value {value!r} for field '{field_name}': {reason}") from e
        return to_bind_value(validated, tag)


def _back_reference(resolver: EntityResolver, parent: EntityDescriptor, child: EntityDescriptor) -> AssociationField | None:
    """First to-one association of ``child`` that points at ``parent``."""
    for assoc in child.associations().values():
        if assoc.foreign_key is None:
            continue
        resolved = resolver.find(assoc.target, child.owning_service)
        if resolved is not None and resolved.qualified_name == parent.qualified_name:
            return assoc
    return None
