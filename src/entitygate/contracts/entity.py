"""Entity descriptor contracts.

An ``EntityDescriptor`` is the declarative shape of one data entity: its
fields, keys, relationships, and the markers that decide what callers may
write and what they may see. Descriptors are built once by the metadata
catalog and are immutable for the life of the process.

Every field is resolved up front into a tagged union::

    FieldSpec = ScalarField | AssociationField

so that operation synthesis never has to guess whether a field is an
association from its type string.

Example:
    EntityDescriptor(
        name="Invoices",
        display_name="Customer invoices",
        target_id="Invoices",
        owning_service="SalesService",
        fields={
            "ID": ScalarField("ID", TypeTag.UUID),
            "totalAmount": ScalarField("totalAmount", TypeTag.DECIMAL),
            "items": AssociationField("items", target="InvoiceItems", many=True, composition=True),
        },
        key_fields=("ID",),
        computed_fields=frozenset({"ID"}),
        deep_insert={"items": "InvoiceItems"},
    )
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from entitygate.contracts.access import Restriction
from entitygate.contracts.enums import TEXT_TAGS, OperationMode, QueryCapability, TypeTag


class DescriptorError(ValueError):
    """Raised when an entity descriptor is structurally inconsistent."""


@dataclass(frozen=True, slots=True)
class ScalarField:
    """A plain column of the entity."""

    name: str
    type_tag: TypeTag
    hint: str | None = None


@dataclass(frozen=True, slots=True)
class AssociationField:
    """A relationship to another entity.

    A to-one association is written and filtered only through its generated
    foreign key (``<name>_<key_name>``). A to-many association has no column
    on the owning entity at all.

    Attributes:
        name: Association element name (e.g. "author")
        target: Target entity name, qualified or relative to the owning service
        many: True for to-many associations
        composition: True when the target's lifecycle is owned by this entity
        key_name: Key element of the target the foreign key points at
        key_type: Type of the target key, and therefore of the foreign key
    """

    name: str
    target: str
    many: bool = False
    composition: bool = False
    key_name: str = "ID"
    key_type: TypeTag = TypeTag.STRING
    hint: str | None = None

    @property
    def foreign_key(self) -> str | None:
        """Generated foreign key name, or None for to-many associations."""
        if self.many:
            return None
        return f"{self.name}_{self.key_name}"


FieldSpec = ScalarField | AssociationField

ALL_QUERY_CAPABILITIES: frozenset[QueryCapability] = frozenset(QueryCapability)


@dataclass(frozen=True, eq=False)
class EntityDescriptor:
    """Declarative shape of one entity, supplied by the metadata catalog.

    Attributes:
        name: Logical name of the exposed resource
        display_name: Human-readable description used in tool descriptions
        target_id: Entity name inside its service (e.g. "Books")
        owning_service: Name of the backing service that owns the entity
        fields: Field name -> resolved field spec, in declaration order
        key_fields: Key element names (scalar or association)
        computed_fields: Store-derived fields, excluded from every write contract
        omitted_fields: Fields stripped from every response payload
        operation_modes: Requested modes; empty means "use the gateway default"
        query_capabilities: Query options callers may use
        name_override: Custom tool name prefix replacing "<service>_<entity>"
        hint: Extra guidance appended to tool descriptions, either one text
            for all modes or a per-mode mapping
        deep_insert: Association name -> composed child entity name
        restrictions: Role grants consumed by the access resolver
    """

    name: str
    display_name: str
    target_id: str
    owning_service: str
    fields: Mapping[str, FieldSpec]
    key_fields: tuple[str, ...] = ()
    computed_fields: frozenset[str] = frozenset()
    omitted_fields: frozenset[str] = frozenset()
    operation_modes: tuple[OperationMode, ...] = ()
    query_capabilities: frozenset[QueryCapability] = ALL_QUERY_CAPABILITIES
    name_override: str | None = None
    hint: str | Mapping[str, str] | None = None
    deep_insert: Mapping[str, str] = field(default_factory=dict)
    restrictions: tuple[Restriction, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))
        object.__setattr__(self, "deep_insert", MappingProxyType(dict(self.deep_insert)))
        self._validate()

    def _validate(self) -> None:
        where = self.qualified_name
        for field_name, spec in self.fields.items():
            if field_name != spec.name:
                raise DescriptorError(f"{where}: field '{field_name}' is registered under a different name '{spec.name}'")

        missing_keys = [k for k in self.key_fields if k not in self.fields]
        if missing_keys:
            raise DescriptorError(f"{where}: key fields {missing_keys} are not declared fields")

        for label, names in (("computed", self.computed_fields), ("omitted", self.omitted_fields)):
            unknown = sorted(names - self.fields.keys())
            if unknown:
                raise DescriptorError(f"{where}: {label} fields {unknown} are not declared fields")

        for assoc_name in self.deep_insert:
            if not isinstance(self.fields.get(assoc_name), AssociationField):
                raise DescriptorError(f"{where}: deep insert '{assoc_name}' must name an association field")

        for assoc in self.associations().values():
            fk = assoc.foreign_key
            if fk is not None and fk in self.fields:
                raise DescriptorError(
                    f"{where}: '{fk}' is generated by association '{assoc.name}' and must not be declared as a separate field"
                )
            if assoc.many and assoc.name in self.key_fields:
                raise DescriptorError(f"{where}: to-many association '{assoc.name}' cannot be a key")

    @property
    def qualified_name(self) -> str:
        return f"{self.owning_service}.{self.target_id}"

    def scalars(self) -> dict[str, ScalarField]:
        return {n: f for n, f in self.fields.items() if isinstance(f, ScalarField)}

    def associations(self) -> dict[str, AssociationField]:
        return {n: f for n, f in self.fields.items() if isinstance(f, AssociationField)}

    def expandable_associations(self) -> list[str]:
        """Association names whose records a query may include, in declaration order."""
        return [name for name in self.associations() if name not in self.omitted_fields]

    def foreign_keys(self) -> dict[str, AssociationField]:
        """Generated foreign key name -> owning to-one association."""
        return {a.foreign_key: a for a in self.associations().values() if a.foreign_key is not None}

    def key_types(self) -> dict[str, TypeTag]:
        """Key argument name -> type.

        Association keys are addressed through their generated foreign key
        and typed as the target's key type.
        """
        result: dict[str, TypeTag] = {}
        for key in self.key_fields:
            spec = self.fields[key]
            if isinstance(spec, AssociationField):
                # _validate guarantees key associations are to-one
                result[spec.foreign_key] = spec.key_type  # type: ignore[index]
            else:
                result[key] = spec.type_tag
        return result

    def column_types(self) -> dict[str, TypeTag]:
        """Every store column -> type: scalars plus generated foreign keys."""
        columns: dict[str, TypeTag] = {}
        for name, spec in self.fields.items():
            if isinstance(spec, ScalarField):
                columns[name] = spec.type_tag
            elif spec.foreign_key is not None:
                columns[spec.foreign_key] = spec.key_type
        return columns

    def visible_columns(self) -> list[str]:
        """Columns that may appear in responses, in declaration order."""
        hidden = self.hidden_columns()
        return [c for c in self.column_types() if c not in hidden]

    def text_columns(self) -> list[str]:
        """Visible string-typed scalar columns, searched by free-text queries."""
        hidden = self.hidden_columns()
        return [n for n, f in self.scalars().items() if f.type_tag in TEXT_TAGS and n not in hidden]

    def hidden_columns(self) -> set[str]:
        """Omitted fields plus the foreign keys of omitted associations."""
        hidden = set(self.omitted_fields)
        for name in self.omitted_fields:
            spec = self.fields[name]
            if isinstance(spec, AssociationField) and spec.foreign_key is not None:
                hidden.add(spec.foreign_key)
        return hidden

    def field_hint(self, name: str) -> str:
        spec = self.fields.get(name)
        if spec is None:
            fk_owner = self.foreign_keys().get(name)
            return (fk_owner.hint or "") if fk_owner else ""
        return spec.hint or ""

    def mode_hint(self, mode: OperationMode) -> str:
        if self.hint is None:
            return ""
        if isinstance(self.hint, str):
            return self.hint
        return self.hint.get(mode.value, "")
