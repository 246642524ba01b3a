"""Schema synthesis: per-mode input contracts for one entity.

Contracts are pydantic models built at registration time with
``create_model`` from the descriptor's resolved field specs:

- query:  ``QueryArgs`` narrowed to the entity's column names
- get:    required keys (skipped when the entity has no keys)
- create: optional writable fields, foreign keys and nested deep-insert arrays
- update: required keys plus the create fields for everything else
- delete: required keys (skipped when the entity has no keys)

The resulting model classes are also the source of the published JSON schema
(``model_json_schema()``), so validation and documentation never diverge.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Annotated, Any, Literal

import structlog
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, create_model

from entitygate.contracts.entity import AssociationField, EntityDescriptor
from entitygate.contracts.enums import KEYED_MODES, OperationMode, QueryCapability
from entitygate.contracts.query import (
    DEFAULT_TOP,
    MAX_TOP,
    AggregateClause,
    FilterClause,
    OrderByClause,
    QueryArgs,
)
from entitygate.synthesis.composition import (
    WRITE_CONFIG,
    CompositionExpander,
    EntityResolver,
    write_field_definitions,
)
from entitygate.synthesis.types import validator_for

logger = structlog.get_logger(__name__)

# get/delete tolerate stray arguments; keys have already been normalized.
KEY_CONFIG = ConfigDict(extra="ignore", protected_namespaces=())


def _reject_any(value: str) -> str:
    raise ValueError(f"'{value}' is not a field of this entity")


def field_name_enum(names: Sequence[str]) -> Any:
    """Annotation accepting exactly ``names``.

    An empty domain still yields a usable annotation that rejects every value.
    """
    if not names:
        return Annotated[str, AfterValidator(_reject_any)]
    return Literal[tuple(names)]  # type: ignore[valid-type]


def filterable_fields(descriptor: EntityDescriptor) -> list[str]:
    """Columns plus to-one association names (rewritten to their foreign key on compile)."""
    names = descriptor.visible_columns()
    for assoc in descriptor.associations().values():
        if assoc.foreign_key is not None and assoc.foreign_key in names:
            names.append(assoc.name)
    return names


class SchemaSynthesizer:
    """Builds the input contracts for every requested mode of an entity.

    Example:
        synthesizer = SchemaSynthesizer(catalog, max_top=200)
        contracts = synthesizer.synthesize(descriptor, [OperationMode.QUERY, OperationMode.GET])
        contracts[OperationMode.GET].model_validate({"ID": 5})
    """

    def __init__(
        self,
        resolver: EntityResolver,
        *,
        max_top: int = MAX_TOP,
        default_top: int = DEFAULT_TOP,
    ) -> None:
        if not 1 <= default_top <= max_top:
            raise ValueError(f"default_top ({default_top}) must lie within [1, {max_top}]")
        self._expander = CompositionExpander(resolver)
        self._max_top = max_top
        self._default_top = default_top

    def synthesize(
        self,
        descriptor: EntityDescriptor,
        modes: Iterable[OperationMode],
    ) -> dict[OperationMode, type[BaseModel]]:
        """Return mode -> contract for every mode that applies to ``descriptor``.

        Keyed modes (get, update, delete) are silently dropped for entities
        without keys.
        """
        builders = {
            OperationMode.QUERY: self.query_contract,
            OperationMode.GET: self.get_contract,
            OperationMode.CREATE: self.create_contract,
            OperationMode.UPDATE: self.update_contract,
            OperationMode.DELETE: self.delete_contract,
        }
        contracts: dict[OperationMode, type[BaseModel]] = {}
        for mode in modes:
            if mode in KEYED_MODES and not descriptor.key_fields:
                logger.debug("Skipping keyed mode for keyless entity", entity=descriptor.qualified_name, mode=mode.value)
                continue
            contracts[mode] = builders[mode](descriptor)
        return contracts

    def query_contract(self, descriptor: EntityDescriptor) -> type[QueryArgs]:
        prefix = descriptor.target_id
        capabilities = descriptor.query_capabilities
        columns = field_name_enum(descriptor.visible_columns())
        where_fields = field_name_enum(filterable_fields(descriptor))

        order_model = create_model(f"{prefix}OrderBy", __base__=OrderByClause, field=(columns, ...))
        filter_model = create_model(f"{prefix}Filter", __base__=FilterClause, field=(where_fields, ...))
        aggregate_model = create_model(f"{prefix}Aggregate", __base__=AggregateClause, field=(columns, ...))

        fields: dict[str, Any] = {
            "aggregate": (
                list[aggregate_model] | None,  # type: ignore[valid-type]
                Field(None, description="Aggregate columns for return=aggregate, named '<fn>_<field>'"),
            ),
        }
        associations = descriptor.expandable_associations()
        if associations:
            fields["expand"] = (
                Literal["*"] | list[field_name_enum(associations)] | None,  # type: ignore[misc]
                Field(None, description=f'Associations to include in each row: "*" for all, or any of: {", ".join(associations)}'),
            )
        else:
            fields["expand"] = (None, Field(None, description="This entity has no associations to expand"))
        if QueryCapability.TOP in capabilities:
            fields["top"] = (
                int,
                Field(self._default_top, ge=1, le=self._max_top, description=f"Rows to return (1-{self._max_top})"),
            )
        else:
            fields["top"] = (Literal[self._default_top], Field(self._default_top, description="Fixed page size"))
        if QueryCapability.SKIP not in capabilities:
            fields["skip"] = (Literal[0], Field(0, description="Paging is not supported"))
        if QueryCapability.SELECT in capabilities:
            fields["select"] = (list[columns] | None, Field(None, description="Columns to return"))  # type: ignore[valid-type]
        else:
            fields["select"] = (None, Field(None, description="Column selection is not supported"))
        if QueryCapability.ORDERBY in capabilities:
            fields["orderby"] = (
                list[order_model] | None,  # type: ignore[valid-type]
                Field(None, description="Sort terms, applied in the given order"),
            )
        else:
            fields["orderby"] = (None, Field(None, description="Sorting is not supported"))
        if QueryCapability.FILTER in capabilities:
            fields["where"] = (
                list[filter_model] | None,  # type: ignore[valid-type]
                Field(None, description="Predicates, all of which must hold"),
            )
        else:
            fields["where"] = (None, Field(None, description="Filtering is not supported"))
            fields["free_text"] = (None, Field(None, alias="q", description="Text search is not supported"))

        return create_model(f"{prefix}QueryArgs", __base__=QueryArgs, **fields)

    def get_contract(self, descriptor: EntityDescriptor) -> type[BaseModel]:
        return create_model(f"{descriptor.target_id}GetArgs", __config__=KEY_CONFIG, **self._key_fields(descriptor))

    def delete_contract(self, descriptor: EntityDescriptor) -> type[BaseModel]:
        return create_model(f"{descriptor.target_id}DeleteArgs", __config__=KEY_CONFIG, **self._key_fields(descriptor))

    def create_contract(self, descriptor: EntityDescriptor) -> type[BaseModel]:
        fields = write_field_definitions(descriptor, nested=self._expander.expand(descriptor))
        return create_model(f"{descriptor.target_id}CreateArgs", __config__=WRITE_CONFIG, **fields)

    def update_contract(self, descriptor: EntityDescriptor) -> type[BaseModel]:
        keys = self._key_fields(descriptor)
        excluded = frozenset(descriptor.key_fields) | frozenset(keys)
        fields = write_field_definitions(descriptor, excluded=excluded, nested=self._expander.expand(descriptor))
        return create_model(f"{descriptor.target_id}UpdateArgs", __config__=WRITE_CONFIG, **keys, **fields)

    def _key_fields(self, descriptor: EntityDescriptor) -> dict[str, Any]:
        definitions: dict[str, Any] = {}
        for name, tag in descriptor.key_types().items():
            owner = descriptor.foreign_keys().get(name)
            if isinstance(owner, AssociationField):
                description = f"Key of the associated {owner.target} ({owner.name})"
            else:
                description = descriptor.field_hint(name) or f"Key field {name}"
            definitions[name] = (validator_for(tag), Field(..., description=description))
        return definitions
