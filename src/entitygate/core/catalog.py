# src/entitygate/core/catalog.py
"""Metadata catalog: entity descriptors loaded from YAML.

The catalog is the arena every descriptor lives in. Relationships between
entities (association targets, deep-insert children) are stored as names and
resolved through the catalog, so cyclic compositions are described without
cyclic object graphs.

Example YAML:
    services:
      SalesService:
        entities:
          Invoices:
            description: Customer invoices
            keys: [ID]
            computed: [ID]
            fields:
              ID: UUID
              totalAmount: Decimal
              items: {association: InvoiceItems, many: true, composition: true}
            deep_insert: [items]
            modes: [query, get, create, update, delete]
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

import structlog
import yaml

from entitygate.contracts.access import RestrictedOperation, Restriction
from entitygate.contracts.entity import AssociationField, DescriptorError, EntityDescriptor, FieldSpec, ScalarField
from entitygate.contracts.enums import OperationMode, QueryCapability, TypeTag

logger = structlog.get_logger(__name__)

_ENTITY_KEYS = frozenset(
    {
        "name",
        "description",
        "keys",
        "fields",
        "computed",
        "omitted",
        "modes",
        "capabilities",
        "tool_name",
        "hint",
        "hints",
        "deep_insert",
        "restrictions",
    }
)
_ASSOCIATION_KEYS = frozenset({"association", "many", "composition", "key", "key_type", "hint"})


class CatalogError(Exception):
    """Raised when catalog metadata is malformed or references unknown entities."""


class EntityCatalog:
    """Qualified entity name -> descriptor, with relative name resolution."""

    def __init__(self, descriptors: Mapping[str, EntityDescriptor] | None = None) -> None:
        self._descriptors: dict[str, EntityDescriptor] = {}
        for descriptor in (descriptors or {}).values():
            self.add(descriptor)

    def add(self, descriptor: EntityDescriptor) -> None:
        if descriptor.qualified_name in self._descriptors:
            raise CatalogError(f"Duplicate entity '{descriptor.qualified_name}'")
        self._descriptors[descriptor.qualified_name] = descriptor

    def find(self, name: str, service: str) -> EntityDescriptor | None:
        """Resolve ``name`` as seen from ``service``.

        Tries, in order: a qualified name, a name inside ``service``, and a
        bare entity name that is unique across the catalog.
        """
        if name in self._descriptors:
            return self._descriptors[name]
        local = self._descriptors.get(f"{service}.{name}")
        if local is not None:
            return local
        bare = name.rsplit(".", 1)[-1]
        matches = [d for d in self._descriptors.values() if d.target_id == bare]
        if len(matches) == 1:
            return matches[0]
        return None

    def resolve(self, name: str, service: str) -> EntityDescriptor:
        descriptor = self.find(name, service)
        if descriptor is None:
            raise CatalogError(f"Unknown entity '{name}' referenced from service '{service}'")
        return descriptor

    def services(self) -> list[str]:
        return sorted({d.owning_service for d in self._descriptors.values()})

    def entities_of(self, service: str) -> list[EntityDescriptor]:
        return [d for d in self._descriptors.values() if d.owning_service == service]

    def __iter__(self) -> Iterator[EntityDescriptor]:
        return iter(self._descriptors.values())

    def __len__(self) -> int:
        return len(self._descriptors)

    def __contains__(self, qualified_name: object) -> bool:
        return qualified_name in self._descriptors


def load_catalog(path: Path) -> EntityCatalog:
    """Load an entity catalog from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        CatalogError: If the document is malformed
    """
    if not path.exists():
        raise FileNotFoundError(f"Catalog file not found: {path}")
    with path.open(encoding="utf-8") as f:
        document = yaml.safe_load(f)
    catalog = build_catalog(document)
    logger.info("Catalog loaded", path=str(path), entities=len(catalog), services=catalog.services())
    return catalog


def build_catalog(document: Any) -> EntityCatalog:
    """Build a catalog from an already-parsed YAML document."""
    if not isinstance(document, dict) or not isinstance(document.get("services"), dict):
        raise CatalogError("Catalog must be a mapping with a 'services' mapping")

    raw_entities: list[tuple[str, str, dict[str, Any]]] = []
    for service, service_body in document["services"].items():
        entities = (service_body or {}).get("entities")
        if not isinstance(entities, dict):
            raise CatalogError(f"Service '{service}' must define an 'entities' mapping")
        for entity_name, body in entities.items():
            if not isinstance(body, dict):
                raise CatalogError(f"Entity '{service}.{entity_name}' must be a mapping")
            unknown = sorted(set(body) - _ENTITY_KEYS)
            if unknown:
                raise CatalogError(f"Entity '{service}.{entity_name}' has unknown keys {unknown}")
            raw_entities.append((str(service), str(entity_name), body))

    # Key types are needed to type foreign keys; collect them before building.
    key_index = _scalar_key_types(raw_entities)

    catalog = EntityCatalog()
    for service, entity_name, body in raw_entities:
        try:
            catalog.add(_build_descriptor(service, entity_name, body, key_index))
        except (CatalogError, DescriptorError, ValueError, TypeError) as e:
            raise CatalogError(f"Entity '{service}.{entity_name}': {e}") from e

    _check_references(catalog)
    return catalog


def _scalar_key_types(raw_entities: list[tuple[str, str, dict[str, Any]]]) -> dict[str, dict[str, TypeTag]]:
    """Qualified entity name -> {scalar field name: tag} for every declared scalar."""
    index: dict[str, dict[str, TypeTag]] = {}
    for service, entity_name, body in raw_entities:
        scalars: dict[str, TypeTag] = {}
        for field_name, spec in (body.get("fields") or {}).items():
            if isinstance(spec, str):
                try:
                    scalars[str(field_name)] = TypeTag.parse(spec)
                except ValueError as e:
                    raise CatalogError(f"Entity '{service}.{entity_name}': field '{field_name}': {e}") from e
        index[f"{service}.{entity_name}"] = scalars
    return index


def _lookup_key_type(
    target: str,
    key_name: str,
    service: str,
    key_index: Mapping[str, Mapping[str, TypeTag]],
) -> TypeTag | None:
    candidates = [target, f"{service}.{target}"]
    for candidate in candidates:
        if candidate in key_index:
            return key_index[candidate].get(key_name)
    bare = target.rsplit(".", 1)[-1]
    matches = [name for name in key_index if name.rsplit(".", 1)[-1] == bare]
    if len(matches) == 1:
        return key_index[matches[0]].get(key_name)
    return None


def _build_fields(
    service: str,
    raw_fields: Mapping[str, Any],
    key_index: Mapping[str, Mapping[str, TypeTag]],
    hints: Mapping[str, str],
) -> dict[str, FieldSpec]:
    associations: dict[str, AssociationField] = {}
    scalars: dict[str, ScalarField] = {}
    order: list[str] = []
    for raw_name, spec in raw_fields.items():
        name = str(raw_name)
        order.append(name)
        if isinstance(spec, str):
            scalars[name] = ScalarField(name, TypeTag.parse(spec), hint=hints.get(name))
            continue
        if not isinstance(spec, dict) or "association" not in spec:
            raise CatalogError(f"field '{name}' must be a type name or an association mapping")
        unknown = sorted(set(spec) - _ASSOCIATION_KEYS)
        if unknown:
            raise CatalogError(f"association '{name}' has unknown keys {unknown}")
        key_name = str(spec.get("key", "ID"))
        if "key_type" in spec:
            key_type = TypeTag.parse(str(spec["key_type"]))
        else:
            key_type = _lookup_key_type(str(spec["association"]), key_name, service, key_index) or TypeTag.STRING
        associations[name] = AssociationField(
            name=name,
            target=str(spec["association"]),
            many=bool(spec.get("many", False)),
            composition=bool(spec.get("composition", False)),
            key_name=key_name,
            key_type=key_type,
            hint=spec.get("hint") or hints.get(name),
        )

    # A foreign key also listed as a scalar is folded into its association; the scalar's type wins.
    for assoc_name, assoc in list(associations.items()):
        fk = assoc.foreign_key
        if fk is not None and fk in scalars:
            folded = scalars.pop(fk)
            order.remove(fk)
            associations[assoc_name] = AssociationField(
                name=assoc.name,
                target=assoc.target,
                many=assoc.many,
                composition=assoc.composition,
                key_name=assoc.key_name,
                key_type=folded.type_tag,
                hint=assoc.hint or folded.hint,
            )

    fields: dict[str, FieldSpec] = {}
    for name in order:
        fields[name] = scalars[name] if name in scalars else associations[name]
    return fields


def _build_descriptor(
    service: str,
    entity_name: str,
    body: Mapping[str, Any],
    key_index: Mapping[str, Mapping[str, TypeTag]],
) -> EntityDescriptor:
    hints = {str(k): str(v) for k, v in (body.get("hints") or {}).items()}
    fields = _build_fields(service, body.get("fields") or {}, key_index, hints)

    fk_owner = {
        spec.foreign_key: name
        for name, spec in fields.items()
        if isinstance(spec, AssociationField) and spec.foreign_key is not None
    }

    def _field_names(key: str) -> list[str]:
        # Foreign key names are accepted wherever their association is.
        return [fk_owner.get(str(n), str(n)) for n in body.get(key) or []]

    deep_insert_raw = body.get("deep_insert") or {}
    if isinstance(deep_insert_raw, list):
        deep_insert: dict[str, str] = {}
        for assoc_name in deep_insert_raw:
            spec = fields.get(str(assoc_name))
            if not isinstance(spec, AssociationField):
                raise CatalogError(f"deep insert '{assoc_name}' must name an association field")
            deep_insert[spec.name] = spec.target
    else:
        deep_insert = {str(k): str(v) for k, v in deep_insert_raw.items()}

    hint = body.get("hint")
    if isinstance(hint, dict):
        hint = {str(OperationMode(str(k))): str(v) for k, v in hint.items()}

    capabilities = body.get("capabilities")
    return EntityDescriptor(
        name=str(body.get("name", entity_name)),
        display_name=str(body.get("description", entity_name)),
        target_id=entity_name,
        owning_service=service,
        fields=fields,
        key_fields=tuple(_field_names("keys")),
        computed_fields=frozenset(_field_names("computed")),
        omitted_fields=frozenset(_field_names("omitted")),
        operation_modes=tuple(OperationMode(str(m)) for m in body.get("modes") or []),
        query_capabilities=(
            frozenset(QueryCapability(str(c)) for c in capabilities)
            if capabilities is not None
            else frozenset(QueryCapability)
        ),
        name_override=body.get("tool_name"),
        hint=hint,
        deep_insert=deep_insert,
        restrictions=tuple(_build_restriction(r) for r in body.get("restrictions") or []),
    )


def _build_restriction(raw: Any) -> Restriction:
    if not isinstance(raw, dict) or "role" not in raw:
        raise CatalogError("restriction must be a mapping with a 'role'")
    operations = frozenset(RestrictedOperation(str(op).upper()) for op in raw.get("operations") or [])
    return Restriction(role=str(raw["role"]), operations=operations)


def _check_references(catalog: EntityCatalog) -> None:
    """Check cross-entity references once every entity is known.

    Deep-insert children must exist, and a to-one association must name a
    column of its target as its key. Unknown association targets are only
    logged; they may live outside the catalog.
    """
    for descriptor in catalog:
        for assoc_name, child_name in descriptor.deep_insert.items():
            if catalog.find(child_name, descriptor.owning_service) is None:
                raise CatalogError(
                    f"Entity '{descriptor.qualified_name}': deep insert '{assoc_name}' targets unknown entity '{child_name}'"
                )
        for assoc in descriptor.associations().values():
            target = catalog.find(assoc.target, descriptor.owning_service)
            if target is None:
                logger.warning(
                    "Association target not in catalog",
                    entity=descriptor.qualified_name,
                    association=assoc.name,
                    target=assoc.target,
                )
                continue
            if assoc.foreign_key is not None and assoc.key_name not in target.column_types():
                raise CatalogError(
                    f"Entity '{descriptor.qualified_name}': association '{assoc.name}' uses key '{assoc.key_name}', "
                    f"which is not a field of '{target.qualified_name}'"
                )
