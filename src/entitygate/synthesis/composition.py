"""Composition expansion for deep-insert write contracts.

A parent entity may own composed children (``Invoices.items`` ->
``InvoiceItems``). Its create/update contract then carries a nested array
whose element contract is built from the child with the ordinary create-field
rules plus two exclusions:

1. The association pointing back at an entity that is still being created
   (the parent, or any ancestor on the current expansion path) is dropped.
2. That association's generated foreign key is dropped as well, even if it is
   part of the child's own key. The store fills it in from the parent.

Expansion keeps an explicit path of qualified entity names. An entity that is
already on the path is never expanded again, so cyclic compositions terminate.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, create_model

from entitygate.contracts.entity import AssociationField, EntityDescriptor, ScalarField
from entitygate.synthesis.types import validator_for


class EntityResolver(Protocol):
    """Looks up descriptors by (possibly relative) entity name."""

    def find(self, name: str, service: str) -> EntityDescriptor | None:
        """Return the descriptor for ``name`` as seen from ``service``, or None."""
        ...


# Config shared by every write contract. Field names come from metadata and
# may legitimately start with "model_".
WRITE_CONFIG = ConfigDict(extra="forbid", protected_namespaces=())


def scalar_description(descriptor: EntityDescriptor, name: str) -> str | None:
    return descriptor.field_hint(name) or None


def foreign_key_description(descriptor: EntityDescriptor, assoc: AssociationField) -> str:
    text = f"Key ({assoc.key_name}) of the associated {assoc.target} for '{assoc.name}'"
    hint = descriptor.field_hint(assoc.name)
    return f"{text}. {hint}" if hint else text


def write_field_definitions(
    descriptor: EntityDescriptor,
    *,
    excluded: frozenset[str] = frozenset(),
    nested: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Build optional ``create_model`` field definitions under the create rules.

    - computed fields and names in ``excluded`` are skipped
    - scalars become optional validators of their type
    - an association listed in ``nested`` uses the supplied nested definition
    - any other to-one association becomes its optional generated foreign key
    - to-many associations without a nested definition are skipped

    Args:
        descriptor: Entity whose fields are written
        excluded: Field names (scalars, associations or foreign keys) to drop
        nested: Association name -> ready-made nested field definition

    Returns:
        Field name -> ``(annotation, FieldInfo)`` tuple
    """
    nested = nested or {}
    definitions: dict[str, Any] = {}
    for name, spec in descriptor.fields.items():
        if name in descriptor.computed_fields or name in excluded:
            continue
        if isinstance(spec, ScalarField):
            definitions[name] = (
                validator_for(spec.type_tag) | None,
                Field(None, description=scalar_description(descriptor, name)),
            )
        elif name in nested:
            definitions[name] = nested[name]
        elif spec.foreign_key is not None and spec.foreign_key not in excluded:
            definitions[spec.foreign_key] = (
                validator_for(spec.key_type) | None,
                Field(None, description=foreign_key_description(descriptor, spec)),
            )
    return definitions


class CompositionExpander:
    """Builds nested write contracts for an entity's deep-insert associations."""

    def __init__(self, resolver: EntityResolver) -> None:
        self._resolver = resolver

    def expand(self, descriptor: EntityDescriptor) -> dict[str, Any]:
        """Return association name -> nested field definition for ``descriptor``.

        The definition is ``(list[ChildModel] | None, FieldInfo)``; nested
        arrays are always optional.
        """
        return self._expand(descriptor, (descriptor.qualified_name,))

    def _expand(self, descriptor: EntityDescriptor, path: tuple[str, ...]) -> dict[str, Any]:
        definitions: dict[str, Any] = {}
        for assoc_name, child_name in descriptor.deep_insert.items():
            child = self._resolver.find(child_name, descriptor.owning_service)
            if child is None or child.qualified_name in path:
                continue
            item_model = self._item_model(descriptor, assoc_name, child, path)
            definitions[assoc_name] = (
                list[item_model] | None,  # type: ignore[valid-type]
                Field(None, description=f"{child.target_id} records created together with this record"),
            )
        return definitions

    def _item_model(
        self,
        parent: EntityDescriptor,
        assoc_name: str,
        child: EntityDescriptor,
        path: tuple[str, ...],
    ) -> type[BaseModel]:
        excluded = self._back_references(child, path)
        child_path = (*path, child.qualified_name)
        nested = {name: definition for name, definition in self._expand(child, child_path).items() if name not in excluded}
        fields = write_field_definitions(child, excluded=excluded, nested=nested)
        return create_model(f"{parent.target_id}_{assoc_name}_Item", __config__=WRITE_CONFIG, **fields)

    def _back_references(self, child: EntityDescriptor, path: tuple[str, ...]) -> frozenset[str]:
        """Association names and foreign keys of ``child`` that point at entities on ``path``."""
        excluded: set[str] = set()
        for assoc in child.associations().values():
            target = self._resolver.find(assoc.target, child.owning_service)
            if target is None or target.qualified_name not in path:
                continue
            excluded.add(assoc.name)
            if assoc.foreign_key is not None:
                excluded.add(assoc.foreign_key)
        return frozenset(excluded)
