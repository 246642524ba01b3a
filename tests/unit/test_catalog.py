"""Tests for the YAML metadata catalog."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import pytest
import yaml

from entitygate.contracts.access import RestrictedOperation
from entitygate.contracts.entity import AssociationField, ScalarField
from entitygate.contracts.enums import OperationMode, QueryCapability, TypeTag
from entitygate.core.catalog import CatalogError, EntityCatalog, build_catalog, load_catalog
from tests.fixtures.catalogs import SHOP_DOCUMENT


def _document(**products_overrides: Any) -> dict[str, Any]:
    document = copy.deepcopy(SHOP_DOCUMENT)
    document["services"]["CatalogService"]["entities"]["Products"].update(products_overrides)
    return document


class TestBuildCatalog:
    def test_qualified_names(self, shop_catalog: EntityCatalog) -> None:
        assert "CatalogService.Products" in shop_catalog
        assert len(shop_catalog) == 4
        assert shop_catalog.services() == ["CatalogService", "SalesService"]

    def test_fields_resolved_into_tagged_union(self, shop_catalog: EntityCatalog) -> None:
        products = shop_catalog.resolve("CatalogService.Products", "")
        assert products.fields["title"] == ScalarField("title", TypeTag.STRING)
        assert isinstance(products.fields["author"], AssociationField)

    def test_foreign_key_typed_as_target_key(self, shop_catalog: EntityCatalog) -> None:
        products = shop_catalog.resolve("CatalogService.Products", "")
        assert products.column_types()["author_ID"] is TypeTag.INTEGER

    def test_foreign_key_listed_as_scalar_is_folded(self) -> None:
        fields = dict(SHOP_DOCUMENT["services"]["CatalogService"]["entities"]["Products"]["fields"])
        fields["author_ID"] = "Int64"
        catalog = build_catalog(_document(fields=fields))
        products = catalog.resolve("CatalogService.Products", "")
        assert "author_ID" not in products.fields
        assert products.fields["author"] == AssociationField(
            "author", target="Authors", key_type=TypeTag.INT64
        )

    def test_keys_may_name_the_foreign_key(self) -> None:
        catalog = build_catalog(_document(keys=["author_ID"]))
        products = catalog.resolve("CatalogService.Products", "")
        assert products.key_fields == ("author",)

    def test_modes_capabilities_and_hints(self, shop_catalog: EntityCatalog) -> None:
        products = shop_catalog.resolve("CatalogService.Products", "")
        assert products.operation_modes == tuple(OperationMode)
        assert products.query_capabilities == frozenset(QueryCapability)
        assert products.field_hint("stock") == "Units on hand"
        assert products.mode_hint(OperationMode.QUERY) == "Prefer filtering by author_ID."

    def test_deep_insert_list_resolves_targets(self, shop_catalog: EntityCatalog) -> None:
        invoices = shop_catalog.resolve("SalesService.Invoices", "")
        assert dict(invoices.deep_insert) == {"items": "InvoiceItems"}

    def test_restrictions(self) -> None:
        catalog = build_catalog(_document(restrictions=[{"role": "support", "operations": ["read", "Update"]}]))
        restriction = catalog.resolve("CatalogService.Products", "").restrictions[0]
        assert restriction.role == "support"
        assert restriction.operations == frozenset({RestrictedOperation.READ, RestrictedOperation.UPDATE})


class TestCatalogErrors:
    def test_missing_services(self) -> None:
        with pytest.raises(CatalogError, match="services"):
            build_catalog({"entities": {}})

    def test_unknown_entity_key(self) -> None:
        with pytest.raises(CatalogError, match="unknown keys"):
            build_catalog(_document(colour="blue"))

    def test_unknown_type_tag(self) -> None:
        fields = {"ID": "Integer", "price": "Money"}
        with pytest.raises(CatalogError, match="Money"):
            build_catalog(_document(fields=fields))

    def test_descriptor_errors_carry_entity_name(self) -> None:
        with pytest.raises(CatalogError, match="CatalogService.Products"):
            build_catalog(_document(keys=["nope"]))

    def test_unknown_mode(self) -> None:
        with pytest.raises(CatalogError):
            build_catalog(_document(modes=["query", "upsert"]))

    def test_unknown_deep_insert_child(self) -> None:
        document = copy.deepcopy(SHOP_DOCUMENT)
        document["services"]["SalesService"]["entities"]["Invoices"]["deep_insert"] = {"items": "Nowhere"}
        with pytest.raises(CatalogError, match="Nowhere"):
            build_catalog(document)

    def test_association_key_missing_on_target(self) -> None:
        fields = dict(SHOP_DOCUMENT["services"]["CatalogService"]["entities"]["Products"]["fields"])
        fields["author"] = {"association": "Authors", "key": "isbn"}
        with pytest.raises(CatalogError, match="association 'author' uses key 'isbn'"):
            build_catalog(_document(fields=fields))

    def test_association_key_may_be_any_target_field(self) -> None:
        fields = dict(SHOP_DOCUMENT["services"]["CatalogService"]["entities"]["Products"]["fields"])
        fields["author"] = {"association": "Authors", "key": "name"}
        products = build_catalog(_document(fields=fields)).resolve("CatalogService.Products", "")
        assert products.column_types()["author_name"] is TypeTag.STRING

    def test_unknown_association_target_is_tolerated(self) -> None:
        fields = dict(SHOP_DOCUMENT["services"]["CatalogService"]["entities"]["Products"]["fields"])
        fields["publisher"] = {"association": "Publishers", "key_type": "Integer"}
        products = build_catalog(_document(fields=fields)).resolve("CatalogService.Products", "")
        assert products.column_types()["publisher_ID"] is TypeTag.INTEGER


class TestResolution:
    def test_same_service_name(self, shop_catalog: EntityCatalog) -> None:
        assert shop_catalog.resolve("Invoices", "SalesService").qualified_name == "SalesService.Invoices"

    def test_unique_bare_name_across_services(self, shop_catalog: EntityCatalog) -> None:
        assert shop_catalog.resolve("Authors", "SalesService").qualified_name == "CatalogService.Authors"

    def test_unknown_name(self, shop_catalog: EntityCatalog) -> None:
        assert shop_catalog.find("Publishers", "CatalogService") is None
        with pytest.raises(CatalogError, match="Publishers"):
            shop_catalog.resolve("Publishers", "CatalogService")

    def test_duplicate_entity_rejected(self, shop_catalog: EntityCatalog) -> None:
        with pytest.raises(CatalogError, match="Duplicate"):
            shop_catalog.add(shop_catalog.resolve("CatalogService.Products", ""))


class TestLoadCatalog:
    def test_loads_yaml_file(self, tmp_path: Path) -> None:
        path = tmp_path / "catalog.yaml"
        path.write_text(yaml.safe_dump(SHOP_DOCUMENT), encoding="utf-8")
        catalog = load_catalog(path)
        assert len(catalog) == 4

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_catalog(tmp_path / "absent.yaml")
