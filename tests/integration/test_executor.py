"""End-to-end executor tests on an in-memory SQLite store.

Products is seeded with ten rows; three have stock > 5 (8, 10, 12).
"""

from __future__ import annotations

import asyncio

from entitygate.contracts.access import PRIVILEGED_IDENTITY, Identity
from entitygate.contracts.enums import ErrorCode
from entitygate.core.catalog import EntityCatalog, build_catalog
from entitygate.core.config import GatewaySettings
from entitygate.engine.results import CallStatus, ToolResult
from tests.fixtures.catalogs import NESTED_DOCUMENT
from tests.fixtures.gateway import Gateway

QUERY = "CatalogService_Products_query"
GET = "CatalogService_Products_get"
CREATE = "CatalogService_Products_create"
UPDATE = "CatalogService_Products_update"
DELETE = "CatalogService_Products_delete"

IN_STOCK = {"where": [{"field": "stock", "op": "gt", "value": 5}]}


class TestQuery:
    def test_filtered_rows(self, gateway: Gateway) -> None:
        result = gateway.call(QUERY, IN_STOCK)
        assert result.status is CallStatus.OK
        assert sorted(row["stock"] for row in result.data) == [8, 10, 12]

    def test_count_over_the_same_filter(self, gateway: Gateway) -> None:
        result = gateway.call(QUERY, {**IN_STOCK, "return": "count", "top": 1})
        assert result.data == {"count": 3}

    def test_aggregate_over_the_same_filter(self, gateway: Gateway) -> None:
        arguments = {**IN_STOCK, "return": "aggregate", "aggregate": [{"field": "stock", "fn": "sum"}], "top": 1}
        assert gateway.call(QUERY, arguments).data == {"sum_stock": 30}

    def test_omitted_fields_never_returned(self, gateway: Gateway) -> None:
        rows = gateway.call(QUERY, {}).data
        assert len(rows) == 10
        assert all("internalNote" not in row for row in rows)
        assert set(rows[0]) == {"ID", "title", "stock", "price", "author_ID"}

    def test_select_orderby_and_paging(self, gateway: Gateway) -> None:
        arguments = {"select": ["title", "stock"], "orderby": [{"field": "stock", "dir": "desc"}], "top": 2, "skip": 1}
        assert gateway.call(QUERY, arguments).data == [
            {"title": "Rebecca", "stock": 10},
            {"title": "Dracula", "stock": 8},
        ]

    def test_filter_by_association(self, gateway: Gateway) -> None:
        rows = gateway.call(QUERY, {"where": [{"field": "author", "op": "eq", "value": 7}]}).data
        assert len(rows) == 5
        assert {row["author_ID"] for row in rows} == {7}

    def test_free_text_wildcards_match_literally(self, gateway: Gateway) -> None:
        rows = gateway.call(QUERY, {"q": "%"}).data
        assert [row["title"] for row in rows] == ["Walden 100%"]

    def test_free_text_never_searches_omitted_fields(self, gateway: Gateway) -> None:
        assert gateway.call(QUERY, {"q": "supplier"}).data == []

    def test_invalid_input_reports_issues(self, gateway: Gateway) -> None:
        result = gateway.call(QUERY, {"top": 0})
        assert result.status is CallStatus.ERROR
        assert result.error_code == ErrorCode.INVALID_INPUT
        assert result.error["details"]["issues"][0]["loc"] == ["top"]

    def test_non_object_arguments(self, gateway: Gateway) -> None:
        assert gateway.call(QUERY, ["top", 5]).error_code == ErrorCode.INVALID_INPUT

    def test_bad_literal_is_filter_parse_error(self, gateway: Gateway) -> None:
        result = gateway.call(QUERY, {"where": [{"field": "stock", "op": "eq", "value": "lots"}]})
        assert result.error_code == ErrorCode.FILTER_PARSE_ERROR

    def test_meta_carries_latency_and_timeout(self, gateway: Gateway) -> None:
        meta = gateway.call(QUERY, {}).meta
        assert meta["timeout_ms"] == 5000
        assert meta["latency_ms"] >= 0


class TestExpand:
    AUTHORS = [{"ID": 4, "name": "Austen"}, {"ID": 7, "name": "Woolf"}]

    def test_to_one_record_attached(self, gateway: Gateway) -> None:
        gateway.seed("CatalogService.Authors", self.AUTHORS)
        rows = gateway.call(QUERY, {"select": ["title"], "expand": ["author"], "orderby": [{"field": "ID"}], "top": 2}).data
        assert rows == [
            {"title": "Dune", "author": {"ID": 4, "name": "Austen"}},
            {"title": "Emma", "author": {"ID": 7, "name": "Woolf"}},
        ]

    def test_missing_target_is_null(self, gateway: Gateway) -> None:
        rows = gateway.call(QUERY, {"expand": "*", "top": 1}).data
        assert rows[0]["author"] is None
        assert "internalNote" not in rows[0]

    def test_to_many_records_attached(self, gateway: Gateway) -> None:
        items = [{"product": "Pen", "quantity": 2}, {"product": "Ink", "quantity": 1}]
        invoice_id = gateway.call("SalesService_Invoices_create", {"totalAmount": 4, "items": items}).data["ID"]
        gateway.call("SalesService_Invoices_create", {"totalAmount": 1})

        rows = gateway.call("SalesService_Invoices_query", {"expand": "items", "orderby": [{"field": "totalAmount"}]}).data
        assert rows[0]["items"] == []
        assert sorted((item["product"], item["quantity"]) for item in rows[1]["items"]) == [("Ink", 1), ("Pen", 2)]
        assert {item["invoice_ID"] for item in rows[1]["items"]} == {invoice_id}

    def test_unknown_association_is_invalid_input(self, gateway: Gateway) -> None:
        assert gateway.call(QUERY, {"expand": ["publisher"]}).error_code == ErrorCode.INVALID_INPUT

    def test_count_ignores_expand(self, gateway: Gateway) -> None:
        assert gateway.call(QUERY, {**IN_STOCK, "expand": "*", "return": "count"}).data == {"count": 3}


class TestGet:
    def test_by_key(self, gateway: Gateway) -> None:
        result = gateway.call(GET, {"ID": 3})
        assert result.data["title"] == "Ulysses"
        assert "internalNote" not in result.data

    def test_shorthand_and_case_insensitive_keys(self, gateway: Gateway) -> None:
        assert gateway.call(GET, "3").data["title"] == "Ulysses"
        assert gateway.call(GET, {"id": "3"}).data["title"] == "Ulysses"
        assert gateway.call(GET, {"value": 3}).data["title"] == "Ulysses"

    def test_missing_key(self, gateway: Gateway) -> None:
        result = gateway.call(GET, {"title": "Dune"})
        assert result.error_code == ErrorCode.MISSING_KEY
        assert result.error["details"]["missing"] == ["ID"]

    def test_no_match_returns_null(self, gateway: Gateway) -> None:
        result = gateway.call(GET, {"ID": 999})
        assert result.ok
        assert result.data is None

    def test_strict_key_matching(self, shop_catalog: EntityCatalog) -> None:
        gw = Gateway.build(shop_catalog, GatewaySettings(case_insensitive_keys=False))
        try:
            assert gw.call(GET, {"id": 3}).error_code == ErrorCode.MISSING_KEY
        finally:
            gw.close()


class TestMutations:
    def test_create_and_read_back(self, gateway: Gateway) -> None:
        created = gateway.call(CREATE, {"ID": 11, "title": "Walden", "stock": "4", "author_ID": 4, "internalNote": "x"})
        assert created.ok
        assert created.data == {"ID": 11, "title": "Walden", "stock": 4, "price": None, "author_ID": 4}
        assert gateway.call(GET, {"ID": 11}).data["title"] == "Walden"

    def test_create_generates_integer_key(self, gateway: Gateway) -> None:
        created = gateway.call(CREATE, {"title": "Nostromo"})
        assert created.data["ID"] == 11

    def test_create_rejects_nested_association_object(self, gateway: Gateway) -> None:
        result = gateway.call(CREATE, {"title": "Nostromo", "author": {"ID": 4}})
        assert result.error_code == ErrorCode.INVALID_INPUT

    def test_update_changes_only_given_fields(self, gateway: Gateway) -> None:
        result = gateway.call(UPDATE, {"ID": 1, "stock": 9})
        assert result.data["stock"] == 9
        assert result.data["title"] == "Dune"

    def test_update_without_fields(self, gateway: Gateway) -> None:
        result = gateway.call(UPDATE, {"ID": 1})
        assert result.error_code == ErrorCode.NO_FIELDS

    def test_update_no_match_returns_null(self, gateway: Gateway) -> None:
        result = gateway.call(UPDATE, {"ID": 999, "stock": 1})
        assert result.ok
        assert result.data is None

    def test_delete(self, gateway: Gateway) -> None:
        assert gateway.call(DELETE, {"ID": 2}).data == {"deleted": 1}
        assert gateway.call(GET, {"ID": 2}).data is None
        assert gateway.call(DELETE, {"ID": 2}).data == {"deleted": 0}

    def test_store_failure_maps_to_mode_code(self, gateway: Gateway) -> None:
        # Primary key collision
        result = gateway.call(CREATE, {"ID": 1, "title": "Dune again"})
        assert result.error_code == ErrorCode.CREATE_FAILED
        assert result.error["details"]["error_type"] == "StoreError"


class TestDeepInsert:
    def test_invoice_with_items(self, gateway: Gateway) -> None:
        created = gateway.call(
            "SalesService_Invoices_create",
            {"totalAmount": "12.50", "items": [{"product": "Pen", "quantity": 2}, {"product": "Ink", "quantity": 1}]},
        )
        assert created.ok, created.error
        invoice_id = created.data["ID"]
        assert created.data["totalAmount"] == "12.5"

        items = gateway.call(
            "SalesService_InvoiceItems_query",
            {"where": [{"field": "invoice", "op": "eq", "value": invoice_id}], "orderby": [{"field": "product"}]},
        ).data
        assert [(item["product"], item["quantity"]) for item in items] == [("Ink", 1), ("Pen", 2)]
        assert {item["invoice_ID"] for item in items} == {invoice_id}

    def test_deep_update_replaces_items(self, gateway: Gateway) -> None:
        invoice_id = gateway.call(
            "SalesService_Invoices_create", {"totalAmount": 3, "items": [{"product": "Pen", "quantity": 2}]}
        ).data["ID"]
        gateway.call("SalesService_Invoices_update", {"ID": invoice_id, "items": [{"product": "Ink", "quantity": 5}]})

        items = gateway.call("SalesService_InvoiceItems_query", {}).data
        assert [(item["product"], item["quantity"]) for item in items] == [("Ink", 5)]

    def test_delete_cascades_to_items(self, gateway: Gateway) -> None:
        invoice_id = gateway.call(
            "SalesService_Invoices_create", {"totalAmount": 3, "items": [{"product": "Pen", "quantity": 2}]}
        ).data["ID"]
        assert gateway.call("SalesService_Invoices_delete", {"ID": invoice_id}).data == {"deleted": 1}
        assert gateway.call("SalesService_InvoiceItems_query", {"return": "count"}).data == {"count": 0}


class TestNestedDeepInsert:
    def test_composite_child_key_filled_from_parent(self) -> None:
        gw = Gateway.build(build_catalog(NESTED_DOCUMENT))
        try:
            lines = [{"pos": 1, "qty": 2}, {"pos": 2, "qty": 5}]
            created = gw.call("OrderService_Orders_create", {"ID": 7, "customer": "Ada", "lines": lines})
            assert created.ok, created.error
            lines = gw.call("OrderService_Lines_query", {"orderby": [{"field": "pos"}]}).data
            assert lines == [{"order_ID": 7, "pos": 1, "qty": 2}, {"order_ID": 7, "pos": 2, "qty": 5}]
            assert gw.call("OrderService_Lines_get", {"order_ID": 7, "pos": 2}).data["qty"] == 5
        finally:
            gw.close()

    def test_grandchildren_linked_to_their_parent(self) -> None:
        gw = Gateway.build(build_catalog(NESTED_DOCUMENT))
        try:
            created = gw.call(
                "FolderService_Folders_create",
                {"label": "Inbox", "docs": [{"title": "Memo", "pages": [{"text": "one"}, {"text": "two"}]}]},
            )
            assert created.ok, created.error
            (doc,) = gw.call("FolderService_Docs_query", {}).data
            assert doc["folder_ID"] == created.data["ID"]
            pages = gw.call("FolderService_Pages_query", {"orderby": [{"field": "text"}]}).data
            assert [(page["text"], page["doc_ID"]) for page in pages] == [("one", doc["ID"]), ("two", doc["ID"])]

            assert gw.call("FolderService_Folders_delete", {"ID": created.data["ID"]}).data == {"deleted": 1}
            assert gw.call("FolderService_Pages_query", {"return": "count"}).data == {"count": 0}
        finally:
            gw.close()


class TestServiceResolution:
    def test_missing_service(self, shop_catalog: EntityCatalog) -> None:
        gw = Gateway.build(shop_catalog, skip_services=["SalesService"])
        try:
            result = gw.call("SalesService_Invoices_query", {})
            assert result.error_code == ErrorCode.ERR_MISSING_SERVICE
            assert result.error["details"]["known_services"] == ["CatalogService"]
        finally:
            gw.close()


class TestIdentity:
    def test_transaction_runs_as_caller(self, gateway: Gateway) -> None:
        alice = Identity(user_id="alice")
        assert gateway.call(UPDATE, {"ID": 1, "stock": 2}, identity=alice).ok


class TestConcurrency:
    def test_interleaved_creates_and_counts(self, gateway: Gateway) -> None:
        create = gateway.tools[CREATE].handler
        query = gateway.tools[QUERY].handler

        async def scenario() -> list[ToolResult]:
            creates = [create({"ID": 100 + n, "title": f"Volume {n}"}, PRIVILEGED_IDENTITY) for n in range(5)]
            counts = [query({"return": "count"}, PRIVILEGED_IDENTITY) for _ in range(5)]
            return list(await asyncio.gather(*creates, *counts))

        results = asyncio.run(scenario())
        assert all(result.ok for result in results), [result.error for result in results if not result.ok]
        assert {result.data["count"] for result in results[5:]} <= set(range(10, 16))
        assert gateway.call(QUERY, {"return": "count"}).data == {"count": 15}
