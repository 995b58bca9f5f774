"""Tests for UpsertSink: idempotent upserts, child-set replacement, dedupe and failure accounting."""

import pytest

from kvsync.sync.entities import CUSTOMERS, INVENTORIES, INVOICES, PRICEBOOKS, PRODUCTS, PURCHASE_ORDERS
from kvsync.sync.sink import SinkBatchError, UpsertSink


def _strip(rows):
    # synced_at moves on every write
    return sorted(
        ({k: v for k, v in row.items() if k != "synced_at"} for row in rows),
        key=lambda r: (r.get("kiotviet_id") or 0, r.get("id")),
    )


def _invoice(id_, code, lines=2, **extra):
    return {
        "id": id_,
        "code": code,
        "purchaseDate": "2024-03-01T10:00:00.1234567",
        "modifiedDate": "2024-03-01T10:05:00Z",
        "branchId": 1,
        "total": 100000,
        "SaleChannel": {"Name": "Zalo"},
        "invoiceDetails": [
            {"productId": 100 + n, "productCode": f"SP{n}", "quantity": n + 1, "price": 5000}
            for n in range(lines)
        ],
        **extra,
    }


def _product(id_, code, inventories=None):
    record = {"id": id_, "code": code, "name": f"Gao {code}", "modifiedDate": "2024-01-01T00:00:00Z"}
    if inventories is not None:
        record["inventories"] = inventories
    return record


class TestParents:
    def test_upsert_is_idempotent(self, supabase, fake_client):
        sink = UpsertSink(supabase, INVOICES)
        batch = [_invoice(1, "HD001"), _invoice(2, "HD002", lines=3)]

        first = sink.upsert(batch)
        after_first = (_strip(fake_client.rows("kv_invoices")), _strip(fake_client.rows("kv_invoice_details")))
        second = sink.upsert(batch)

        assert first.succeeded == second.succeeded == 2
        parents = _strip(fake_client.rows("kv_invoices"))
        assert parents == after_first[0]
        assert [r["kiotviet_id"] for r in parents] == [1, 2]
        assert len(fake_client.rows("kv_invoice_details")) == 5

    def test_row_mapping(self, supabase, fake_client):
        UpsertSink(supabase, INVOICES).upsert([_invoice(1, "HD001")])

        row = fake_client.rows("kv_invoices")[0]
        assert row["code"] == "HD001"
        assert row["sale_channel_name"] == "Zalo"
        assert row["purchase_date"] == "2024-03-01T10:00:00.123456+00:00"
        assert row["modified_date"] == "2024-03-01T10:05:00+00:00"
        detail = fake_client.rows("kv_invoice_details")[0]
        assert detail["invoice_id"] == row["id"]
        assert detail["kiotviet_product_id"] == 100

    def test_update_keeps_surrogate_id(self, supabase, fake_client):
        sink = UpsertSink(supabase, CUSTOMERS)
        sink.upsert([{"id": 5, "code": "KH005", "name": "Old"}])
        surrogate = fake_client.rows("kiotviet_customers")[0]["id"]

        sink.upsert([{"id": 5, "code": "KH005", "name": "New"}])

        rows = fake_client.rows("kiotviet_customers")
        assert len(rows) == 1
        assert rows[0]["id"] == surrogate
        assert rows[0]["name"] == "New"

    def test_later_duplicate_wins(self, supabase, fake_client):
        result = UpsertSink(supabase, CUSTOMERS).upsert(
            [
                {"id": 5, "code": "KH005", "name": "First"},
                {"id": 6, "code": "KH006", "name": "Other"},
                {"id": 5, "code": "KH005", "name": "Second"},
            ]
        )

        assert result.attempted == 3
        assert result.succeeded == 3
        rows = {r["kiotviet_id"]: r for r in fake_client.rows("kiotviet_customers")}
        assert len(rows) == 2
        assert rows[5]["name"] == "Second"

    def test_transform_failure_is_counted_and_sampled(self, supabase, fake_client):
        result = UpsertSink(supabase, INVOICES).upsert(
            [_invoice(1, "HD001"), {"id": 2, "modifiedDate": "2024-03-01T00:00:00Z"}]
        )

        assert (result.attempted, result.succeeded, result.failed) == (2, 1, 1)
        assert result.attempted == result.succeeded + result.failed
        assert result.errors[0].kiotviet_id == 2
        assert result.errors[0].stage == "transform"
        assert "code" in result.errors[0].message
        assert len(fake_client.rows("kv_invoices")) == 1

    def test_bad_timestamp_is_a_record_failure(self, supabase):
        result = UpsertSink(supabase, CUSTOMERS).upsert(
            [{"id": 1, "code": "KH1", "modifiedDate": "yesterday"}]
        )
        assert result.failed == 1

    def test_non_object_item_is_a_record_failure(self, supabase, fake_client):
        result = UpsertSink(supabase, CUSTOMERS).upsert([{"id": 1, "code": "KH1"}, None, {"id": 3, "code": "KH3"}])

        assert (result.attempted, result.succeeded, result.failed) == (3, 2, 1)
        assert result.errors[0].stage == "transform"
        assert "NoneType" in result.errors[0].message
        assert sorted(r["kiotviet_id"] for r in fake_client.rows("kiotviet_customers")) == [1, 3]

    def test_non_object_inventory_is_a_record_failure(self, supabase):
        result = UpsertSink(supabase, INVENTORIES).upsert(["10/1"])
        assert (result.succeeded, result.failed) == (0, 1)

    def test_short_fraction_is_padded(self, supabase, fake_client):
        UpsertSink(supabase, CUSTOMERS).upsert(
            [{"id": 1, "code": "KH1", "modifiedDate": "2024-03-01T14:23:45.57", "createdDate": "2024-03-01T14:23:45.5+07:00"}]
        )

        row = fake_client.rows("kiotviet_customers")[0]
        assert row["modified_date"] == "2024-03-01T14:23:45.570000+00:00"
        assert row["created_date"] == "2024-03-01T07:23:45.500000+00:00"

    def test_timestamp_without_offset_is_utc(self, supabase, fake_client):
        UpsertSink(supabase, CUSTOMERS).upsert([{"id": 1, "code": "KH1", "modifiedDate": "2024-03-01T10:00:00"}])

        assert fake_client.rows("kiotviet_customers")[0]["modified_date"] == "2024-03-01T10:00:00+00:00"

    def test_error_samples_are_bounded(self, supabase):
        sink = UpsertSink(supabase, CUSTOMERS, max_error_samples=3)
        result = sink.upsert([{"id": i} for i in range(10)])

        assert result.failed == 10
        assert len(result.errors) == 3

    def test_parent_upsert_failure_aborts_batch(self, supabase, fake_client):
        fake_client.failures[("kv_invoices", "upsert")] = Exception("connection refused")

        with pytest.raises(SinkBatchError) as exc_info:
            UpsertSink(supabase, INVOICES).upsert([_invoice(1, "HD001"), _invoice(2, "HD002")])

        result = exc_info.value.result
        assert (result.attempted, result.succeeded, result.failed) == (2, 0, 2)
        assert exc_info.value.table == "kv_invoices"

    def test_empty_batch(self, supabase, fake_client):
        result = UpsertSink(supabase, PRODUCTS).upsert([])
        assert result.attempted == 0
        assert fake_client.calls == []


class TestChildren:
    def test_children_are_replaced_not_appended(self, supabase, fake_client):
        sink = UpsertSink(supabase, INVOICES)
        sink.upsert([_invoice(1, "HD001", lines=4)])

        sink.upsert([_invoice(1, "HD001", lines=2)])

        details = fake_client.rows("kv_invoice_details")
        assert len(details) == 2
        assert {d["kiotviet_product_id"] for d in details} == {100, 101}

    def test_empty_child_list_clears_children(self, supabase, fake_client):
        sink = UpsertSink(supabase, INVOICES)
        sink.upsert([_invoice(1, "HD001", lines=3)])

        sink.upsert([_invoice(1, "HD001", lines=0)])

        assert fake_client.rows("kv_invoice_details") == []

    def test_absent_child_collection_leaves_children(self, supabase, fake_client):
        sink = UpsertSink(supabase, PRODUCTS)
        sink.upsert([_product(10, "P10", inventories=[{"branchId": 1, "onHand": 5}])])

        sink.upsert([_product(10, "P10")])

        inventories = fake_client.rows("kiotviet_inventories")
        assert len(inventories) == 1
        assert inventories[0]["on_hand"] == 5
        assert inventories[0]["kiotviet_product_id"] == 10

    def test_children_only_touch_their_parent(self, supabase, fake_client):
        sink = UpsertSink(supabase, INVOICES)
        sink.upsert([_invoice(1, "HD001", lines=2), _invoice(2, "HD002", lines=3)])

        sink.upsert([_invoice(1, "HD001", lines=1)])

        parent_ids = {r["kiotviet_id"]: r["id"] for r in fake_client.rows("kv_invoices")}
        details = fake_client.rows("kv_invoice_details")
        assert sum(1 for d in details if d["invoice_id"] == parent_ids[1]) == 1
        assert sum(1 for d in details if d["invoice_id"] == parent_ids[2]) == 3

    def test_child_failure_keeps_parent_and_counts_record(self, supabase, fake_client):
        fake_client.failures[("kv_invoice_details", "insert")] = Exception("violates check constraint")

        result = UpsertSink(supabase, INVOICES).upsert([_invoice(1, "HD001"), _invoice(2, "HD002")])

        assert (result.attempted, result.succeeded, result.failed) == (2, 0, 2)
        assert {e.stage for e in result.errors} == {"children"}
        assert len(fake_client.rows("kv_invoices")) == 2

    def test_duplicate_with_child_failure_reconciles(self, supabase, fake_client):
        fake_client.failures[("kv_invoice_details", "insert")] = Exception("boom")

        result = UpsertSink(supabase, INVOICES).upsert([_invoice(1, "HD001"), _invoice(1, "HD001")])

        assert result.attempted == result.succeeded + result.failed == 2
        assert result.failed == 2

    def test_purchase_order_lines(self, supabase, fake_client):
        po = {
            "id": 900,
            "code": "PN000900",
            "status": 3,
            "purchaseOrderDetails": [
                {"productId": 1, "productCode": "SP1", "quantity": 10, "price": 20000},
                {"productId": 2, "productCode": "SP2", "quantity": 5, "price": 30000,
                 "productBatchExpire": {"id": 4, "batchName": "L01", "expireDate": "2025-01-01T00:00:00"}},
            ],
        }

        result = UpsertSink(supabase, PURCHASE_ORDERS).upsert([po])

        assert result.succeeded == 1
        lines = fake_client.rows("kiotviet_purchase_order_details")
        parent_id = fake_client.rows("kiotviet_purchase_orders")[0]["id"]
        assert [line["purchase_order_id"] for line in lines] == [parent_id, parent_id]
        assert lines[1]["batch_name"] == "L01"


def _pricebook(id_, prices, groups=("Khach si",)):
    record = {
        "id": id_,
        "name": f"Bang gia {id_}",
        "isActive": True,
        "startDate": "2024-01-01T00:00:00",
        "endDate": "2025-01-01T00:00:00",
        "priceBookCustomerGroups": [{"customerGroupName": g} for g in groups],
    }
    if prices is not None:
        record["priceBookProducts"] = [
            {"productId": pid, "productCode": f"SP{pid}", "price": price} for pid, price in prices
        ]
    return record


class TestPricebooks:
    def test_pricebook_and_product_prices(self, supabase, fake_client):
        result = UpsertSink(supabase, PRICEBOOKS).upsert([_pricebook(7, [(1, 20000), (2, 35000)])])

        assert result.succeeded == 1
        pricebook = fake_client.rows("kv_pricebooks")[0]
        assert pricebook["kiotviet_id"] == 7
        assert pricebook["customer_group_names"] == ["Khach si"]
        assert pricebook["start_date"] == "2024-01-01T00:00:00+00:00"
        prices = fake_client.rows("kv_product_pricebooks")
        assert [(p["kiotviet_product_id"], p["price"], p["pricebook_id"]) for p in prices] == [
            (1, 20000, pricebook["id"]),
            (2, 35000, pricebook["id"]),
        ]
        assert prices[0]["end_date"] == "2025-01-01T00:00:00+00:00"

    def test_prices_are_replaced_per_pricebook(self, supabase, fake_client):
        sink = UpsertSink(supabase, PRICEBOOKS)
        sink.upsert([_pricebook(7, [(1, 20000), (2, 35000)]), _pricebook(8, [(1, 18000)])])

        sink.upsert([_pricebook(7, [(2, 36000)])])

        prices = sorted((p["pricebook_id"], p["kiotviet_product_id"], p["price"]) for p in fake_client.rows("kv_product_pricebooks"))
        ids = {r["kiotviet_id"]: r["id"] for r in fake_client.rows("kv_pricebooks")}
        assert prices == sorted([(ids[7], 2, 36000), (ids[8], 1, 18000)])

    def test_pricebook_without_groups_uses_default(self, supabase, fake_client):
        UpsertSink(supabase, PRICEBOOKS).upsert([_pricebook(7, None, groups=())])

        assert fake_client.rows("kv_pricebooks")[0]["customer_group_names"] == ["default"]
        assert fake_client.rows("kv_product_pricebooks") == []

    def test_price_without_product_fails_the_pricebook(self, supabase, fake_client):
        record = _pricebook(7, [(1, 20000)])
        record["priceBookProducts"].append({"price": 1})

        result = UpsertSink(supabase, PRICEBOOKS).upsert([record])

        assert (result.succeeded, result.failed) == (0, 1)
        assert result.errors[0].stage == "children"
        assert len(fake_client.rows("kv_pricebooks")) == 1


class TestStandaloneInventories:
    def test_replaces_product_branch_rows(self, supabase, fake_client):
        UpsertSink(supabase, PRODUCTS).upsert([_product(10, "P10")])
        sink = UpsertSink(supabase, INVENTORIES)

        sink.upsert([{"productId": 10, "branchId": 1, "onHand": 3}, {"productId": 10, "branchId": 2, "onHand": 7}])
        result = sink.upsert([{"productId": 10, "branchId": 1, "onHand": 4}])

        assert result.succeeded == 1
        rows = sorted(fake_client.rows("kiotviet_inventories"), key=lambda r: r["branch_id"])
        product_id = fake_client.rows("kiotviet_products")[0]["id"]
        assert [(r["branch_id"], r["on_hand"], r["product_id"]) for r in rows] == [
            (1, 4, product_id),
            (2, 7, product_id),
        ]

    def test_unknown_product_is_record_failure(self, supabase, fake_client):
        result = UpsertSink(supabase, INVENTORIES).upsert([{"productId": 404, "branchId": 1}])

        assert (result.succeeded, result.failed) == (0, 1)
        assert fake_client.rows("kiotviet_inventories") == []

    def test_missing_product_id_is_transform_failure(self, supabase):
        result = UpsertSink(supabase, INVENTORIES).upsert([{"branchId": 1}])
        assert result.errors[0].stage == "transform"
