"""
OrderService: atomic order + detail writes and the status machine.
"""

from decimal import Decimal

import pytest

from errors import NotFound, TransactionFailure, ValidationFailed
from repositories import OrderDetailRepository, OrderRepository

THREE_LINES = [
    {"item_code": 1, "qty": 2, "rate": "5.00"},
    {"item_code": 2, "qty": 1, "rate": "3.50"},
    {"item_code": 3, "qty": 4, "rate": "1.25", "delivery_charge": "2.00"},
]


def order_row(database, order_id):
    with database.session() as db:
        return OrderRepository(db).find_by_id(order_id)


def order_total_rows(database):
    with database.session() as db:
        return OrderRepository(db).count(), OrderDetailRepository(db).count()


# ── Create ───────────────────────────────────────────────────

class TestCreateOrder:

    def test_three_details(self, orders, database):
        order_id = orders.create_order_with_details({"customer_code": "C001"}, THREE_LINES)

        full = orders.get_order_full_details(order_id)
        assert full["order"]["customer_code"] == "C001"
        assert full["order"]["status"] == "pending"
        assert full["order"]["cancel"] == 0
        assert [d["item_code"] for d in full["details"]] == [1, 2, 3]
        assert [d["amount"] for d in full["details"]] == [10.0, 3.5, 5.0]
        assert full["total"] == 18.5
        assert full["order"]["amount"] == 18.5

    def test_explicit_amount_is_kept(self, orders):
        order_id = orders.create_order_with_details({"customer_code": "C001", "amount": "20"}, THREE_LINES)
        assert orders.get_order_full_details(order_id)["order"]["amount"] == 20.0

    def test_single_line_order(self, orders):
        order_id = orders.create_order_with_details(
            {"customer_code": "C001", "item_code": 7, "qty": 3, "rate": "2.00"}
        )

        full = orders.get_order_full_details(order_id)
        assert full["details"] == []
        assert full["total"] == 0.0
        assert full["order"]["amount"] == 6.0

    def test_detail_failure_leaves_no_order(self, orders, database, monkeypatch):
        def broken_insert(self, order_id, details):
            raise TransactionFailure("insert into orderdetail failed: disk full")

        monkeypatch.setattr(OrderDetailRepository, "insert_many", broken_insert)

        with pytest.raises(TransactionFailure):
            orders.create_order_with_details({"customer_code": "C001"}, THREE_LINES)
        assert order_total_rows(database) == (0, 0)

    def test_invalid_detail_writes_nothing(self, orders, database):
        with pytest.raises(ValidationFailed):
            orders.create_order_with_details({"customer_code": "C001"}, THREE_LINES + [{"item_code": 9, "qty": 0}])
        assert order_total_rows(database) == (0, 0)

    def test_customer_is_required(self, orders):
        with pytest.raises(ValidationFailed):
            orders.create_order_with_details({"item_code": 1})

    def test_cancel_flag_and_status_agree(self, orders, database):
        by_flag = orders.create_order_with_details({"customer_code": "C", "cancel": 1})
        by_status = orders.create_order_with_details({"customer_code": "C", "status": "cancelled"})

        for order_id in (by_flag, by_status):
            order = order_row(database, order_id)
            assert (order.status, order.cancel) == ("cancelled", 1)

    def test_unknown_status(self, orders):
        with pytest.raises(ValidationFailed):
            orders.create_order_with_details({"customer_code": "C", "status": "lost"})

    def test_details_join_product_columns(self, orders, products):
        product_id = products.create_product_with_moqs({"name": "Widget", "price": "10", "description": "blue"})
        order_id = orders.create_order_with_details(
            {"customer_code": "C"},
            [{"item_code": product_id, "qty": 1, "rate": "10"}, {"item_code": 999, "qty": 1}]
        )

        known, gone = orders.get_order_full_details(order_id)["details"]
        assert known["product_name"] == "Widget"
        assert known["product_price"] == 10.0
        assert known["product_description"] == "blue"
        assert gone["product_name"] is None
        assert gone["amount"] == 0.0

    def test_missing_order(self, orders):
        assert orders.get_order_full_details(404) is None


# ── Delete ───────────────────────────────────────────────────

class TestDeleteOrder:

    def test_removes_details_too(self, orders, database):
        keep = orders.create_order_with_details({"customer_code": "C"}, THREE_LINES[:1])
        order_id = orders.create_order_with_details({"customer_code": "C"}, THREE_LINES)

        assert orders.delete_order(order_id) is True

        assert order_total_rows(database) == (1, 1)
        assert orders.get_order_full_details(keep) is not None

    def test_unknown_order(self, orders):
        with pytest.raises(NotFound):
            orders.delete_order(404)


# ── Status machine ───────────────────────────────────────────

class TestOrderStatus:

    def test_forward_path(self, orders, database):
        order_id = orders.create_order_with_details({"customer_code": "C"})

        for status in ("processing", "shipped", "delivered"):
            assert orders.update_status(order_id, status) is True
            assert order_row(database, order_id).status == status

    def test_skipping_a_step_is_refused(self, orders, database):
        order_id = orders.create_order_with_details({"customer_code": "C"})

        with pytest.raises(ValidationFailed):
            orders.update_status(order_id, "delivered")
        assert order_row(database, order_id).status == "pending"

    def test_cancel_from_processing(self, orders, database):
        order_id = orders.create_order_with_details({"customer_code": "C"})
        orders.update_status(order_id, "processing")

        assert orders.cancel_order(order_id) is True

        order = order_row(database, order_id)
        assert (order.status, order.cancel) == ("cancelled", 1)

    def test_status_cancelled_sets_flag(self, orders, database):
        order_id = orders.create_order_with_details({"customer_code": "C"})

        orders.update_status(order_id, "cancelled")

        assert order_row(database, order_id).cancel == 1

    def test_shipped_cannot_be_cancelled(self, orders, database):
        order_id = orders.create_order_with_details({"customer_code": "C"})
        orders.update_status(order_id, "processing")
        orders.update_status(order_id, "shipped")

        with pytest.raises(ValidationFailed):
            orders.cancel_order(order_id)
        assert order_row(database, order_id).cancel == 0

    def test_cancelled_is_terminal(self, orders):
        order_id = orders.create_order_with_details({"customer_code": "C"})
        orders.cancel_order(order_id)

        with pytest.raises(ValidationFailed):
            orders.update_status(order_id, "pending")
        with pytest.raises(ValidationFailed):
            orders.update_status(order_id, "processing")

    def test_unknown_status(self, orders):
        order_id = orders.create_order_with_details({"customer_code": "C"})
        with pytest.raises(ValidationFailed):
            orders.update_status(order_id, "teleported")

    def test_unknown_order(self, orders):
        with pytest.raises(NotFound):
            orders.update_status(404, "processing")
        with pytest.raises(NotFound):
            orders.cancel_order(404)


# ── Bulk ─────────────────────────────────────────────────────

class TestBulkStatus:

    def test_only_legal_rows_move(self, orders, database):
        ids = [orders.create_order_with_details({"customer_code": "C"}) for _ in range(3)]
        orders.update_status(ids[2], "processing")

        assert orders.bulk_update_status(ids, "processing") == 2
        assert [order_row(database, i).status for i in ids] == ["processing"] * 3

    def test_duplicate_ids_count_once(self, orders):
        order_id = orders.create_order_with_details({"customer_code": "C"})
        assert orders.bulk_update_status([order_id, order_id], "processing") == 1

    def test_bulk_to_cancelled_sets_flag(self, orders, database):
        ids = [orders.create_order_with_details({"customer_code": "C"}) for _ in range(2)]

        assert orders.bulk_update_status(ids, "cancelled") == 2
        assert all(order_row(database, i).cancel == 1 for i in ids)

    def test_bulk_cancel_skips_shipped(self, orders, database):
        pending = orders.create_order_with_details({"customer_code": "C"})
        shipped = orders.create_order_with_details({"customer_code": "C"})
        orders.update_status(shipped, "processing")
        orders.update_status(shipped, "shipped")

        assert orders.bulk_cancel([pending, shipped], 1) == 1
        assert order_row(database, shipped).status == "shipped"

    def test_empty_ids_touch_nothing(self, orders, database, monkeypatch):
        def no_transaction():
            raise AssertionError("database was touched")

        monkeypatch.setattr(database, "transaction", no_transaction)

        assert orders.bulk_cancel([], 1) == 0
        assert orders.bulk_update_status([], "shipped") == 0

    def test_uncancel_is_refused(self, orders):
        order_id = orders.create_order_with_details({"customer_code": "C"})
        with pytest.raises(ValidationFailed):
            orders.bulk_cancel([order_id], 0)

    def test_customer_orders(self, orders, database):
        orders.create_order_with_details({"customer_code": "C1", "amount": Decimal("1")})
        orders.create_order_with_details({"customer_code": "C2"})

        with database.session() as db:
            assert [o.customer_code for o in OrderRepository(db).find_by_customer("C1")] == ["C1"]
