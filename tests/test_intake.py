import json
from datetime import date

import httpx
import pytest

from conftest import in_days, load_order, run
from orderflow.application.intake import OrderIntake
from orderflow.application.schemas import (
    CustomerDetails,
    ManualOrderCreate,
    ManualOrderItem,
    WooCommerceImport,
)
from orderflow.application.service import AggregateRegistry
from orderflow.domain.errors import (
    DuplicateOrderError,
    MissingFieldError,
    OrderNumberMismatchError,
    PermissionDeniedError,
    ValidationError,
)
from orderflow.infrastructure.inventory import InventoryClient
from orderflow.infrastructure.woocommerce import WooCommerceClient

REMOTE_ORDER = {
    "id": 9123,
    "order_number": 774,
    "order_date": "2026-03-01T10:15:00",
    "status": "processing",
    "customer_id": 55,
    "customer_name": "Meera Shah",
    "customer_email": "meera@example.com",
    "billing_city": "Pune",
    "payment_status": "paid",
    "order_total": 2360,
    "currency": "INR",
    "line_items": [{"name": "Wedding invites", "quantity": 200, "total": 2000,
                    "meta_data": [{"key": "paper", "value": "Pearl 300gsm"}]}],
}


@pytest.fixture
def registry(session_factory, storage):
    return AggregateRegistry(session_factory, storage=storage)


def woocommerce(response):
    return WooCommerceClient("http://woo.test/fn", transport=httpx.MockTransport(lambda request: response))


def manual_order(**overrides):
    fields = dict(
        order_number="MAN-500",
        customer=CustomerDetails(name="Ravi Kumar", email="ravi@example.com", phone="98450"),
        delivery_date=in_days(8),
        items=[ManualOrderItem(name="Letterheads", quantity=10, price=100, specifications={"size": "A4"})],
    )
    fields.update(overrides)
    return ManualOrderCreate(**fields)


class TestManualOrders:
    def test_sales_order_starts_in_sales_owned_by_creator(self, registry, actors, session_factory):
        outcome = run(OrderIntake(registry.for_actor(actors["sales-1"])).create_manual_order(manual_order()))
        order = load_order(session_factory, outcome.order_id)
        assert order.source == "manual"
        assert order.order_status == "new_order"
        assert order.order_total == 1000
        item = order.items[0]
        assert (item.current_stage, item.assigned_department) == ("sales", "sales")
        assert (item.assigned_to, item.assigned_to_name) == ("sales-1", "Sam Sales")
        assert item.priority == "blue"
        assert order.customer_id is not None

    def test_gst_is_added_to_total(self, registry, actors, session_factory):
        outcome = run(OrderIntake(registry.for_actor(actors["sales-1"])).create_manual_order(
            manual_order(apply_gst=True)))
        order = load_order(session_factory, outcome.order_id)
        assert (order.order_total, order.tax_amount) == (1180, 180)

    def test_admin_places_order_in_department(self, registry, actors, session_factory):
        intake = OrderIntake(registry.for_actor(actors["admin-1"]))
        with pytest.raises(MissingFieldError, match="Admin must assign department and user"):
            run(intake.create_manual_order(manual_order()))

        outcome = run(intake.create_manual_order(manual_order(department="design", assigned_user_id="design-1")))
        order = load_order(session_factory, outcome.order_id)
        assert order.order_status == "design_in_progress"
        assert (order.items[0].current_stage, order.items[0].assigned_to) == ("design", "design-1")

    def test_admin_cannot_start_an_order_outsourced(self, registry, actors):
        admin = registry.for_actor(actors["admin-1"])
        with pytest.raises(ValidationError, match="cannot start outsourced"):
            run(OrderIntake(admin).create_manual_order(
                manual_order(department="outsource", assigned_user_id="outsource-1")))
        assert run(admin.fetch_orders(force=True)) == []

    @pytest.mark.parametrize("overrides, message", [
        ({"order_number": " "}, "Order number is required"),
        ({"customer": CustomerDetails(name="")}, "Customer name is required"),
        ({"delivery_date": None}, "Delivery date is required"),
        ({"items": []}, "At least one product is required"),
        ({"items": [ManualOrderItem(name="Flyers")]}, "Product 1 needs at least one specification"),
    ])
    def test_missing_fields(self, registry, actors, overrides, message):
        intake = OrderIntake(registry.for_actor(actors["sales-1"]))
        with pytest.raises(MissingFieldError, match=message):
            run(intake.create_manual_order(manual_order(**overrides)))

    def test_only_admin_and_sales_create_orders(self, registry, actors):
        with pytest.raises(PermissionDeniedError):
            run(OrderIntake(registry.for_actor(actors["design-1"])).create_manual_order(manual_order()))

    def test_duplicate_order_number(self, registry, actors):
        intake = OrderIntake(registry.for_actor(actors["sales-1"]))
        run(intake.create_manual_order(manual_order()))
        with pytest.raises(DuplicateOrderError, match="Order number already exists in Order Flow"):
            run(intake.create_manual_order(manual_order()))

    def test_paper_is_reserved_after_commit(self, registry, actors):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(201, json={"reservation_id": "R-1"})

        inventory = InventoryClient("http://inventory.test", transport=httpx.MockTransport(handler))
        intake = OrderIntake(registry.for_actor(actors["sales-1"]), inventory=inventory)
        outcome = run(intake.create_manual_order(manual_order(items=[
            ManualOrderItem(name="Cards", quantity=500, price=2, specifications={"paper": "350gsm"},
                            paper_id="P-350", paper_required=2.5),
        ])))
        assert requests == [{"order_id": outcome.order_id, "material_id": "P-350", "quantity": 2.5,
                             "user_id": "sales-1"}]

    def test_failed_reservation_keeps_the_order(self, registry, actors, session_factory):
        inventory = InventoryClient(
            "http://inventory.test", transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        sales = registry.for_actor(actors["sales-1"])
        outcome = run(OrderIntake(sales, inventory=inventory).create_manual_order(manual_order(items=[
            ManualOrderItem(name="Cards", specifications={"paper": "350gsm"}, paper_id="P-350", paper_required=1),
        ])))
        assert load_order(session_factory, outcome.order_id) is not None
        assert list(sales.last_report.failed) == ["reserve_paper:P-350"]


class TestWooCommerceCheck:
    def test_found(self, registry, actors):
        intake = OrderIntake(registry.for_actor(actors["sales-1"]),
                             woocommerce(httpx.Response(200, json={"found": True, "order": REMOTE_ORDER})))
        result = run(intake.check_woocommerce_order("WC-774"))
        assert result.status == "found"
        assert result.order["order_number"] == "774"

    def test_not_found(self, registry, actors):
        intake = OrderIntake(registry.for_actor(actors["sales-1"]), woocommerce(httpx.Response(200, json={"found": False})))
        assert run(intake.check_woocommerce_order("774")).status == "not_found"

    def test_upstream_failure_is_reported(self, registry, actors):
        intake = OrderIntake(registry.for_actor(actors["sales-1"]), woocommerce(httpx.Response(500)))
        result = run(intake.check_woocommerce_order("774"))
        assert result.status == "error"
        assert "WooCommerce lookup failed" in result.message

    def test_mismatched_order_is_an_error(self, registry, actors):
        intake = OrderIntake(registry.for_actor(actors["sales-1"]),
                             woocommerce(httpx.Response(200, json={"found": True, "order": REMOTE_ORDER})))
        result = run(intake.check_woocommerce_order("775"))
        assert result.status == "error"
        assert result.message == "Order number mismatch: Expected 775, but got 774 (ID: 9123)"


class TestWooCommerceImport:
    def _intake(self, registry, actor):
        return OrderIntake(registry.for_actor(actor),
                           woocommerce(httpx.Response(200, json={"found": True, "order": REMOTE_ORDER})))

    def test_import_creates_enriched_order(self, registry, actors, session_factory):
        outcome = run(self._intake(registry, actors["sales-1"]).import_woocommerce_order(
            WooCommerceImport(order_number="774")))
        order = load_order(session_factory, outcome.order_id)
        assert (order.source, order.woo_order_id, order.payment_status) == ("woocommerce", 9123, "pending")
        assert order.delivery_date == date(2026, 3, 8)
        assert order.global_notes.startswith("Order imported from WooCommerce")
        item = order.items[0]
        assert item.specifications == {"paper": "Pearl 300gsm"}
        assert item.price == 10
        assert (item.assigned_department, item.assigned_to) == ("sales", "sales-1")
        assert item.delivery_date == date(2026, 3, 8)

    def test_second_import_is_rejected(self, registry, actors):
        intake = self._intake(registry, actors["sales-1"])
        run(intake.import_woocommerce_order(WooCommerceImport(order_number="774")))
        with pytest.raises(DuplicateOrderError):
            run(intake.import_woocommerce_order(WooCommerceImport(order_number="774")))

    def test_mismatch_creates_nothing(self, registry, actors):
        sales = registry.for_actor(actors["sales-1"])
        with pytest.raises(OrderNumberMismatchError):
            run(self._intake(registry, actors["sales-1"]).import_woocommerce_order(
                WooCommerceImport(order_number="775")))
        assert run(sales.fetch_orders(force=True)) == []

    def test_admin_must_name_an_owner(self, registry, actors):
        with pytest.raises(MissingFieldError):
            run(self._intake(registry, actors["admin-1"]).import_woocommerce_order(
                WooCommerceImport(order_number="774", department="design")))
