import pytest

from conftest import in_days, load_item, load_order, make_order, run
from orderflow.application.intake import OrderIntake
from orderflow.application.notifications import NotificationInbox
from orderflow.application.schemas import (
    CustomerDetails,
    DelayReasonCreate,
    ManualOrderCreate,
    ManualOrderItem,
    OrderUpdate,
    OutsourceJobDetails,
    OutsourceVendor,
)
from orderflow.application.service import AggregateRegistry, file_type_for
from orderflow.domain.errors import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from orderflow.infrastructure.change_feed import ChangeFeed
from orderflow.infrastructure.db import session_scope


@pytest.fixture
def registry(session_factory, storage):
    return AggregateRegistry(session_factory, storage=storage)


def inbox(session_factory, user_id):
    with session_scope(session_factory) as session:
        return [n.title for n in NotificationInbox(session).list(user_id)]


def numbers(orders):
    return sorted(o.order_number for o in orders)


class TestScenarios:
    def test_manual_order_is_red_and_stays_in_sales_until_assigned(self, registry, actors):
        sales = registry.for_actor(actors["sales-1"])
        outcome = run(OrderIntake(sales).create_manual_order(ManualOrderCreate(
            order_number="MAN-1001",
            customer=CustomerDetails(name="Ravi Kumar", email="ravi@example.com"),
            delivery_date=in_days(1),
            items=[ManualOrderItem(name="Business cards", quantity=500, price=2, specifications={"paper": "350gsm"})],
        )))

        order = run(sales.get_order(outcome.order_id))
        assert order.priority == "red"
        assert order.items[0].priority == "red"
        assert numbers(sales.orders_for_department("sales")) == ["MAN-1001"]

        admin = registry.for_actor(actors["admin-1"])
        run(admin.fetch_orders())
        assert numbers(admin.orders_for_department("sales")) == ["MAN-1001"]

        design = registry.for_actor(actors["design-1"])
        run(design.fetch_orders())
        assert design.orders_for_department("sales") == []
        assert design.orders_for_viewer() == []

        run(sales.assign_to_department(outcome.order_id, order.items[0].id, "design"))
        run(design.fetch_orders())
        assert numbers(design.orders_for_viewer()) == ["MAN-1001"]
        assert "Order moved to Design" in inbox(registry.session_factory, "design-1")

    def test_outsource_sub_workflow(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1002", in_days(10))
        sales = registry.for_actor(actors["sales-1"])
        run(sales.assign_to_outsource(
            order_id, item_id,
            OutsourceVendor(vendor_name="Vikas Laminators"),
            OutsourceJobDetails(work_type="lamination", quantity_sent=100),
        ))

        admin = registry.for_actor(actors["admin-1"])
        run(admin.fetch_orders())
        assert numbers(admin.orders_for_viewer()) == ["1002"]
        assert numbers(sales.orders_for_viewer()) == ["1002"]
        production = registry.for_actor(actors["production-1"])
        run(production.fetch_orders())
        assert production.orders_for_viewer() == []
        assert production.orders_for_department("outsource") == []

        with pytest.raises(InvalidTransitionError):
            run(sales.update_outsource_stage(order_id, item_id, "vendor_dispatched"))
        assert load_item(session_factory, item_id).outsource_info["current_outsource_stage"] == "outsourced"

        run(sales.update_outsource_stage(order_id, item_id, "vendor_in_progress"))
        run(sales.update_outsource_stage(order_id, item_id, "vendor_dispatched"))
        info = load_item(session_factory, item_id).outsource_info
        assert info["current_outsource_stage"] == "vendor_dispatched"
        assert info["vendor"]["vendor_name"] == "Vikas Laminators"

    def test_printer_only_sees_printing_station(self, registry, actors, session_factory):
        make_order(session_factory, "1003", items=[
            {"product_name": "Flyers", "current_stage": "production", "current_substage": "printing"},
        ])
        make_order(session_factory, "1004", items=[
            {"product_name": "Boxes", "current_stage": "production", "current_substage": "cutting"},
        ])
        printer = registry.for_actor(actors["production-1"])
        run(printer.fetch_orders())
        assert numbers(printer.orders_for_department("production")) == ["1003"]
        assert numbers(printer.orders_for_viewer()) == ["1003"]

        admin = registry.for_actor(actors["admin-1"])
        run(admin.fetch_orders())
        assert numbers(admin.orders_for_department("production")) == ["1003", "1004"]


class TestStageTransitions:
    def test_rejected_move_leaves_item_untouched(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1010")
        sales = registry.for_actor(actors["sales-1"])
        with pytest.raises(InvalidTransitionError):
            run(sales.update_item_stage(order_id, item_id, "dispatch"))
        item = load_item(session_factory, item_id)
        assert item.current_stage == "sales"
        assert run(sales.fetch_orders(force=True))[0].items[0].current_stage == "sales"

    def test_design_cannot_touch_sales_items(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1011")
        design = registry.for_actor(actors["design-1"])
        with pytest.raises(PermissionDeniedError):
            run(design.update_item_stage(order_id, item_id, "prepress"))

    def test_stage_change_writes_timeline_and_department(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1012", items=[
            {"product_name": "Posters", "current_stage": "design"},
        ])
        design = registry.for_actor(actors["design-1"])
        run(design.update_item_stage(order_id, item_id, "prepress"))
        item = load_item(session_factory, item_id)
        assert (item.current_stage, item.assigned_department) == ("prepress", "prepress")
        timeline = registry.for_actor(actors["admin-1"])
        run(timeline.fetch_orders())
        entries = timeline.get_timeline_for_order(order_id)
        assert entries[0].action == "stage_changed"
        assert entries[0].performed_by_name == "Dev Design"

    def test_entering_production_uses_first_substage(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1013", items=[
            {"product_name": "Boxes", "current_stage": "prepress",
             "production_stage_sequence": ["cutting", "pasting"]},
        ])
        admin = registry.for_actor(actors["admin-1"])
        run(admin.update_item_stage(order_id, item_id, "production"))
        assert load_item(session_factory, item_id).current_substage == "cutting"

    def test_entry_defaults_to_printing(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1014", items=[
            {"product_name": "Cards", "current_stage": "prepress"},
        ])
        run(registry.for_actor(actors["prepress-1"]).update_item_stage(order_id, item_id, "production"))
        assert load_item(session_factory, item_id).current_substage == "printing"

    def test_priority_alert_when_item_turns_red(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1015", in_days(10), items=[
            {"product_name": "Cards", "current_stage": "design", "priority": "blue"},
        ])
        sales = registry.for_actor(actors["sales-1"])
        run(sales.update_item_delivery_date(order_id, item_id, in_days(1)))
        assert load_item(session_factory, item_id).priority == "red"
        assert "Urgent Order Alert" in inbox(session_factory, "design-1")

    def test_only_sales_and_admin_change_dates(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1016")
        with pytest.raises(PermissionDeniedError):
            run(registry.for_actor(actors["design-1"]).update_item_delivery_date(order_id, item_id, in_days(3)))


class TestProduction:
    def test_substages_advance_then_dispatch(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1020", items=[
            {"product_name": "Boxes", "current_stage": "production", "current_substage": "printing",
             "production_stage_sequence": ["printing", "cutting"]},
        ])
        printer = registry.for_actor(actors["production-1"])
        run(printer.complete_substage(order_id, item_id))
        item = load_item(session_factory, item_id)
        assert (item.current_stage, item.current_substage) == ("production", "cutting")

        # The printing station has handed the item over to cutting
        with pytest.raises(PermissionDeniedError):
            run(printer.complete_substage(order_id, item_id))
        run(registry.for_actor(actors["production-2"]).complete_substage(order_id, item_id))
        item = load_item(session_factory, item_id)
        assert (item.current_stage, item.current_substage, item.assigned_department) == ("dispatch", None, "dispatch")
        assert "Ready for Dispatch" in inbox(session_factory, "admin-1")
        assert "Order moved to Dispatch" in inbox(session_factory, "sales-1")

        run(printer.fetch_orders())
        assert numbers(printer.dispatch_queue()) == ["1020"]
        run(printer.mark_as_dispatched(order_id, item_id, courier_name="BlueDart", tracking_number="BD-1"))
        order = load_order(session_factory, order_id)
        assert order.is_completed
        assert order.items[0].is_dispatched
        assert order.items[0].dispatch_info["courier_name"] == "BlueDart"
        assert "Order Dispatched" in inbox(session_factory, "admin-1")

    def test_station_workers_only_touch_their_station(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1025", items=[
            {"product_name": "Boxes", "current_stage": "production", "current_substage": "cutting"},
        ])
        printer = registry.for_actor(actors["production-1"])
        for attempt in (
            printer.complete_substage(order_id, item_id),
            printer.start_substage(order_id, item_id, "letterpress"),
            printer.update_item_substage(order_id, item_id, "letterpress"),
        ):
            with pytest.raises(PermissionDeniedError):
                run(attempt)
        assert load_item(session_factory, item_id).current_substage == "cutting"

        run(registry.for_actor(actors["production-2"]).complete_substage(order_id, item_id))
        assert load_item(session_factory, item_id).current_substage == "letterpress"

    def test_substage_cannot_move_backwards(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1021", items=[
            {"product_name": "Boxes", "current_stage": "production", "current_substage": "cutting"},
        ])
        with pytest.raises(InvalidTransitionError):
            run(registry.for_actor(actors["admin-1"]).update_item_substage(order_id, item_id, "printing"))

    def test_send_to_production_unassigns_other_departments(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1022", items=[
            {"product_name": "Boxes", "current_stage": "prepress", "assigned_to": "prepress-1",
             "assigned_to_name": "Priya Prepress"},
        ])
        prepress = registry.for_actor(actors["prepress-1"])
        run(prepress.send_to_production(order_id, item_id, ["cutting", "packing"]))
        item = load_item(session_factory, item_id)
        assert (item.current_stage, item.current_substage) == ("production", "cutting")
        assert item.is_ready_for_production
        assert item.assigned_to is None

    def test_sequence_must_keep_current_substage(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1023", items=[
            {"product_name": "Boxes", "current_stage": "production", "current_substage": "cutting"},
        ])
        admin = registry.for_actor(actors["admin-1"])
        with pytest.raises(InvalidTransitionError):
            run(admin.set_production_stage_sequence(order_id, item_id, ["printing", "packing"]))
        with pytest.raises(PermissionDeniedError):
            run(registry.for_actor(actors["sales-1"]).set_production_stage_sequence(order_id, item_id, ["cutting"]))

    def test_dispatch_requires_dispatch_stage(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1024")
        with pytest.raises(InvalidTransitionError):
            run(registry.for_actor(actors["admin-1"]).mark_as_dispatched(order_id, item_id))
        with pytest.raises(PermissionDeniedError):
            run(registry.for_actor(actors["design-1"]).mark_as_dispatched(order_id, item_id))


class TestOutsourceDecisions:
    def _received(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1030")
        sales = registry.for_actor(actors["sales-1"])
        run(sales.assign_to_outsource(order_id, item_id, OutsourceVendor(vendor_name="V"),
                                      OutsourceJobDetails(work_type="foiling")))
        run(sales.update_outsource_stage(order_id, item_id, "vendor_in_progress"))
        run(sales.vendor_dispatch(order_id, item_id, "DTDC", "D-9", in_days(0)))
        run(sales.receive_from_vendor(order_id, item_id, "Sam", in_days(0)))
        return sales, order_id, item_id

    def test_qc_pass_then_decision(self, registry, actors, session_factory):
        sales, order_id, item_id = self._received(registry, actors, session_factory)
        run(sales.quality_check(order_id, item_id, "pass", "Looks clean"))
        info = load_item(session_factory, item_id).outsource_info
        assert (info["current_outsource_stage"], info["qc_result"]) == ("decision_pending", "pass")

        run(sales.post_qc_decision(order_id, item_id, "production"))
        item = load_item(session_factory, item_id)
        assert (item.current_stage, item.current_substage) == ("production", "printing")
        assert item.outsource_info["current_outsource_stage"] == "decision_pending"
        assert item.outsource_info["decision"] == "production"

    def test_qc_fail_returns_to_vendor(self, registry, actors, session_factory):
        sales, order_id, item_id = self._received(registry, actors, session_factory)
        run(sales.quality_check(order_id, item_id, "fail"))
        assert load_item(session_factory, item_id).outsource_info["current_outsource_stage"] == "vendor_in_progress"
        with pytest.raises(InvalidTransitionError):
            run(sales.post_qc_decision(order_id, item_id, "dispatch"))

    def test_follow_up_notes(self, registry, actors, session_factory):
        sales, order_id, item_id = self._received(registry, actors, session_factory)
        run(sales.add_follow_up_note(order_id, item_id, "Vendor promised Friday"))
        notes = load_item(session_factory, item_id).outsource_info["follow_up_notes"]
        assert [n["note"] for n in notes] == ["Vendor promised Friday"]
        with pytest.raises(PermissionDeniedError):
            run(registry.for_actor(actors["design-1"]).add_follow_up_note(order_id, item_id, "hi"))

    def test_department_assignment_to_outsource_needs_vendor(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1031")
        with pytest.raises(ValidationError):
            run(registry.for_actor(actors["sales-1"]).assign_to_department(order_id, item_id, "outsource"))


class TestItemAccess:
    def test_design_cannot_reassign_a_sales_item(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1035")
        with pytest.raises(PermissionDeniedError):
            run(registry.for_actor(actors["design-1"]).assign_to_department(order_id, item_id, "prepress"))
        item = load_item(session_factory, item_id)
        assert (item.current_stage, item.assigned_department) == ("sales", "sales")

    def test_prepress_cannot_route_a_design_item(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1036", items=[
            {"product_name": "Posters", "current_stage": "design"},
        ])
        prepress = registry.for_actor(actors["prepress-1"])
        with pytest.raises(PermissionDeniedError):
            run(prepress.send_to_production(order_id, item_id, ["printing"]))
        with pytest.raises(PermissionDeniedError):
            run(prepress.assign_to_outsource(order_id, item_id, OutsourceVendor(vendor_name="V"),
                                             OutsourceJobDetails(work_type="foiling")))
        with pytest.raises(PermissionDeniedError):
            run(prepress.update_outsource_stage(order_id, item_id, "vendor_in_progress"))
        item = load_item(session_factory, item_id)
        assert (item.current_stage, item.outsource_info) == ("design", None)

    def test_outsource_managers_work_vendor_jobs_from_any_department(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1037")
        run(registry.for_actor(actors["sales-1"]).assign_to_outsource(
            order_id, item_id, OutsourceVendor(vendor_name="V"), OutsourceJobDetails(work_type="foiling")))

        run(registry.for_actor(actors["prepress-1"]).update_outsource_stage(order_id, item_id, "vendor_in_progress"))
        run(registry.for_actor(actors["outsource-1"]).add_follow_up_note(order_id, item_id, "Chased vendor"))
        info = load_item(session_factory, item_id).outsource_info
        assert info["current_outsource_stage"] == "vendor_in_progress"
        assert [n["created_by"] for n in info["follow_up_notes"]] == ["outsource-1"]


class TestOrderEdits:
    def test_assign_to_user_notifies_assignee(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1040", items=[
            {"product_name": "Cards", "current_stage": "design"},
        ])
        run(registry.for_actor(actors["admin-1"]).assign_to_user(order_id, item_id, "design-1"))
        item = load_item(session_factory, item_id)
        assert (item.assigned_to, item.assigned_to_name) == ("design-1", "Dev Design")
        assert inbox(session_factory, "design-1") == ["Order Assigned to You"]
        with pytest.raises(NotFoundError):
            run(registry.for_actor(actors["admin-1"]).assign_to_user(order_id, item_id, "ghost"))

    def test_update_order_cascades_delivery_date(self, registry, actors, session_factory):
        order_id, _ = make_order(session_factory, "1041", in_days(20), items=[
            {"product_name": "A"}, {"product_name": "B"},
        ])
        sales = registry.for_actor(actors["sales-1"])
        run(sales.update_order(order_id, OrderUpdate(delivery_date=in_days(4), customer_phone="98450")))
        order = load_order(session_factory, order_id)
        assert order.customer_phone == "98450"
        assert {item.delivery_date for item in order.items} == {in_days(4)}
        assert order.priority == "yellow"

    def test_notes_append_and_stay_private(self, registry, actors, session_factory):
        order_id, _ = make_order(session_factory, "1042", items=[
            {"product_name": "Cards", "current_stage": "design"},
        ])
        sales = registry.for_actor(actors["sales-1"])
        run(sales.add_note(order_id, "Call before delivery"))
        run(sales.add_note(order_id, "Use matte lamination"))
        assert load_order(session_factory, order_id).global_notes == "Call before delivery\nUse matte lamination"

        design = registry.for_actor(actors["design-1"])
        run(design.fetch_orders())
        assert design.get_timeline_for_order(order_id) == []
        assert len(sales.get_timeline_for_order(order_id)) == 2

    def test_specifications_replace(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1043")
        run(registry.for_actor(actors["sales-1"]).update_item_specifications(order_id, item_id, {"size": "A4"}))
        assert load_item(session_factory, item_id).specifications == {"size": "A4"}


class TestDelayReasons:
    def test_report_and_resolve(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1045", items=[
            {"product_name": "Cards", "current_stage": "design"},
        ])
        design = registry.for_actor(actors["design-1"])
        outcome = run(design.add_delay_reason(order_id, DelayReasonCreate(
            item_id=item_id, category=" Client ", reason="Waiting for logo approval",
        )))

        reason = run(design.get_order(order_id)).delay_reasons[0]
        assert reason.id == outcome.result
        assert (reason.category, reason.stage, reason.reported_by) == ("client", "design", "design-1")
        assert not reason.is_resolved
        assert design.get_timeline_for_order(order_id) == []
        sales = registry.for_actor(actors["sales-1"])
        run(sales.fetch_orders())
        actions = [entry.action for entry in sales.get_timeline_for_order(order_id)]
        assert actions == ["delay_reported"]

        run(design.resolve_delay_reason(order_id, reason.id))
        reason = run(design.get_order(order_id)).delay_reasons[0]
        assert reason.is_resolved and reason.resolved_at is not None
        with pytest.raises(InvalidTransitionError):
            run(design.resolve_delay_reason(order_id, reason.id))

    def test_unknown_category_is_rejected(self, registry, actors, session_factory):
        order_id, _ = make_order(session_factory, "1046")
        sales = registry.for_actor(actors["sales-1"])
        with pytest.raises(ValidationError):
            run(sales.add_delay_reason(order_id, DelayReasonCreate(category="weather", reason="Rain")))
        assert run(sales.get_order(order_id)).delay_reasons == []

    def test_order_level_delay_uses_current_department(self, registry, actors, session_factory):
        order_id, _ = make_order(session_factory, "1047")
        sales = registry.for_actor(actors["sales-1"])
        run(sales.add_delay_reason(order_id, DelayReasonCreate(category="material", reason="Board out of stock")))
        reason = run(sales.get_order(order_id)).delay_reasons[0]
        assert (reason.item_id, reason.stage) == (None, "sales")

    def test_other_departments_cannot_report(self, registry, actors, session_factory):
        order_id, (item_id,) = make_order(session_factory, "1048")
        with pytest.raises(PermissionDeniedError):
            run(registry.for_actor(actors["design-1"]).add_delay_reason(order_id, DelayReasonCreate(
                item_id=item_id, category="design", reason="Late artwork",
            )))
        with pytest.raises(NotFoundError):
            run(registry.for_actor(actors["sales-1"]).resolve_delay_reason(order_id, 999))


class TestFiles:
    def test_file_type_detection(self):
        assert file_type_for("proof.pdf", "application/pdf") == "proof"
        assert file_type_for("photo.png") == "image"
        assert file_type_for("notes.txt", "text/plain") == "other"

    def test_upload_and_replace(self, registry, actors, session_factory, storage):
        order_id, (item_id,) = make_order(session_factory, "1050", items=[
            {"product_name": "Cards", "current_stage": "design"},
        ])
        design = registry.for_actor(actors["design-1"])
        run(design.upload_file(order_id, item_id, "proof-v1.pdf", b"%PDF-1", "application/pdf"))
        run(design.upload_file(order_id, item_id, "proof-v2.pdf", b"%PDF-2", "application/pdf",
                               replace_existing=True))
        order = run(design.get_order(order_id))
        assert [f.file_name for f in order.files] == ["proof-v2.pdf"]
        assert order.files[0].file_type == "proof"
        assert storage.deleted == ["1050/proof/proof-v1.pdf"]

        run(design.delete_file(order_id, order.files[0].id))
        assert run(design.get_order(order_id)).files == []
        assert storage.deleted[-1] == "1050/proof/proof-v2.pdf"


class TestDeletion:
    def test_delete_order(self, registry, actors, session_factory):
        order_id, _ = make_order(session_factory, "1060")
        with pytest.raises(PermissionDeniedError):
            run(registry.for_actor(actors["design-1"]).delete_order(order_id))
        run(registry.for_actor(actors["sales-1"]).delete_order(order_id))
        assert load_order(session_factory, order_id) is None

    def test_delete_all_needs_exact_confirmation(self, registry, actors, session_factory):
        for number in range(3):
            make_order(session_factory, f"20{number}")
        admin = registry.for_actor(actors["admin-1"])
        with pytest.raises(ValidationError):
            run(admin.delete_all_orders("delete all"))
        with pytest.raises(PermissionDeniedError):
            run(registry.for_actor(actors["sales-1"]).delete_all_orders("DELETE ALL"))

        admin.delete_batch_size = 2
        assert run(admin.delete_all_orders("DELETE ALL")) == 3
        assert run(admin.fetch_orders(force=True)) == []


class TestSnapshot:
    def test_cache_is_keyed_per_user_and_role(self, registry, actors, session_factory):
        make_order(session_factory, "1070")
        sales = registry.for_actor(actors["sales-1"])
        run(sales.fetch_orders())
        assert sales.cache_key in registry.cache
        make_order(session_factory, "1071")
        # Cached snapshot is served until a write or a forced fetch
        assert numbers(run(sales.fetch_orders())) == ["1070"]
        assert numbers(run(sales.fetch_orders(force=True))) == ["1070", "1071"]

    def test_in_flight_fetch_returns_current_snapshot(self, registry, actors, session_factory):
        make_order(session_factory, "1072")
        sales = registry.for_actor(actors["sales-1"])
        sales._fetch_in_flight = True
        assert run(sales.fetch_orders(force=True)) == []


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestRegistry:
    def test_idle_services_are_dropped_and_stopped(self, session_factory, actors):
        clock = Clock()
        registry = AggregateRegistry(session_factory, change_feed=ChangeFeed(), idle_seconds=60, timer=clock)

        async def scenario():
            sales = registry.for_actor(actors["sales-1"])
            sales.start_realtime()
            clock.now = 30
            assert registry.for_actor(actors["sales-1"]) is sales
            clock.now = 80
            registry.for_actor(actors["design-1"])
            assert registry.active_users == 2
            assert await registry.reap() == 0

            clock.now = 200
            assert await registry.reap() == 2
            assert registry.active_users == 0
            assert not sales._refetcher.running
            assert registry.for_actor(actors["sales-1"]) is not sales
            await registry.shutdown()

        run(scenario())

    def test_capacity_drops_least_recently_used(self, session_factory, actors):
        registry = AggregateRegistry(session_factory, max_services=2)
        sales = registry.for_actor(actors["sales-1"])
        design = registry.for_actor(actors["design-1"])
        registry.for_actor(actors["sales-1"])
        registry.for_actor(actors["admin-1"])

        assert registry.active_users == 2
        assert registry.for_actor(actors["sales-1"]) is sales
        assert run(registry.reap()) == 1
        assert registry.for_actor(actors["design-1"]) is not design

    def test_services_with_open_sockets_keep_running(self, session_factory, actors):
        clock = Clock()
        registry = AggregateRegistry(session_factory, change_feed=ChangeFeed(), idle_seconds=60, timer=clock)

        async def push(batch):
            pass

        async def scenario():
            sales = registry.for_actor(actors["sales-1"])
            sales.add_listener(push)
            sales.start_realtime()
            clock.now = 120
            assert await registry.reap() == 1
            assert sales._refetcher.running
            sales.remove_listener(push)
            await sales.stop_realtime()

        run(scenario())
