from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from orderflow.application.analytics import dashboard_summary
from orderflow.application.intake import OrderIntake
from orderflow.application.schemas import (
    DelayReasonCreate,
    DeliveryDateUpdate,
    DepartmentAssignment,
    DispatchCreate,
    FollowUpNoteCreate,
    ManualOrderCreate,
    NoteCreate,
    OrderCreated,
    OrderRead,
    OrderUpdate,
    OutsourceAssignment,
    OutsourceStageUpdate,
    PostQCDecision,
    ProductionSequence,
    QualityCheck,
    SpecificationsUpdate,
    StageUpdate,
    SubstageUpdate,
    TimelineEntryCreate,
    TimelineRead,
    UserAssignment,
    VendorDispatch,
    VendorReceipt,
)
from orderflow.application.service import OrderService, Outcome
from .dependencies import get_intake, get_order_service

router = APIRouter(prefix="/orders", tags=["orders"])


async def _order_after(service: OrderService, outcome: Outcome) -> OrderRead:
    return await service.order_after_write(outcome)


# Listings

@router.get("/", response_model=list[OrderRead])
async def list_orders(service: OrderService = Depends(get_order_service)):
    """Home dashboard orders for the signed-in user."""
    await service.fetch_orders()
    return service.orders_for_viewer()


@router.get("/assigned", response_model=list[OrderRead])
async def assigned_orders(service: OrderService = Depends(get_order_service)):
    await service.fetch_orders()
    return service.assigned_to_me()


@router.get("/urgent", response_model=list[OrderRead])
async def urgent_orders(department: Optional[str] = None, service: OrderService = Depends(get_order_service)):
    await service.fetch_orders()
    return service.urgent_orders(department)


@router.get("/completed", response_model=list[OrderRead])
async def completed_orders(service: OrderService = Depends(get_order_service)):
    await service.fetch_orders()
    return service.completed_orders()


@router.get("/dispatch", response_model=list[OrderRead])
async def dispatch_queue(service: OrderService = Depends(get_order_service)):
    await service.fetch_orders()
    return service.dispatch_queue()


@router.get("/department/{department}", response_model=list[OrderRead])
async def department_orders(department: str, service: OrderService = Depends(get_order_service)):
    await service.fetch_orders()
    return service.orders_for_department(department)


@router.get("/summary")
async def summary(delays_since: Optional[datetime] = None, service: OrderService = Depends(get_order_service)):
    await service.fetch_orders()
    if service.actor.is_admin or service.actor.is_sales:
        return dashboard_summary(service.orders, delays_since=delays_since)
    return dashboard_summary(service.orders_for_viewer(), delays_since=delays_since)


@router.post("/refresh", response_model=list[OrderRead])
async def refresh(service: OrderService = Depends(get_order_service)):
    await service.refresh_orders()
    return service.orders_for_viewer()


# Single order

@router.post("/", response_model=OrderCreated, status_code=201)
async def create_order(payload: ManualOrderCreate, intake: OrderIntake = Depends(get_intake)):
    outcome = await intake.create_manual_order(payload)
    return OrderCreated(order_id=outcome.order_id, order_number=outcome.order_number)


@router.get("/{order_id}", response_model=OrderRead)
async def get_order(order_id: int, service: OrderService = Depends(get_order_service)):
    await service.fetch_orders()
    return await service.get_order(order_id)


@router.get("/{order_id}/timeline", response_model=list[TimelineRead])
async def get_timeline(order_id: int, service: OrderService = Depends(get_order_service)):
    await service.fetch_orders()
    return service.get_timeline_for_order(order_id)


@router.patch("/{order_id}", response_model=OrderRead)
async def update_order(order_id: int, payload: OrderUpdate, service: OrderService = Depends(get_order_service)):
    return await _order_after(service, await service.update_order(order_id, payload))


@router.delete("/{order_id}", status_code=204)
async def delete_order(order_id: int, service: OrderService = Depends(get_order_service)):
    await service.delete_order(order_id)
    return None


@router.post("/{order_id}/notes", response_model=OrderRead)
async def add_note(order_id: int, payload: NoteCreate, service: OrderService = Depends(get_order_service)):
    return await _order_after(service, await service.add_note(order_id, payload.note))


@router.post("/{order_id}/timeline", status_code=201)
async def add_timeline_entry(order_id: int, payload: TimelineEntryCreate,
                             service: OrderService = Depends(get_order_service)):
    await service.add_timeline_entry(order_id, payload)
    return {"status": "created"}


@router.post("/{order_id}/delays", response_model=OrderRead, status_code=201)
async def add_delay_reason(order_id: int, payload: DelayReasonCreate,
                           service: OrderService = Depends(get_order_service)):
    return await _order_after(service, await service.add_delay_reason(order_id, payload))


@router.post("/{order_id}/delays/{reason_id}/resolve", response_model=OrderRead)
async def resolve_delay_reason(order_id: int, reason_id: int, service: OrderService = Depends(get_order_service)):
    return await _order_after(service, await service.resolve_delay_reason(order_id, reason_id))


# Item workflow

@router.put("/{order_id}/items/{item_id}/stage", response_model=OrderRead)
async def update_item_stage(order_id: int, item_id: int, payload: StageUpdate,
                            service: OrderService = Depends(get_order_service)):
    outcome = await service.update_item_stage(order_id, item_id, payload.stage, payload.substage)
    return await _order_after(service, outcome)


@router.put("/{order_id}/items/{item_id}/substage", response_model=OrderRead)
async def update_item_substage(order_id: int, item_id: int, payload: SubstageUpdate,
                               service: OrderService = Depends(get_order_service)):
    outcome = await service.update_item_substage(order_id, item_id, payload.substage)
    return await _order_after(service, outcome)


@router.post("/{order_id}/items/{item_id}/substage/start", response_model=OrderRead)
async def start_substage(order_id: int, item_id: int, payload: SubstageUpdate,
                         service: OrderService = Depends(get_order_service)):
    return await _order_after(service, await service.start_substage(order_id, item_id, payload.substage))


@router.post("/{order_id}/items/{item_id}/substage/complete", response_model=OrderRead)
async def complete_substage(order_id: int, item_id: int, service: OrderService = Depends(get_order_service)):
    return await _order_after(service, await service.complete_substage(order_id, item_id))


@router.put("/{order_id}/items/{item_id}/sequence", response_model=OrderRead)
async def set_sequence(order_id: int, item_id: int, payload: ProductionSequence,
                       service: OrderService = Depends(get_order_service)):
    outcome = await service.set_production_stage_sequence(order_id, item_id, payload.sequence)
    return await _order_after(service, outcome)


@router.post("/{order_id}/items/{item_id}/production", response_model=OrderRead)
async def send_to_production(order_id: int, item_id: int, payload: ProductionSequence,
                             service: OrderService = Depends(get_order_service)):
    return await _order_after(service, await service.send_to_production(order_id, item_id, payload.sequence))


@router.post("/{order_id}/items/{item_id}/assign/department", response_model=OrderRead)
async def assign_to_department(order_id: int, item_id: int, payload: DepartmentAssignment,
                               service: OrderService = Depends(get_order_service)):
    outcome = await service.assign_to_department(order_id, item_id, payload.department, payload.substage)
    return await _order_after(service, outcome)


@router.post("/{order_id}/items/{item_id}/assign/user", response_model=OrderRead)
async def assign_to_user(order_id: int, item_id: int, payload: UserAssignment,
                         service: OrderService = Depends(get_order_service)):
    outcome = await service.assign_to_user(order_id, item_id, payload.user_id, payload.user_name)
    return await _order_after(service, outcome)


@router.put("/{order_id}/items/{item_id}/delivery-date", response_model=OrderRead)
async def update_delivery_date(order_id: int, item_id: int, payload: DeliveryDateUpdate,
                               service: OrderService = Depends(get_order_service)):
    outcome = await service.update_item_delivery_date(order_id, item_id, payload.delivery_date)
    return await _order_after(service, outcome)


@router.put("/{order_id}/items/{item_id}/specifications", response_model=OrderRead)
async def update_specifications(order_id: int, item_id: int, payload: SpecificationsUpdate,
                                service: OrderService = Depends(get_order_service)):
    outcome = await service.update_item_specifications(order_id, item_id, payload.specifications)
    return await _order_after(service, outcome)


@router.post("/{order_id}/items/{item_id}/dispatch", response_model=OrderRead)
async def mark_as_dispatched(order_id: int, item_id: int, payload: DispatchCreate,
                             service: OrderService = Depends(get_order_service)):
    outcome = await service.mark_as_dispatched(
        order_id, item_id, payload.courier_name, payload.tracking_number, payload.dispatch_date, payload.notes,
    )
    return await _order_after(service, outcome)


# Outsource

@router.post("/{order_id}/items/{item_id}/outsource", response_model=OrderRead)
async def assign_to_outsource(order_id: int, item_id: int, payload: OutsourceAssignment,
                              service: OrderService = Depends(get_order_service)):
    outcome = await service.assign_to_outsource(order_id, item_id, payload.vendor, payload.job_details)
    return await _order_after(service, outcome)


@router.put("/{order_id}/items/{item_id}/outsource/stage", response_model=OrderRead)
async def update_outsource_stage(order_id: int, item_id: int, payload: OutsourceStageUpdate,
                                 service: OrderService = Depends(get_order_service)):
    return await _order_after(service, await service.update_outsource_stage(order_id, item_id, payload.stage))


@router.post("/{order_id}/items/{item_id}/outsource/notes", response_model=OrderRead)
async def add_follow_up_note(order_id: int, item_id: int, payload: FollowUpNoteCreate,
                             service: OrderService = Depends(get_order_service)):
    return await _order_after(service, await service.add_follow_up_note(order_id, item_id, payload.note))


@router.post("/{order_id}/items/{item_id}/outsource/dispatch", response_model=OrderRead)
async def vendor_dispatch(order_id: int, item_id: int, payload: VendorDispatch,
                          service: OrderService = Depends(get_order_service)):
    outcome = await service.vendor_dispatch(
        order_id, item_id, payload.courier_name, payload.tracking_number, payload.dispatch_date,
    )
    return await _order_after(service, outcome)


@router.post("/{order_id}/items/{item_id}/outsource/receive", response_model=OrderRead)
async def receive_from_vendor(order_id: int, item_id: int, payload: VendorReceipt,
                              service: OrderService = Depends(get_order_service)):
    outcome = await service.receive_from_vendor(order_id, item_id, payload.receiver_name, payload.received_date)
    return await _order_after(service, outcome)


@router.post("/{order_id}/items/{item_id}/outsource/qc", response_model=OrderRead)
async def quality_check(order_id: int, item_id: int, payload: QualityCheck,
                        service: OrderService = Depends(get_order_service)):
    return await _order_after(service, await service.quality_check(order_id, item_id, payload.result, payload.notes))


@router.post("/{order_id}/items/{item_id}/outsource/decision", response_model=OrderRead)
async def post_qc_decision(order_id: int, item_id: int, payload: PostQCDecision,
                           service: OrderService = Depends(get_order_service)):
    return await _order_after(service, await service.post_qc_decision(order_id, item_id, payload.decision))


# Files

@router.post("/{order_id}/files", response_model=OrderRead, status_code=201)
async def upload_file(
    order_id: int,
    file: UploadFile = File(...),
    item_id: Optional[int] = Form(None),
    file_type: Optional[str] = Form(None),
    replace_existing: bool = Form(False),
    is_public: bool = Form(True),
    service: OrderService = Depends(get_order_service),
):
    content = await file.read()
    outcome = await service.upload_file(
        order_id, item_id, file.filename or "upload", content, file.content_type,
        file_type=file_type, replace_existing=replace_existing, is_public=is_public,
    )
    return await _order_after(service, outcome)


@router.delete("/{order_id}/files/{file_id}", status_code=204)
async def delete_file(order_id: int, file_id: int, service: OrderService = Depends(get_order_service)):
    await service.delete_file(order_id, file_id)
    return None
