from fastapi import APIRouter, Depends

from orderflow.application.intake import OrderIntake
from orderflow.application.schemas import (
    DeleteAllRequest,
    OrderCreated,
    WooCommerceCheck,
    WooCommerceCheckResult,
    WooCommerceImport,
)
from orderflow.application.service import OrderService
from .dependencies import get_intake, get_order_service

router = APIRouter(tags=["admin"])


@router.post("/admin/orders/delete-all")
async def delete_all_orders(payload: DeleteAllRequest, service: OrderService = Depends(get_order_service)):
    """Wipe every order; the confirmation text must be typed exactly."""
    deleted = await service.delete_all_orders(payload.confirmation)
    return {"deleted": deleted}


@router.post("/woocommerce/check", response_model=WooCommerceCheckResult)
async def check_woocommerce_order(payload: WooCommerceCheck, intake: OrderIntake = Depends(get_intake)):
    return await intake.check_woocommerce_order(payload.order_number)


@router.post("/woocommerce/import", response_model=OrderCreated, status_code=201)
async def import_woocommerce_order(payload: WooCommerceImport, intake: OrderIntake = Depends(get_intake)):
    outcome = await intake.import_woocommerce_order(payload)
    return OrderCreated(order_id=outcome.order_id, order_number=outcome.order_number)
