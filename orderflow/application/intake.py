"""Order intake: manual orders and WooCommerce imports."""

from datetime import timedelta
from functools import partial
from typing import List, Optional

from pydantic import ValidationError as PayloadError
from starlette.concurrency import run_in_threadpool

from orderflow.core.logging_config import get_logger
from orderflow.domain.constants import (
    GST_RATE,
    INITIAL_ORDER_STATUS,
    WOOCOMMERCE_DELIVERY_LEAD_DAYS,
    OrderSource,
    Stage,
    TimelineAction,
)
from orderflow.domain.errors import (
    DuplicateOrderError,
    ExternalServiceError,
    MissingFieldError,
    NotFoundError,
    OrderFlowError,
    OrderNumberMismatchError,
    PermissionDeniedError,
    ValidationError,
)
from orderflow.domain.models import Order, OrderItem
from orderflow.domain.priority import compute_priority
from orderflow.domain import workflow
from orderflow.infrastructure.db import session_scope
from orderflow.infrastructure.inventory import InventoryClient
from orderflow.infrastructure.repository import OrderRepository
from orderflow.infrastructure.woocommerce import WooCommerceClient, WooCommerceOrder
from .schemas import CustomerDetails, ManualOrderCreate, WooCommerceCheckResult, WooCommerceImport
from .service import OrderService, Outcome
from .side_effects import PostCommitTask

logger = get_logger(__name__)


def _missing_fields(payload: ManualOrderCreate, is_admin: bool) -> List[str]:
    errors = []
    if is_admin and (not payload.department or not payload.assigned_user_id):
        errors.append("Admin must assign department and user")
    if not payload.order_number.strip():
        errors.append("Order number is required")
    if not payload.customer.name.strip():
        errors.append("Customer name is required")
    if payload.delivery_date is None:
        errors.append("Delivery date is required")
    if not payload.items:
        errors.append("At least one product is required")
    for index, item in enumerate(payload.items, start=1):
        if not item.name.strip():
            errors.append(f"Product {index} name required")
        if not item.specifications:
            errors.append(f"Product {index} needs at least one specification")
    return errors


class OrderIntake:
    def __init__(self, aggregate: OrderService, woocommerce: Optional[WooCommerceClient] = None,
                 inventory: Optional[InventoryClient] = None):
        self.aggregate = aggregate
        self.woocommerce = woocommerce
        self.inventory = inventory

    @property
    def actor(self):
        return self.aggregate.actor

    def _require_intake_role(self, action: str) -> None:
        if not (self.actor.is_admin or self.actor.is_sales):
            raise PermissionDeniedError(f"Only Admin and Sales can {action}")

    def _placement(self, department: Optional[str], assigned_user_id: Optional[str]):
        """Department and owner a new order starts with."""
        if self.actor.is_admin:
            target = workflow.validate_department(department or Stage.SALES.value)
            if target == Stage.OUTSOURCE.value:
                raise ValidationError("New orders cannot start outsourced; assign a vendor after creating the order")
            return target, assigned_user_id
        return Stage.SALES.value, self.actor.user_id

    def _check_duplicates(self, repo: OrderRepository, order_number: str, woo_order_id: Optional[int] = None) -> None:
        if repo.find_by_number(order_number):
            raise DuplicateOrderError("Order number already exists in Order Flow")
        if woo_order_id is not None:
            existing = repo.find_by_woo_id(woo_order_id)
            if existing:
                raise DuplicateOrderError(
                    f"This WooCommerce order already exists in Order Flow (Order ID: {existing.order_number})"
                )

    def _place_items(self, repo: OrderRepository, order: Order, department: str,
                     assigned_user_id: Optional[str]) -> None:
        stage = workflow.STAGE_FOR_DEPARTMENT[department]
        assignee_name = None
        if assigned_user_id:
            assignee = repo.load_actor(assigned_user_id)
            if assignee is None:
                raise NotFoundError("Assigned user not found")
            assignee_name = assignee.display_name
        for item in order.items:
            item.current_stage = stage
            item.assigned_department = department
            item.current_substage = workflow.entry_substage(item) if stage == Stage.PRODUCTION.value else None
            item.assigned_to = assigned_user_id
            item.assigned_to_name = assignee_name
            item.priority = compute_priority(item.delivery_date).value
        order.current_department = department
        order.order_status = INITIAL_ORDER_STATUS.get(department, "new_order")
        order.priority = compute_priority(order.delivery_date).value

    # Manual orders

    async def create_manual_order(self, payload: ManualOrderCreate) -> Outcome:
        self._require_intake_role("create orders")
        errors = _missing_fields(payload, self.actor.is_admin)
        if errors:
            raise MissingFieldError(errors[0])
        department, assigned_user_id = self._placement(payload.department, payload.assigned_user_id)
        order_number = payload.order_number.strip()

        def work(repo: OrderRepository) -> Outcome:
            self._check_duplicates(repo, order_number)
            customer_id = payload.customer_id
            if customer_id is None:
                customer = repo.find_or_create_customer(
                    payload.customer.name, payload.customer.email, payload.customer.phone,
                )
                customer_id = customer.id

            subtotal = sum((item.quantity or 1) * (item.price or 0) for item in payload.items)
            tax = subtotal * GST_RATE if payload.apply_gst else 0
            order = Order(
                order_number=order_number,
                source=OrderSource.MANUAL.value,
                customer_id=customer_id,
                delivery_date=payload.delivery_date,
                global_notes=payload.global_notes,
                order_total=round(subtotal + tax, 2),
                tax_amount=round(tax, 2),
                created_by=self.actor.user_id,
                **self._customer_columns(payload.customer),
            )
            for item in payload.items:
                quantity = item.quantity or 1
                order.items.append(OrderItem(
                    product_name=item.name.strip(),
                    quantity=quantity,
                    price=item.price or 0,
                    line_total=quantity * (item.price or 0),
                    specifications=dict(item.specifications),
                    delivery_date=payload.delivery_date,
                ))
            repo.db.add(order)
            self._place_items(repo, order, department, assigned_user_id)
            repo.db.flush()
            repo.add_timeline(order, self.actor, stage=Stage.SALES.value, action=TimelineAction.CREATED.value,
                              notes="Created manually")

            outcome = Outcome(order_id=order.id, order_number=order.order_number, result=order.id)
            if self.inventory is not None:
                for item in payload.items:
                    if item.paper_id and item.paper_required and item.paper_required > 0:
                        outcome.effects.append(PostCommitTask(
                            f"reserve_paper:{item.paper_id}",
                            partial(self.inventory.reserve_paper_for_job, order.id, item.paper_id,
                                    item.paper_required, self.actor.user_id),
                        ))
            return outcome

        outcome = await self.aggregate.mutate("create_manual_order", work)
        logger.info(f"Order {order_number} created", extra={'extra_fields': {'department': department}})
        return outcome

    @staticmethod
    def _customer_columns(customer: CustomerDetails) -> dict:
        return {
            "customer_name": customer.name.strip(),
            "customer_email": customer.email or None,
            "customer_phone": customer.phone or None,
            "customer_address": customer.address or None,
            "billing_city": customer.city or None,
            "billing_state": customer.state or None,
            "billing_pincode": customer.pincode or None,
        }

    # WooCommerce

    async def _lookup(self, order_number: str) -> Optional[WooCommerceOrder]:
        """Fetch and verify a WooCommerce order; None when the shop has no such order."""
        if self.woocommerce is None:
            raise ExternalServiceError("WooCommerce is not configured")
        data = await self.woocommerce.order_by_number(order_number)
        if not isinstance(data, dict) or not data.get("found") or not data.get("order"):
            return None
        try:
            order = WooCommerceOrder.model_validate(data["order"])
        except PayloadError as e:
            raise ExternalServiceError(f"Malformed WooCommerce order: {e}", title="WooCommerce Error") from e
        if not order.matches(order_number):
            raise OrderNumberMismatchError(
                f"Order number mismatch: Expected {order_number}, but got {order.order_number} (ID: {order.id})"
            )
        return order

    async def check_woocommerce_order(self, order_number: str) -> WooCommerceCheckResult:
        self._require_intake_role("check WooCommerce orders")
        requested = (order_number or "").strip()
        if not requested:
            raise MissingFieldError("Order number is required")
        try:
            order = await self._lookup(requested)
        except (ExternalServiceError, OrderNumberMismatchError) as e:
            logger.warning(f"WooCommerce check failed for {requested}: {e.description}")
            return WooCommerceCheckResult(status="error", message=e.description)
        if order is None:
            return WooCommerceCheckResult(status="not_found")
        return WooCommerceCheckResult(status="found", order=order.model_dump(mode="json"))

    async def import_woocommerce_order(self, request: WooCommerceImport) -> Outcome:
        self._require_intake_role("import WooCommerce orders")
        requested = (request.order_number or "").strip()
        if not requested:
            raise MissingFieldError("Order number is required")
        if self.actor.is_admin and not request.assigned_user_id:
            raise MissingFieldError("Admin must assign department and user")
        department, assigned_user_id = self._placement(request.department, request.assigned_user_id)

        remote = await self._lookup(requested)
        if remote is None:
            raise NotFoundError(f"WooCommerce order {requested} not found")
        if not remote.line_items:
            raise ValidationError("WooCommerce order has no line items")

        customer = request.customer or CustomerDetails(
            name=remote.customer_name,
            email=remote.customer_email,
            phone=remote.customer_phone,
            address=remote.billing_address,
            city=remote.billing_city,
            state=remote.billing_state,
            pincode=remote.billing_pincode,
        )
        if not customer.name.strip():
            raise MissingFieldError("Customer name is required")

        def create(repo: OrderRepository) -> Outcome:
            self._check_duplicates(repo, requested, remote.id)
            record = repo.find_or_create_customer(
                customer.name, customer.email, customer.phone,
                wc_customer_id=str(remote.customer_id) if remote.customer_id else f"guest-{customer.email}",
            )
            order = Order(
                order_number=requested,
                source=OrderSource.WOOCOMMERCE.value,
                woo_order_id=remote.id,
                customer_id=record.id,
                order_total=remote.order_total,
                currency=remote.currency,
                payment_status="pending",
                order_status=remote.status or "processing",
                created_by=self.actor.user_id,
                **self._customer_columns(customer),
            )
            for line in remote.line_items:
                quantity = line.quantity or 1
                order.items.append(OrderItem(
                    product_name=line.name,
                    quantity=quantity,
                    price=line.unit_price(),
                    line_total=quantity * line.unit_price(),
                    specifications=line.merged_specifications(),
                    current_stage=Stage.SALES.value,
                    assigned_department=Stage.SALES.value,
                ))
            repo.db.add(order)
            repo.db.flush()
            repo.add_timeline(order, self.actor, stage=Stage.SALES.value, action=TimelineAction.CREATED.value,
                              notes=f"Imported from WC #{remote.order_number}")
            return Outcome(order_id=order.id, order_number=order.order_number, result=order.id)

        outcome = await self.aggregate.mutate("import_woocommerce_order", create)

        delivery_date = request.delivery_date
        if delivery_date is None and remote.order_date is not None:
            delivery_date = remote.order_date.date() + timedelta(days=WOOCOMMERCE_DELIVERY_LEAD_DAYS)

        def enrich() -> None:
            with session_scope(self.aggregate.session_factory) as session:
                repo = OrderRepository(session)
                order = repo.get_order(outcome.order_id)
                order.global_notes = remote.summary_notes()
                order.delivery_date = delivery_date
                for item in order.items:
                    item.delivery_date = delivery_date
                self._place_items(repo, order, department, assigned_user_id)

        try:
            await run_in_threadpool(enrich)
        except OrderFlowError as e:
            logger.warning(f"Import enrichment for {requested} skipped: {e.description}")
        except Exception:
            logger.exception(f"Import enrichment for {requested} failed")
        else:
            await self.aggregate.invalidate_and_refetch()

        logger.info(
            f"WooCommerce order {requested} imported",
            extra={'extra_fields': {'woo_order_id': remote.id, 'department': department}},
        )
        return outcome
