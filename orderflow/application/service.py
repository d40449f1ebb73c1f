"""Order aggregate.

One ``OrderService`` per signed-in user holds that user's snapshot of the
orders and their timeline. Every mutation runs the transition rules, writes
in a single unit of work, runs the post-commit side effects and then forces
a full refetch; local state is never patched optimistically.
"""

import mimetypes
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from cachetools import TTLCache
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from orderflow.core.logging_config import get_logger, order_context
from orderflow.domain.actor import Actor
from orderflow.domain.constants import (
    DELETE_ALL_CONFIRMATION,
    DelayCategory,
    FileType,
    NotificationType,
    OutsourceStage,
    Stage,
    TimelineAction,
)
from orderflow.domain.errors import (
    InvalidTransitionError,
    NotFoundError,
    OrderFlowError,
    PermissionDeniedError,
    PersistenceError,
    ValidationError,
)
from orderflow.domain.models import DelayReason, Order, OrderFile, OrderItem
from orderflow.domain.priority import compute_priority, order_priority
from orderflow.domain import visibility, workflow
from orderflow.infrastructure.change_feed import ChangeEvent, ChangeFeed, DebouncedRefetcher
from orderflow.infrastructure.db import SessionFactory, session_scope
from orderflow.infrastructure.repository import OrderRepository
from orderflow.infrastructure.storage import StorageClient
from .notifications import NotificationService
from .schemas import (
    DelayReasonCreate,
    FollowUpNote,
    OrderRead,
    OrderUpdate,
    OutsourceInfo,
    OutsourceJobDetails,
    OutsourceVendor,
    TimelineEntryCreate,
    TimelineRead,
)
from .side_effects import FailurePolicy, PostCommitTask, SideEffectReport, run_post_commit

logger = get_logger(__name__)

Snapshot = Tuple[List[OrderRead], List[TimelineRead]]


@dataclass
class PriorityChange:
    item_id: int
    product_name: str
    previous: Optional[str]
    current: str
    department: Optional[str]


@dataclass
class Outcome:
    """What a unit of work changed; drives the post-commit side effects."""

    order_id: int
    order_number: str
    item_id: Optional[int] = None
    product_name: Optional[str] = None
    new_stage: Optional[str] = None
    priority_changes: List[PriorityChange] = field(default_factory=list)
    effects: List[PostCommitTask] = field(default_factory=list)
    result: Any = None


def file_type_for(file_name: str, content_type: Optional[str] = None) -> str:
    mime = content_type or mimetypes.guess_type(file_name)[0] or ""
    if mime == "application/pdf" or file_name.lower().endswith(".pdf"):
        return FileType.PROOF.value
    if mime.startswith("image/"):
        return FileType.IMAGE.value
    return FileType.OTHER.value


class OrderService:
    def __init__(self, actor: Actor, session_factory: SessionFactory,
                 notifications: Optional[NotificationService] = None,
                 storage: Optional[StorageClient] = None,
                 cache: Optional[TTLCache] = None,
                 change_feed: Optional[ChangeFeed] = None,
                 debounce_seconds: float = 0.5,
                 delete_batch_size: int = 100):
        self.actor = actor
        self.session_factory = session_factory
        self.notifications = notifications or NotificationService(session_factory)
        self.storage = storage
        self.cache = cache if cache is not None else TTLCache(maxsize=256, ttl=30)
        self.change_feed = change_feed
        self.delete_batch_size = delete_batch_size
        self.orders: List[OrderRead] = []
        self.timeline: List[TimelineRead] = []
        self.last_report: Optional[SideEffectReport] = None
        self._fetch_in_flight = False
        self._refetcher = DebouncedRefetcher(self._on_changes, window=debounce_seconds)
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._listeners: List[Callable[[List[ChangeEvent]], Awaitable[None]]] = []

    @property
    def cache_key(self) -> Tuple[str, Optional[str]]:
        return (self.actor.user_id, self.actor.role)

    # Snapshot

    def _load_snapshot(self) -> Snapshot:
        with session_scope(self.session_factory) as session:
            repo = OrderRepository(session)
            orders = [OrderRead.model_validate(o) for o in repo.list_orders()]
            timeline = [TimelineRead.model_validate(t) for t in repo.list_timeline([o.id for o in orders])]
        return orders, timeline

    def _refresh_priorities(self) -> None:
        today = date.today()
        for order in self.orders:
            for item in order.items:
                item.priority = compute_priority(item.delivery_date, today).value
            buckets = [item.priority for item in order.items]
            buckets.append(compute_priority(order.delivery_date, today).value)
            order.priority = order_priority(buckets).value

    async def fetch_orders(self, force: bool = False) -> List[OrderRead]:
        if self._fetch_in_flight:
            logger.debug("Order fetch already in flight, skipping")
            return self.orders

        if not force:
            cached = self.cache.get(self.cache_key)
            if cached is not None:
                # Keep what is on screen; only seed an empty aggregate
                if not self.orders:
                    self.orders, self.timeline = list(cached[0]), list(cached[1])
                self._refresh_priorities()
                return self.orders

        self._fetch_in_flight = True
        try:
            orders, timeline = await run_in_threadpool(self._load_snapshot)
        except Exception as e:
            logger.exception("Failed to fetch orders", extra={'extra_fields': {'user_id': self.actor.user_id}})
            raise PersistenceError("Could not load orders") from e
        finally:
            self._fetch_in_flight = False

        self.orders, self.timeline = orders, timeline
        self._refresh_priorities()
        self.cache[self.cache_key] = (orders, timeline)
        return self.orders

    async def refresh_orders(self) -> List[OrderRead]:
        return await self.fetch_orders(force=True)

    async def invalidate_and_refetch(self) -> None:
        self.cache.clear()
        try:
            await self.fetch_orders(force=True)
        except PersistenceError:
            logger.warning("Refetch after write failed; keeping previous snapshot")

    # Realtime

    def add_listener(self, listener: Callable[[List[ChangeEvent]], Awaitable[None]]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def has_listeners(self) -> bool:
        return bool(self._listeners)

    def start_realtime(self) -> None:
        if self.change_feed is None or self._refetcher.running:
            return
        self._refetcher.start()
        self._unsubscribe = self.change_feed.subscribe(self._refetcher.notify)

    async def stop_realtime(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self._refetcher.stop()

    async def _on_changes(self, batch: List[ChangeEvent]) -> None:
        logger.debug(f"Refetching after {len(batch)} change events")
        await self.fetch_orders(force=True)
        for listener in list(self._listeners):
            await listener(batch)

    # Reads

    def _snapshot_order(self, order_id: int) -> OrderRead:
        for order in self.orders:
            if order.id == order_id:
                return order
        raise NotFoundError("Order not found")

    def _visible_order(self, order_id: int) -> OrderRead:
        order = self._snapshot_order(order_id)
        if not visibility.can_view_order(order, self.actor):
            # Same answer as a missing order, so ids of other departments do not leak
            raise NotFoundError("Order not found")
        return order

    async def get_order(self, order_id: int) -> OrderRead:
        # Reloads only when a write since the last fetch cleared the cache
        await self.fetch_orders()
        return self._visible_order(order_id)

    async def order_after_write(self, outcome: Outcome) -> OrderRead:
        """The order as the caller just left it, even when the write moved it off their pages."""
        await self.fetch_orders()
        return self._snapshot_order(outcome.order_id)

    def get_timeline_for_order(self, order_id: int) -> List[TimelineRead]:
        self._visible_order(order_id)
        entries = [t for t in self.timeline if t.order_id == order_id]
        if self.actor.is_admin or self.actor.is_sales:
            return entries
        return [t for t in entries if t.is_public]

    def orders_for_viewer(self) -> List[OrderRead]:
        return visibility.orders_for_viewer(self.orders, self.actor)

    def orders_for_department(self, department: str) -> List[OrderRead]:
        return visibility.orders_for_department(self.orders, department, self.actor)

    def assigned_to_me(self) -> List[OrderRead]:
        return visibility.assigned_to_me(self.orders, self.actor)

    def urgent_orders(self, department: Optional[str] = None) -> List[OrderRead]:
        if not (self.actor.is_admin or self.actor.is_sales):
            department = self.actor.home_department
            if not department:
                return []
        return visibility.urgent_orders(self.orders, department)

    def completed_orders(self) -> List[OrderRead]:
        return visibility.completed_orders(self.orders, self.actor)

    def dispatch_queue(self) -> List[OrderRead]:
        if not visibility.can_view_dispatch(self.actor):
            raise PermissionDeniedError("You do not have access to the dispatch queue")
        return visibility.dispatch_queue(self.orders, self.actor)

    # Mutation plumbing

    def _unit_of_work(self, work: Callable[[OrderRepository], Outcome]) -> Outcome:
        with session_scope(self.session_factory) as session:
            return work(OrderRepository(session))

    def _notify(self, name: str, method: Callable, *args) -> PostCommitTask:
        return PostCommitTask(name, partial(run_in_threadpool, method, *args), FailurePolicy.BEST_EFFORT)

    def _post_commit_tasks(self, outcome: Outcome) -> List[PostCommitTask]:
        tasks = []
        if outcome.new_stage:
            tasks.append(self._notify(
                "stage_notifications", self.notifications.notify_stage_change,
                outcome.order_id, outcome.order_number, outcome.item_id, outcome.product_name,
                outcome.new_stage, self.actor.user_id,
            ))
        for change in outcome.priority_changes:
            tasks.append(self._notify(
                f"priority_alert:{change.item_id}", self.notifications.notify_priority_change,
                outcome.order_id, outcome.order_number, change.item_id, change.product_name,
                change.previous, change.current, change.department,
            ))
        tasks.extend(outcome.effects)
        return tasks

    async def mutate(self, operation: str, work: Callable[[OrderRepository], Outcome]) -> Outcome:
        try:
            outcome = await run_in_threadpool(self._unit_of_work, work)
        except OrderFlowError as e:
            logger.info(
                f"{operation} rejected: {e.description}",
                extra={'extra_fields': {'operation': operation, 'error': e.__class__.__name__}},
            )
            raise
        except SQLAlchemyError as e:
            logger.exception(f"{operation} failed", extra={'extra_fields': {'operation': operation}})
            raise PersistenceError("Could not save changes, please try again") from e

        with order_context(operation=operation, order_id=outcome.order_id,
                           order_number=outcome.order_number, item_id=outcome.item_id):
            self.last_report = await run_post_commit(self._post_commit_tasks(outcome))
            await self.invalidate_and_refetch()
            logger.info(f"{operation} applied", extra={'extra_fields': {'new_stage': outcome.new_stage}})
        return outcome

    def _outcome(self, order: Order, item: Optional[OrderItem] = None) -> Outcome:
        return Outcome(
            order_id=order.id,
            order_number=order.order_number,
            item_id=item.id if item is not None else None,
            product_name=item.product_name if item is not None else None,
        )

    def _reprioritize(self, order: Order, items: List[OrderItem], outcome: Outcome) -> None:
        for item in items:
            previous = item.priority
            current = compute_priority(item.delivery_date).value
            item.priority = current
            if previous != current:
                outcome.priority_changes.append(PriorityChange(
                    item.id, item.product_name, previous, current, visibility.effective_department(item),
                ))
        buckets = [i.priority for i in order.items]
        buckets.append(compute_priority(order.delivery_date).value)
        order.priority = order_priority(buckets).value

    @staticmethod
    def _touch(repo: OrderRepository, order: Order, item: Optional[OrderItem] = None) -> None:
        if item is not None:
            item.updated_at = datetime.utcnow()
        repo.touch_order(order)

    @staticmethod
    def _sync_completion(order: Order) -> None:
        order.is_completed = bool(order.items) and all(
            i.current_stage == Stage.COMPLETED.value for i in order.items
        )
        if order.is_completed:
            order.order_status = "completed"

    def _require_sales_or_admin(self, message: str) -> None:
        if not (self.actor.is_admin or self.actor.is_sales):
            raise PermissionDeniedError(message)

    def _require_item_access(self, item: OrderItem) -> None:
        if not visibility.can_see_item(item, self.actor):
            raise PermissionDeniedError("You do not have access to this item")

    def _require_order_access(self, order: Order) -> None:
        if self.actor.is_admin or self.actor.is_sales:
            return
        if not any(visibility.can_see_item(item, self.actor) for item in order.items):
            raise PermissionDeniedError("You do not have access to this order")

    def _require_outsource_access(self, item: OrderItem) -> None:
        # Outsource managers reach vendor jobs from outside the outsource department
        if visibility.effective_department(item) == Stage.OUTSOURCE.value:
            workflow.check_outsource_manager(self.actor)
            return
        self._require_item_access(item)

    def _unassign_if_foreign(self, repo: OrderRepository, order: Order, item: OrderItem, department: str) -> None:
        if not item.assigned_to:
            return
        assignee = repo.load_actor(item.assigned_to)
        assignee_department = assignee.home_department if assignee else None
        if not workflow.should_unassign(assignee_department, department):
            return
        name = item.assigned_to_name or item.assigned_to
        item.assigned_to = None
        item.assigned_to_name = None
        repo.add_timeline(
            order, self.actor, stage=item.current_stage, action=TimelineAction.ASSIGNED.value, item=item,
            notes=f"Unassigned {name} ({assignee_department or 'unknown department'}); item moved to {department}",
        )

    @staticmethod
    def _load_outsource(item: OrderItem) -> OutsourceInfo:
        if not item.outsource_info:
            raise ValidationError("Item is not outsourced")
        return OutsourceInfo.model_validate(item.outsource_info)

    @staticmethod
    def _save_outsource(item: OrderItem, info: OutsourceInfo) -> None:
        # Reassign so the JSON column registers the change
        item.outsource_info = info.model_dump(mode="json")

    # Stage transitions

    async def update_item_stage(self, order_id: int, item_id: int, stage: str,
                                substage: Optional[str] = None) -> Outcome:
        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, item_id)
            self._require_item_access(item)
            previous = item.current_stage
            target = workflow.check_stage_change(previous, stage, self.actor)
            department = workflow.department_for_stage(target)

            item.current_stage = target
            item.assigned_department = department
            if target == Stage.PRODUCTION.value:
                sequence = workflow.production_sequence(item)
                if substage:
                    item.current_substage = workflow.check_substage_advance(sequence, None, substage)
                elif item.current_substage not in sequence:
                    item.current_substage = workflow.entry_substage(item)
            else:
                item.current_substage = None
            if target == Stage.COMPLETED.value:
                self._sync_completion(order)
            order.current_department = department

            suffix = f" - {item.current_substage}" if item.current_substage else ""
            repo.add_timeline(order, self.actor, stage=target, action=TimelineAction.STAGE_CHANGED.value,
                              item=item, substage=item.current_substage,
                              notes=f"Moved from {previous} to {target}{suffix}")
            self._touch(repo, order, item)
            outcome = self._outcome(order, item)
            outcome.new_stage = target
            self._reprioritize(order, [item], outcome)
            return outcome

        return await self.mutate("update_item_stage", work)

    def _require_production(self, item: OrderItem) -> List[str]:
        if item.current_stage != Stage.PRODUCTION.value:
            raise InvalidTransitionError("Item is not in production")
        return workflow.production_sequence(item)

    async def update_item_substage(self, order_id: int, item_id: int, substage: str) -> Outcome:
        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, item_id)
            self._require_item_access(item)
            sequence = self._require_production(item)
            previous = item.current_substage
            item.current_substage = workflow.check_substage_advance(sequence, previous, substage)
            repo.add_timeline(order, self.actor, stage=Stage.PRODUCTION.value,
                              action=TimelineAction.SUBSTAGE_STARTED.value, item=item,
                              substage=item.current_substage,
                              notes=f"Production moved from {previous or 'start'} to {item.current_substage}")
            self._touch(repo, order, item)
            outcome = self._outcome(order, item)
            self._reprioritize(order, [item], outcome)
            return outcome

        return await self.mutate("update_item_substage", work)

    async def start_substage(self, order_id: int, item_id: int, substage: str) -> Outcome:
        """Record that a station started work; restarting the current substage is allowed."""
        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, item_id)
            self._require_item_access(item)
            sequence = self._require_production(item)
            wanted = (substage or "").strip().lower()
            if wanted != item.current_substage:
                wanted = workflow.check_substage_advance(sequence, item.current_substage, wanted)
            item.current_substage = wanted
            repo.add_timeline(order, self.actor, stage=Stage.PRODUCTION.value,
                              action=TimelineAction.SUBSTAGE_STARTED.value, item=item,
                              substage=wanted, notes=f"Started {wanted}")
            self._touch(repo, order, item)
            outcome = self._outcome(order, item)
            self._reprioritize(order, [item], outcome)
            return outcome

        return await self.mutate("start_substage", work)

    async def complete_substage(self, order_id: int, item_id: int) -> Outcome:
        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, item_id)
            self._require_item_access(item)
            sequence = self._require_production(item)
            current = item.current_substage
            if not current:
                raise InvalidTransitionError("No production substage is in progress")
            following = workflow.next_substage(sequence, current)
            repo.add_timeline(order, self.actor, stage=Stage.PRODUCTION.value,
                              action=TimelineAction.SUBSTAGE_COMPLETED.value, item=item,
                              substage=current, notes=f"Completed {current}")
            outcome = self._outcome(order, item)

            if following:
                item.current_substage = following
                repo.add_timeline(order, self.actor, stage=Stage.PRODUCTION.value,
                                  action=TimelineAction.SUBSTAGE_STARTED.value, item=item,
                                  substage=following, notes=f"Started {following}")
            else:
                item.current_stage = Stage.DISPATCH.value
                item.assigned_department = workflow.department_for_stage(Stage.DISPATCH.value)
                item.current_substage = None
                order.current_department = item.assigned_department
                repo.add_timeline(order, self.actor, stage=Stage.DISPATCH.value,
                                  action=TimelineAction.STAGE_CHANGED.value, item=item,
                                  notes="Production complete, moved to dispatch")
                outcome.new_stage = Stage.DISPATCH.value
                outcome.effects.append(self._notify(
                    "ready_for_dispatch", self.notifications.notify_admins,
                    "Ready for Dispatch",
                    f"{item.product_name} ({order.order_number}) completed production and is ready for dispatch",
                    NotificationType.SUCCESS.value, None, order.id, item.id,
                ))
            self._touch(repo, order, item)
            self._reprioritize(order, [item], outcome)
            return outcome

        return await self.mutate("complete_substage", work)

    async def set_production_stage_sequence(self, order_id: int, item_id: int, sequence: List[str]) -> Outcome:
        if not (self.actor.is_admin or self.actor.role == "prepress"):
            raise PermissionDeniedError("Only admin and prepress can set the production sequence")

        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, item_id)
            steps = workflow.validate_sequence(sequence)
            if item.current_stage == Stage.PRODUCTION.value and item.current_substage not in steps:
                raise InvalidTransitionError(
                    f"Current substage '{item.current_substage}' is missing from the new sequence"
                )
            item.production_stage_sequence = steps
            repo.add_timeline(order, self.actor, stage=item.current_stage,
                              action=TimelineAction.STAGE_CHANGED.value, item=item,
                              notes=f"Production sequence set: {' -> '.join(steps)}", is_public=False)
            self._touch(repo, order, item)
            outcome = self._outcome(order, item)
            self._reprioritize(order, [item], outcome)
            return outcome

        return await self.mutate("set_production_stage_sequence", work)

    async def send_to_production(self, order_id: int, item_id: int, sequence: List[str]) -> Outcome:
        workflow.check_department_assignment(self.actor, Stage.PRODUCTION.value)

        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, item_id)
            self._require_item_access(item)
            steps = workflow.validate_sequence(sequence)
            item.production_stage_sequence = steps
            item.current_stage = Stage.PRODUCTION.value
            item.current_substage = steps[0]
            item.assigned_department = Stage.PRODUCTION.value
            item.is_ready_for_production = True
            order.current_department = Stage.PRODUCTION.value
            self._unassign_if_foreign(repo, order, item, Stage.PRODUCTION.value)
            repo.add_timeline(order, self.actor, stage=Stage.PRODUCTION.value,
                              action=TimelineAction.SENT_TO_PRODUCTION.value, item=item, substage=steps[0],
                              notes=f"Sent to production: {' -> '.join(steps)}")
            self._touch(repo, order, item)
            outcome = self._outcome(order, item)
            outcome.new_stage = Stage.PRODUCTION.value
            self._reprioritize(order, [item], outcome)
            return outcome

        return await self.mutate("send_to_production", work)

    # Assignment

    async def assign_to_department(self, order_id: int, item_id: int, department: str,
                                   substage: Optional[str] = None) -> Outcome:
        target = workflow.check_department_assignment(self.actor, department)
        if target == Stage.OUTSOURCE.value:
            raise ValidationError("Vendor details are required to outsource an item")

        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, item_id)
            self._require_item_access(item)
            stage = workflow.STAGE_FOR_DEPARTMENT[target]
            item.assigned_department = target
            item.current_stage = stage
            if stage == Stage.PRODUCTION.value:
                sequence = workflow.production_sequence(item)
                if substage:
                    item.current_substage = workflow.check_substage_advance(sequence, None, substage)
                else:
                    item.current_substage = workflow.entry_substage(item)
            else:
                item.current_substage = None
            order.current_department = target
            self._unassign_if_foreign(repo, order, item, target)
            repo.add_timeline(order, self.actor, stage=stage, action=TimelineAction.ASSIGNED.value,
                              item=item, substage=item.current_substage,
                              notes=f"Assigned to {target} department")
            self._touch(repo, order, item)
            outcome = self._outcome(order, item)
            outcome.new_stage = stage
            self._reprioritize(order, [item], outcome)
            return outcome

        return await self.mutate("assign_to_department", work)

    async def assign_to_user(self, order_id: int, item_id: int, user_id: str,
                             user_name: Optional[str] = None) -> Outcome:
        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, item_id)
            self._require_item_access(item)
            assignee = repo.load_actor(user_id)
            if assignee is None:
                raise NotFoundError("User not found")
            name = user_name or assignee.display_name
            item.assigned_to = user_id
            item.assigned_to_name = name
            repo.add_timeline(order, self.actor, stage=item.current_stage, action=TimelineAction.ASSIGNED.value,
                              item=item, notes=f"Assigned to {name}")
            self._touch(repo, order, item)
            outcome = self._outcome(order, item)
            if user_id != self.actor.user_id:
                outcome.effects.append(self._notify(
                    "assignee_notification", self.notifications.notify_user, user_id,
                    "Order Assigned to You",
                    f"{item.product_name} ({order.order_number}) has been assigned to you",
                    NotificationType.INFO.value, order.id, item.id,
                ))
            self._reprioritize(order, [item], outcome)
            return outcome

        return await self.mutate("assign_to_user", work)

    async def assign_to_outsource(self, order_id: int, item_id: int, vendor: OutsourceVendor,
                                  job_details: OutsourceJobDetails) -> Outcome:
        workflow.check_department_assignment(self.actor, Stage.OUTSOURCE.value)

        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, item_id)
            self._require_item_access(item)
            if item.current_stage == Stage.OUTSOURCE.value:
                raise InvalidTransitionError("Item is already with a vendor")
            info = OutsourceInfo(
                vendor=vendor,
                job_details=job_details,
                current_outsource_stage=OutsourceStage.OUTSOURCED.value,
                assigned_at=datetime.utcnow(),
                assigned_by=self.actor.user_id,
                assigned_by_name=self.actor.display_name,
                assigned_by_role=self.actor.role,
            )
            self._save_outsource(item, info)
            item.current_stage = Stage.OUTSOURCE.value
            item.assigned_department = Stage.OUTSOURCE.value
            item.current_substage = None
            order.current_department = Stage.OUTSOURCE.value
            self._unassign_if_foreign(repo, order, item, Stage.OUTSOURCE.value)
            repo.add_timeline(order, self.actor, stage=Stage.OUTSOURCE.value, action=TimelineAction.ASSIGNED.value,
                              item=item, notes=f"Outsourced to {vendor.vendor_name} ({job_details.work_type})")
            self._touch(repo, order, item)
            outcome = self._outcome(order, item)
            outcome.new_stage = Stage.OUTSOURCE.value
            self._reprioritize(order, [item], outcome)
            return outcome

        return await self.mutate("assign_to_outsource", work)

    # Outsource sub-workflow

    async def _outsource_step(self, operation: str, order_id: int, item_id: int,
                              apply: Callable[[OrderRepository, Order, OrderItem, OutsourceInfo], str]) -> Outcome:
        workflow.check_outsource_manager(self.actor)

        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, item_id)
            self._require_outsource_access(item)
            info = self._load_outsource(item)
            note = apply(repo, order, item, info)
            self._save_outsource(item, info)
            repo.add_timeline(order, self.actor, stage=item.current_stage,
                              action=TimelineAction.OUTSOURCE_UPDATED.value, item=item, notes=note)
            self._touch(repo, order, item)
            outcome = self._outcome(order, item)
            self._reprioritize(order, [item], outcome)
            return outcome

        return await self.mutate(operation, work)

    async def update_outsource_stage(self, order_id: int, item_id: int, stage: str) -> Outcome:
        def apply(repo, order, item, info: OutsourceInfo) -> str:
            previous = info.current_outsource_stage
            info.current_outsource_stage = workflow.check_outsource_transition(previous, stage)
            return f"Outsource stage: {previous} -> {info.current_outsource_stage}"

        return await self._outsource_step("update_outsource_stage", order_id, item_id, apply)

    async def add_follow_up_note(self, order_id: int, item_id: int, note: str) -> Outcome:
        if not note or not note.strip():
            raise ValidationError("Follow-up note cannot be empty")

        def apply(repo, order, item, info: OutsourceInfo) -> str:
            info.follow_up_notes.append(FollowUpNote(
                note_id=uuid.uuid4().hex,
                note=note.strip(),
                created_at=datetime.utcnow(),
                created_by=self.actor.user_id,
                created_by_name=self.actor.display_name,
            ))
            return f"Follow-up: {note.strip()}"

        return await self._outsource_step("add_follow_up_note", order_id, item_id, apply)

    async def vendor_dispatch(self, order_id: int, item_id: int, courier_name: str,
                              tracking_number: Optional[str], dispatch_date: date) -> Outcome:
        def apply(repo, order, item, info: OutsourceInfo) -> str:
            info.current_outsource_stage = workflow.check_outsource_transition(
                info.current_outsource_stage, OutsourceStage.VENDOR_DISPATCHED.value)
            info.courier_name = courier_name
            info.tracking_number = tracking_number
            info.vendor_dispatch_date = dispatch_date
            return f"Vendor dispatched via {courier_name}" + (f" ({tracking_number})" if tracking_number else "")

        return await self._outsource_step("vendor_dispatch", order_id, item_id, apply)

    async def receive_from_vendor(self, order_id: int, item_id: int, receiver_name: str,
                                  received_date: date) -> Outcome:
        def apply(repo, order, item, info: OutsourceInfo) -> str:
            info.current_outsource_stage = workflow.check_outsource_transition(
                info.current_outsource_stage, OutsourceStage.RECEIVED_FROM_VENDOR.value)
            info.receiver_name = receiver_name
            info.received_date = received_date
            return f"Received from vendor by {receiver_name}"

        return await self._outsource_step("receive_from_vendor", order_id, item_id, apply)

    async def quality_check(self, order_id: int, item_id: int, result: str, notes: Optional[str] = None) -> Outcome:
        outcome_stage = workflow.qc_outcome(result)

        def apply(repo, order, item, info: OutsourceInfo) -> str:
            if info.current_outsource_stage == OutsourceStage.RECEIVED_FROM_VENDOR.value:
                info.current_outsource_stage = workflow.check_outsource_transition(
                    info.current_outsource_stage, OutsourceStage.QUALITY_CHECK.value)
            info.current_outsource_stage = workflow.check_outsource_transition(
                info.current_outsource_stage, outcome_stage)
            info.qc_result = result.lower()
            info.qc_notes = notes
            verdict = "passed" if info.qc_result == "pass" else "failed, returned to vendor"
            return f"Quality check {verdict}" + (f": {notes}" if notes else "")

        return await self._outsource_step("quality_check", order_id, item_id, apply)

    async def post_qc_decision(self, order_id: int, item_id: int, decision: str) -> Outcome:
        workflow.check_outsource_manager(self.actor)

        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, item_id)
            self._require_outsource_access(item)
            info = self._load_outsource(item)
            target = workflow.check_post_qc_decision(info.current_outsource_stage, decision)
            # The outsource stage intentionally stays at decision_pending
            info.decision = target
            self._save_outsource(item, info)
            item.current_stage = target
            item.assigned_department = workflow.department_for_stage(target)
            if target == Stage.PRODUCTION.value:
                if item.current_substage not in workflow.production_sequence(item):
                    item.current_substage = workflow.entry_substage(item)
            else:
                item.current_substage = None
            order.current_department = item.assigned_department
            repo.add_timeline(order, self.actor, stage=target, action=TimelineAction.OUTSOURCE_UPDATED.value,
                              item=item, substage=item.current_substage,
                              notes=f"Post-QC decision: send to {target}")
            self._touch(repo, order, item)
            outcome = self._outcome(order, item)
            outcome.new_stage = target
            self._reprioritize(order, [item], outcome)
            return outcome

        return await self.mutate("post_qc_decision", work)

    # Dispatch

    async def mark_as_dispatched(self, order_id: int, item_id: int, courier_name: Optional[str] = None,
                                 tracking_number: Optional[str] = None, dispatch_date: Optional[date] = None,
                                 notes: Optional[str] = None) -> Outcome:
        if not visibility.can_view_dispatch(self.actor):
            raise PermissionDeniedError("You cannot dispatch orders")

        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, item_id)
            if item.current_stage != Stage.DISPATCH.value:
                raise InvalidTransitionError("Only items at dispatch can be dispatched")
            item.current_stage = Stage.COMPLETED.value
            item.assigned_department = workflow.department_for_stage(Stage.COMPLETED.value)
            item.is_dispatched = True
            item.dispatch_info = {
                "courier_name": courier_name,
                "tracking_number": tracking_number,
                "dispatch_date": (dispatch_date or date.today()).isoformat(),
                "notes": notes,
                "dispatched_by": self.actor.user_id,
                "dispatched_by_name": self.actor.display_name,
                "dispatched_at": datetime.utcnow().isoformat(),
            }
            self._sync_completion(order)
            repo.add_timeline(order, self.actor, stage=Stage.COMPLETED.value,
                              action=TimelineAction.DISPATCHED.value, item=item,
                              notes=f"Dispatched via {courier_name}" if courier_name else "Dispatched")
            self._touch(repo, order, item)
            outcome = self._outcome(order, item)
            outcome.new_stage = Stage.COMPLETED.value
            outcome.effects.append(self._notify(
                "dispatch_notification", self.notifications.notify_admins,
                "Order Dispatched", f"{item.product_name} ({order.order_number}) has been dispatched",
                NotificationType.SUCCESS.value, self.actor.user_id, order.id, item.id,
            ))
            self._reprioritize(order, [item], outcome)
            return outcome

        return await self.mutate("mark_as_dispatched", work)

    # Order and item edits

    async def update_item_delivery_date(self, order_id: int, item_id: int, delivery_date: date) -> Outcome:
        self._require_sales_or_admin("Only admin and sales can change delivery dates")

        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, item_id)
            previous = item.delivery_date
            item.delivery_date = delivery_date
            repo.add_timeline(order, self.actor, stage=item.current_stage,
                              action=TimelineAction.DELIVERY_DATE_CHANGED.value, item=item,
                              notes=f"Delivery date changed from {previous} to {delivery_date}")
            self._touch(repo, order, item)
            outcome = self._outcome(order, item)
            self._reprioritize(order, [item], outcome)
            return outcome

        return await self.mutate("update_item_delivery_date", work)

    async def update_order(self, order_id: int, changes: OrderUpdate) -> Outcome:
        self._require_sales_or_admin("Only admin and sales can edit orders")
        values = changes.model_dump(exclude_unset=True)

        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            delivery_date = values.pop("delivery_date", None)
            for name, value in values.items():
                setattr(order, name, value)
            touched = list(values)
            if delivery_date is not None:
                order.delivery_date = delivery_date
                for item in order.items:
                    item.delivery_date = delivery_date
                touched.append("delivery_date")
            repo.add_timeline(order, self.actor, stage=order.current_department or Stage.SALES.value,
                              action=TimelineAction.ORDER_UPDATED.value,
                              notes=f"Order updated: {', '.join(touched) or 'no changes'}", is_public=False)
            self._touch(repo, order)
            outcome = self._outcome(order)
            self._reprioritize(order, list(order.items), outcome)
            return outcome

        return await self.mutate("update_order", work)

    async def update_item_specifications(self, order_id: int, item_id: int, specifications: Dict[str, str]) -> Outcome:
        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, item_id)
            self._require_item_access(item)
            item.specifications = dict(specifications)
            repo.add_timeline(order, self.actor, stage=item.current_stage,
                              action=TimelineAction.SPECIFICATIONS_UPDATED.value, item=item,
                              notes="Specifications updated")
            self._touch(repo, order, item)
            outcome = self._outcome(order, item)
            self._reprioritize(order, [item], outcome)
            return outcome

        return await self.mutate("update_item_specifications", work)

    async def add_note(self, order_id: int, note: str) -> Outcome:
        if not note or not note.strip():
            raise ValidationError("Note cannot be empty")

        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            self._require_order_access(order)
            text = note.strip()
            order.global_notes = f"{order.global_notes}\n{text}" if order.global_notes else text
            repo.add_timeline(order, self.actor, stage=Stage.SALES.value, action=TimelineAction.NOTE_ADDED.value,
                              notes=text, is_public=False)
            self._touch(repo, order)
            return self._outcome(order)

        return await self.mutate("add_note", work)

    async def add_timeline_entry(self, order_id: int, entry: TimelineEntryCreate) -> Outcome:
        stage = workflow.validate_stage(entry.stage)
        if entry.action not in {a.value for a in TimelineAction}:
            raise ValidationError(f"Unknown timeline action '{entry.action}'")

        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            self._require_order_access(order)
            item = repo.get_item(order_id, entry.item_id) if entry.item_id else None
            repo.add_timeline(order, self.actor, stage=stage, action=entry.action, item=item,
                              substage=entry.substage, notes=entry.notes, attachments=entry.attachments,
                              is_public=entry.is_public)
            return self._outcome(order, item)

        return await self.mutate("add_timeline_entry", work)

    # Delays

    async def add_delay_reason(self, order_id: int, entry: DelayReasonCreate) -> Outcome:
        category = (entry.category or "").strip().lower()
        if category not in {c.value for c in DelayCategory}:
            raise ValidationError(f"Unknown delay category '{entry.category}'")
        if not entry.reason or not entry.reason.strip():
            raise ValidationError("Delay reason cannot be empty")

        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, entry.item_id) if entry.item_id is not None else None
            if item is not None:
                self._require_item_access(item)
            else:
                self._require_order_access(order)
            stage = item.current_stage if item is not None else (order.current_department or Stage.SALES.value)
            record = DelayReason(
                order_id=order.id, item_id=entry.item_id, category=category, reason=entry.reason.strip(),
                description=entry.description, stage=stage, reported_by=self.actor.user_id,
                reported_by_name=self.actor.display_name,
            )
            repo.db.add(record)
            repo.add_timeline(order, self.actor, stage=stage, action=TimelineAction.DELAY_REPORTED.value,
                              item=item, notes=f"Delay reported ({category}): {record.reason}", is_public=False)
            self._touch(repo, order, item)
            repo.db.flush()
            outcome = self._outcome(order, item)
            outcome.result = record.id
            return outcome

        return await self.mutate("add_delay_reason", work)

    async def resolve_delay_reason(self, order_id: int, reason_id: int) -> Outcome:
        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            record = repo.get_delay_reason(order_id, reason_id)
            item = repo.get_item(order_id, record.item_id) if record.item_id is not None else None
            if item is not None:
                self._require_item_access(item)
            else:
                self._require_order_access(order)
            if record.is_resolved:
                raise InvalidTransitionError("Delay reason is already resolved")
            record.is_resolved = True
            record.resolved_at = datetime.utcnow()
            repo.add_timeline(order, self.actor, stage=record.stage, action=TimelineAction.DELAY_RESOLVED.value,
                              item=item, notes=f"Delay resolved ({record.category}): {record.reason}",
                              is_public=False)
            self._touch(repo, order, item)
            return self._outcome(order, item)

        return await self.mutate("resolve_delay_reason", work)

    # Files

    async def upload_file(self, order_id: int, item_id: Optional[int], file_name: str, content: bytes,
                          content_type: Optional[str] = None, file_type: Optional[str] = None,
                          replace_existing: bool = False, is_public: bool = True) -> Outcome:
        if self.storage is None:
            raise ValidationError("File storage is not configured")
        kind = file_type or file_type_for(file_name, content_type)
        if kind not in {f.value for f in FileType}:
            raise ValidationError(f"Unknown file type '{kind}'")

        def check(repo: OrderRepository) -> str:
            order = repo.get_order(order_id)
            if item_id is not None:
                self._require_item_access(repo.get_item(order_id, item_id))
            else:
                self._require_order_access(order)
            return order.order_number

        order_number = await run_in_threadpool(self._unit_of_work, check)
        stored = await self.storage.upload(content, order_number, kind, file_name,
                                           content_type or "application/octet-stream")

        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            item = repo.get_item(order_id, item_id) if item_id is not None else None
            replaced = []
            if replace_existing:
                for old in repo.files_for_item(order_id, item_id):
                    replaced.append(old.file_path)
                    repo.db.delete(old)
            record = OrderFile(order_id=order.id, item_id=item_id, file_url=stored.url, file_path=stored.path,
                               file_name=file_name, file_type=kind, uploaded_by=self.actor.user_id,
                               is_public=is_public)
            repo.db.add(record)
            action = TimelineAction.UPLOADED_PROOF if kind == FileType.PROOF.value else TimelineAction.FILE_UPLOADED
            stage = item.current_stage if item is not None else (order.current_department or Stage.SALES.value)
            repo.add_timeline(order, self.actor, stage=stage, action=action.value, item=item,
                              notes=f"Uploaded {file_name}" + (" (replaced previous files)" if replaced else ""),
                              attachments=[{"url": stored.url, "name": file_name, "type": kind}],
                              is_public=is_public)
            self._touch(repo, order, item)
            repo.db.flush()
            outcome = self._outcome(order, item)
            outcome.result = record.id
            for path in replaced:
                outcome.effects.append(PostCommitTask(f"delete_replaced:{path}", partial(self.storage.delete, path)))
            return outcome

        try:
            return await self.mutate("upload_file", work)
        except OrderFlowError:
            try:
                await self.storage.delete(stored.path)
            except OrderFlowError:
                logger.warning(f"Could not remove orphaned upload {stored.path}")
            raise

    async def delete_file(self, order_id: int, file_id: int) -> Outcome:
        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            record = repo.get_file(order_id, file_id)
            if not (self.actor.is_admin or self.actor.is_sales or record.uploaded_by == self.actor.user_id):
                raise PermissionDeniedError("Only the uploader, admin or sales can delete this file")
            path, name = record.file_path, record.file_name
            repo.db.delete(record)
            repo.add_timeline(order, self.actor, stage=order.current_department or Stage.SALES.value,
                              action=TimelineAction.FILE_DELETED.value, notes=f"Deleted {name}", is_public=False)
            self._touch(repo, order)
            outcome = self._outcome(order)
            if self.storage is not None:
                outcome.effects.append(PostCommitTask(f"delete_object:{path}", partial(self.storage.delete, path)))
            return outcome

        return await self.mutate("delete_file", work)

    # Deletion

    async def delete_order(self, order_id: int) -> Outcome:
        self._require_sales_or_admin("Only admin and sales can delete orders")

        def work(repo: OrderRepository) -> Outcome:
            order = repo.get_order(order_id)
            outcome = self._outcome(order)
            if self.storage is not None:
                for record in order.files:
                    outcome.effects.append(PostCommitTask(
                        f"delete_object:{record.file_path}", partial(self.storage.delete, record.file_path)))
            repo.db.delete(order)
            return outcome

        return await self.mutate("delete_order", work)

    def _delete_batch(self) -> Tuple[int, List[str]]:
        with session_scope(self.session_factory) as session:
            repo = OrderRepository(session)
            order_ids = repo.order_ids_batch(self.delete_batch_size)
            paths = []
            for order_id in order_ids:
                order = repo.get_order(order_id)
                paths.extend(f.file_path for f in order.files)
                session.delete(order)
            return len(order_ids), paths

    async def delete_all_orders(self, confirmation: str) -> int:
        if not self.actor.is_admin:
            raise PermissionDeniedError("Only admin can delete all orders")
        if confirmation != DELETE_ALL_CONFIRMATION:
            raise ValidationError(f'Type "{DELETE_ALL_CONFIRMATION}" to confirm')

        deleted = 0
        paths: List[str] = []
        while True:
            try:
                count, batch_paths = await run_in_threadpool(self._delete_batch)
            except SQLAlchemyError as e:
                logger.exception("Bulk delete failed", extra={'extra_fields': {'deleted': deleted}})
                raise PersistenceError(f"Bulk delete stopped after {deleted} orders") from e
            if not count:
                break
            deleted += count
            paths.extend(batch_paths)

        if self.storage is not None:
            self.last_report = await run_post_commit([
                PostCommitTask(f"delete_object:{path}", partial(self.storage.delete, path)) for path in paths
            ])
        logger.warning("All orders deleted", extra={'extra_fields': {'deleted': deleted, 'by': self.actor.user_id}})
        await self.invalidate_and_refetch()
        return deleted


class ServiceCache(TTLCache):
    """Per-user services dropped after ``ttl`` idle seconds or when ``maxsize`` is reached.

    Dropped services wait on ``retired`` until the registry stops their realtime feed.
    """

    def __init__(self, maxsize: int, ttl: float, timer: Callable[[], float] = time.monotonic):
        super().__init__(maxsize, ttl, timer)
        self.retired: List[OrderService] = []

    def popitem(self):
        key, service = super().popitem()
        self.retired.append(service)
        return key, service

    def expire(self, now=None):
        expired = super().expire(now)
        self.retired.extend(service for _, service in expired)
        return expired


class AggregateRegistry:
    """Hands out one ``OrderService`` per user, sharing the order cache."""

    def __init__(self, session_factory: SessionFactory, notifications: Optional[NotificationService] = None,
                 storage: Optional[StorageClient] = None, change_feed: Optional[ChangeFeed] = None,
                 cache_ttl: int = 30, debounce_seconds: float = 0.5, delete_batch_size: int = 100,
                 max_services: int = 500, idle_seconds: float = 900,
                 timer: Callable[[], float] = time.monotonic):
        self.session_factory = session_factory
        self.notifications = notifications or NotificationService(session_factory)
        self.storage = storage
        self.change_feed = change_feed
        self.cache = TTLCache(maxsize=1024, ttl=cache_ttl)
        self.debounce_seconds = debounce_seconds
        self.delete_batch_size = delete_batch_size
        self._services = ServiceCache(max_services, idle_seconds, timer)

    @property
    def active_users(self) -> int:
        self._services.expire()
        return len(self._services)

    def for_actor(self, actor: Actor) -> OrderService:
        service = self._services.get(actor.user_id)
        if service is None:
            service = OrderService(
                actor, self.session_factory, self.notifications, self.storage, self.cache,
                self.change_feed, self.debounce_seconds, self.delete_batch_size,
            )
        elif service.actor != actor:
            # Role or profile changed since the last request
            service.actor = actor
        # Re-inserting restarts the idle clock
        self._services[actor.user_id] = service
        return service

    async def reap(self) -> int:
        """Stop the realtime feed of services dropped for idling or for capacity."""
        self._services.expire()
        retired, self._services.retired = self._services.retired, []
        for service in retired:
            # Open sockets stop their own service when they disconnect
            if not service.has_listeners:
                await service.stop_realtime()
        if retired:
            logger.info(f"Dropped {len(retired)} idle order services")
        return len(retired)

    async def shutdown(self) -> None:
        services = list(self._services.values()) + self._services.retired
        for service in services:
            await service.stop_realtime()
        self._services.clear()
        self._services.retired = []
