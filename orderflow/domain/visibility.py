"""Department visibility rules.

Works on anything shaped like an order (``items``, ``is_completed``,
``is_archived``) and an item (``assigned_department``, ``current_stage``,
``current_substage``, ``assigned_to``, ``delivery_date``): ORM rows and
read models alike.
"""

import logging
from typing import Iterable, List, Optional

from orderflow.domain.actor import Actor
from orderflow.domain.constants import Priority, Stage
from orderflow.domain.priority import compute_priority

logger = logging.getLogger(__name__)

DISPATCH_QUEUE_ROLES = {"admin", "sales", "production", "dispatch"}


def normalize_department(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def effective_department(item) -> str:
    """``assigned_department`` is authoritative; the stage only fills in when it is unset."""
    return normalize_department(item.assigned_department) or normalize_department(item.current_stage)


def belongs_to_department(item, department: str) -> bool:
    return effective_department(item) == normalize_department(department)


def is_visible(
    item,
    target_department: str,
    viewer_department: Optional[str],
    is_admin: bool,
    is_sales: bool,
    production_stage: Optional[str] = None,
) -> bool:
    if is_admin:
        return True
    if is_sales:
        return True

    viewer = normalize_department(viewer_department)
    if not viewer:
        # No role and no profile department: nothing is visible
        return False

    target = normalize_department(target_department)
    if viewer != target or effective_department(item) != target:
        return False

    # Production workers only see their own station's queue
    if target == Stage.PRODUCTION.value and production_stage:
        return (
            normalize_department(item.current_stage) == Stage.PRODUCTION.value
            and normalize_department(item.current_substage) == normalize_department(production_stage)
        )
    return True


def production_station(viewer: Actor) -> Optional[str]:
    """Station filter for production workers; nobody else has one."""
    if normalize_department(viewer.home_department) == Stage.PRODUCTION.value:
        return viewer.production_stage
    return None


def can_see_item(item, viewer: Actor) -> bool:
    """Item rules applied with the viewer's own department and station."""
    department = viewer.home_department
    return is_visible(item, department, department, viewer.is_admin, viewer.is_sales,
                      production_station(viewer))


def _active(orders: Iterable, include_archived: bool) -> List:
    return [
        o for o in orders
        if not o.is_completed and (include_archived or not o.is_archived)
    ]


def orders_for_viewer(orders: Iterable, viewer: Actor) -> List:
    """Home dashboard of the viewer."""
    if viewer.is_admin or viewer.is_sales:
        # Archived WooCommerce orders stay visible to admin and sales
        return _active(orders, include_archived=True)

    department = viewer.home_department
    if not department:
        return []
    return [
        order for order in _active(orders, include_archived=False)
        if any(
            is_visible(item, department, department, False, False, production_station(viewer))
            for item in order.items
        )
    ]


def can_open_department(viewer: Actor, department: str) -> bool:
    """Role or profile department may grant access to a department page."""
    if viewer.is_admin or viewer.is_sales:
        return True
    wanted = normalize_department(department)
    role = normalize_department(viewer.role)
    profile_department = normalize_department(viewer.department)
    if role and profile_department and role != profile_department:
        logger.warning(
            "Role and profile department diverge",
            extra={'extra_fields': {'user_id': viewer.user_id, 'role': role, 'department': profile_department}},
        )
    return bool(wanted) and wanted in (role, profile_department)


def orders_for_department(orders: Iterable, department: str, viewer: Actor) -> List:
    """Department page: orders with at least one item in ``department``."""
    active = _active(orders, include_archived=False)
    if viewer.is_admin or viewer.is_sales:
        return [o for o in active if any(belongs_to_department(i, department) for i in o.items)]

    if not can_open_department(viewer, department):
        return []
    production_stage = production_station(viewer)
    return [
        order for order in active
        if any(
            is_visible(item, department, department, False, False, production_stage)
            for item in order.items
        )
    ]


def assigned_to_me(orders: Iterable, viewer: Actor) -> List:
    return [
        order for order in orders_for_viewer(orders, viewer)
        if any(item.assigned_to == viewer.user_id for item in order.items)
    ]


def urgent_orders(orders: Iterable, department: Optional[str] = None) -> List:
    """Orders with a red item; the priority is recomputed, never read from storage."""
    result = []
    for order in _active(orders, include_archived=False):
        for item in order.items:
            if department and not belongs_to_department(item, department):
                continue
            if compute_priority(item.delivery_date) == Priority.RED:
                result.append(order)
                break
    return result


def completed_orders(orders: Iterable, viewer: Actor) -> List:
    done = [o for o in orders if o.is_completed]
    if viewer.is_admin or viewer.is_sales:
        return done
    department = viewer.home_department
    if not department:
        return []
    return [o for o in done if any(belongs_to_department(i, department) for i in o.items)]


def can_view_dispatch(viewer: Actor) -> bool:
    return viewer.is_admin or normalize_department(viewer.home_department) in DISPATCH_QUEUE_ROLES


def dispatch_queue(orders: Iterable, viewer: Actor) -> List:
    """Orders with items waiting at dispatch."""
    if not can_view_dispatch(viewer):
        return []
    return [
        order for order in _active(orders, include_archived=True)
        if any(
            normalize_department(item.current_stage) == Stage.DISPATCH.value and not item.is_dispatched
            for item in order.items
        )
    ]


def can_view_order(order, viewer: Actor) -> bool:
    """Whether the order shows up on any page the viewer can open."""
    if viewer.is_admin or viewer.is_sales:
        return True
    department = viewer.home_department
    if not department:
        return False
    for item in order.items:
        if can_see_item(item, viewer):
            return True
        if can_view_dispatch(viewer) and normalize_department(item.current_stage) == Stage.DISPATCH.value:
            return True
    return bool(order.is_completed) and any(belongs_to_department(i, department) for i in order.items)
