"""Dashboard counters computed from an order snapshot."""

from collections import Counter
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from orderflow.domain.constants import Priority, STAGES
from orderflow.domain.priority import compute_priority
from orderflow.domain.visibility import effective_department

TOP_DELAY_CAUSES = 3


def delay_reason_stats(orders: Iterable, since: Optional[datetime] = None,
                       until: Optional[datetime] = None) -> Dict[str, object]:
    """Reported delays per category and stage, most common causes first."""
    reasons = [
        reason
        for order in orders
        for reason in order.delay_reasons
        if (since is None or reason.reported_at >= since) and (until is None or reason.reported_at <= until)
    ]
    by_category = Counter(reason.category for reason in reasons)
    by_stage = Counter(reason.stage for reason in reasons)

    # Ties keep the order in which the categories were first reported
    most_common: List[Dict[str, object]] = [
        {"category": category, "count": count, "percentage": round(count * 100 / len(reasons), 1)}
        for category, count in by_category.most_common()
    ]
    return {
        "total": len(reasons),
        "open": sum(1 for reason in reasons if not reason.is_resolved),
        "by_category": dict(by_category),
        "by_stage": dict(by_stage),
        "most_common": most_common,
        "top_causes": [entry["category"] for entry in most_common[:TOP_DELAY_CAUSES]],
    }


def dashboard_summary(orders: Iterable, today: Optional[date] = None,
                      delays_since: Optional[datetime] = None) -> Dict[str, object]:
    today = today or date.today()
    orders = list(orders)
    active = [o for o in orders if not o.is_completed]

    per_department: Counter = Counter()
    urgent_per_department: Counter = Counter()
    stages: Counter = Counter({stage: 0 for stage in STAGES})
    delayed = []

    for order in orders:
        for item in order.items:
            stages[item.current_stage] += 1
            if order.is_completed:
                continue
            department = effective_department(item)
            per_department[department] += 1
            # Stored priority can be stale; always recompute from the date
            if compute_priority(item.delivery_date, today) is Priority.RED:
                urgent_per_department[department] += 1
            if item.delivery_date and item.delivery_date < today and not item.is_dispatched:
                delayed.append({
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "item_id": item.id,
                    "product_name": item.product_name,
                    "department": department,
                    "days_late": (today - item.delivery_date).days,
                })

    return {
        "total_orders": len(orders),
        "active_orders": len(active),
        "completed_orders": len(orders) - len(active),
        "items_per_department": dict(per_department),
        "urgent_per_department": dict(urgent_per_department),
        "stage_distribution": dict(stages),
        "delayed_items": sorted(delayed, key=lambda d: d["days_late"], reverse=True),
        "delay_reasons": delay_reason_stats(orders, since=delays_since),
    }
