"""Urgency bucket derived from the delivery date."""

from datetime import date, datetime
from typing import Optional, Union

from orderflow.domain.constants import Priority

DateLike = Union[date, datetime, str, None]


def _as_date(value: DateLike) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def days_until(delivery_date: DateLike, today: Optional[date] = None) -> Optional[int]:
    """Whole calendar days from today to the delivery date; negative when overdue."""
    delivery = _as_date(delivery_date)
    if delivery is None:
        return None
    return (delivery - (today or date.today())).days


def compute_priority(delivery_date: DateLike, today: Optional[date] = None) -> Priority:
    days = days_until(delivery_date, today)
    if days is None:
        return Priority.BLUE
    if days > 5:
        return Priority.BLUE
    if days >= 3:
        return Priority.YELLOW
    return Priority.RED


def order_priority(item_priorities) -> Priority:
    """An order is as urgent as its most urgent item."""
    ranked = [Priority.BLUE, Priority.YELLOW, Priority.RED]
    worst = Priority.BLUE
    for value in item_priorities:
        priority = Priority(value)
        if ranked.index(priority) > ranked.index(worst):
            worst = priority
    return worst
