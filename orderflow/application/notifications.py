"""Notification fan-out.

Audiences are resolved from the user directory; every recipient is written
in its own unit of work so one failed insert never blocks the others.
Failures are logged and never raised to the caller.
"""

import logging
from typing import Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from orderflow.domain.constants import NotificationType, Priority, Stage
from orderflow.domain.errors import NotFoundError
from orderflow.domain.models import Notification
from orderflow.infrastructure.db import SessionFactory, session_scope
from orderflow.infrastructure.repository import OrderRepository, UserDirectory

logger = logging.getLogger(__name__)

STAGE_LABELS = {
    Stage.SALES.value: "Sales",
    Stage.DESIGN.value: "Design",
    Stage.PREPRESS.value: "Prepress",
    Stage.PRODUCTION.value: "Production",
    Stage.OUTSOURCE.value: "Outsource",
    Stage.DISPATCH.value: "Dispatch",
    Stage.COMPLETED.value: "Completed",
}

# Stages whose department audience is production; sales also hears about them
HANDOFF_STAGES = {Stage.DISPATCH.value, Stage.COMPLETED.value}


def stage_audience(directory: UserDirectory, new_stage: str, actor_id: Optional[str]) -> Set[str]:
    audience = set(directory.admins)
    if new_stage in HANDOFF_STAGES:
        audience |= directory.department_users(Stage.SALES.value)
        audience |= directory.department_users(Stage.PRODUCTION.value)
    else:
        audience |= directory.department_users(new_stage)
    audience.discard(actor_id)
    return audience


def urgent_audience(directory: UserDirectory, department: Optional[str]) -> Set[str]:
    return set(directory.admins) | directory.department_users(department)


class NotificationService:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    def _directory(self) -> Optional[UserDirectory]:
        try:
            with session_scope(self.session_factory) as session:
                return OrderRepository(session).load_user_directory()
        except Exception:
            logger.exception("Could not load notification audience")
            return None

    def deliver(self, recipients: Iterable[str], title: str, message: str, type_: str,
                order_id: Optional[int] = None, item_id: Optional[int] = None) -> int:
        delivered = 0
        for user_id in sorted(set(recipients)):
            try:
                with session_scope(self.session_factory) as session:
                    session.add(Notification(
                        user_id=user_id,
                        title=title,
                        message=message,
                        type=type_,
                        order_id=order_id,
                        item_id=item_id,
                    ))
                delivered += 1
            except Exception:
                logger.warning(
                    "Notification delivery failed",
                    exc_info=True,
                    extra={'extra_fields': {'recipient': user_id, 'title': title, 'order_id': order_id}},
                )
        return delivered

    def notify_stage_change(self, order_id: int, order_number: str, item_id: int, product_name: str,
                            new_stage: str, actor_id: Optional[str]) -> int:
        directory = self._directory()
        if directory is None:
            return 0
        recipients = stage_audience(directory, new_stage, actor_id)
        label = STAGE_LABELS.get(new_stage, new_stage.title())
        type_ = NotificationType.SUCCESS.value if new_stage == Stage.DISPATCH.value else NotificationType.INFO.value
        return self.deliver(
            recipients,
            f"Order moved to {label}",
            f"{product_name} ({order_number}) is now in {label}",
            type_,
            order_id=order_id,
            item_id=item_id,
        )

    def notify_priority_change(self, order_id: int, order_number: str, item_id: int, product_name: str,
                               previous: str, current: str, department: Optional[str]) -> int:
        """Only a move into red raises an alert."""
        if current != Priority.RED.value or previous == Priority.RED.value:
            return 0
        directory = self._directory()
        if directory is None:
            return 0
        return self.deliver(
            urgent_audience(directory, department),
            "Urgent Order Alert",
            f"{product_name} ({order_number}) is now URGENT - delivery approaching!",
            NotificationType.URGENT.value,
            order_id=order_id,
            item_id=item_id,
        )

    def notify_admins(self, title: str, message: str, type_: str, exclude: Optional[str] = None,
                      order_id: Optional[int] = None, item_id: Optional[int] = None) -> int:
        directory = self._directory()
        if directory is None:
            return 0
        return self.deliver(directory.admins - {exclude}, title, message, type_, order_id, item_id)

    def notify_user(self, user_id: str, title: str, message: str, type_: str,
                    order_id: Optional[int] = None, item_id: Optional[int] = None) -> int:
        return self.deliver([user_id], title, message, type_, order_id, item_id)


class NotificationInbox:
    """A user's own notifications."""

    def __init__(self, db: Session):
        self.db = db

    def list(self, user_id: str, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        query = self.db.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.is_read.is_(False))
        return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()

    def unread_count(self, user_id: str) -> int:
        return (
            self.db.query(Notification)
            .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
            .count()
        )

    def _get(self, user_id: str, notification_id: int) -> Notification:
        notification = (
            self.db.query(Notification)
            .filter(Notification.id == notification_id, Notification.user_id == user_id)
            .first()
        )
        if not notification:
            raise NotFoundError("Notification not found")
        return notification

    def mark_read(self, user_id: str, notification_id: int) -> Notification:
        notification = self._get(user_id, notification_id)
        notification.is_read = True
        self.db.commit()
        return notification

    def mark_all_read(self, user_id: str) -> int:
        updated = (
            self.db.query(Notification)
            .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
            .update({Notification.is_read: True}, synchronize_session=False)
        )
        self.db.commit()
        return updated

    def delete(self, user_id: str, notification_id: int) -> None:
        self.db.delete(self._get(user_id, notification_id))
        self.db.commit()
