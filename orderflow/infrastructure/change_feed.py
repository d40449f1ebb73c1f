"""Row-level change feed and the debounced refetch that reacts to it.

Changes are collected from SQLAlchemy session events: ``after_flush``
records the touched rows, ``after_commit`` publishes them and
``after_rollback`` drops them, so subscribers only ever hear about
committed data.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

WATCHED_TABLES = ("orders", "order_items", "timeline")
PENDING_KEY = "orderflow_pending_changes"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    type: str  # INSERT, UPDATE or DELETE
    record_id: Optional[int]
    order_id: Optional[int]

    def to_dict(self) -> dict:
        return {"table": self.table, "type": self.type, "record_id": self.record_id, "order_id": self.order_id}


def _to_event(obj, change_type: str) -> Optional[ChangeEvent]:
    table = getattr(obj, "__tablename__", None)
    if table not in WATCHED_TABLES:
        return None
    order_id = obj.id if table == "orders" else getattr(obj, "order_id", None)
    return ChangeEvent(table=table, type=change_type, record_id=obj.id, order_id=order_id)


class ChangeFeed:
    """Fans committed row changes out to subscribers.

    Subscribers are called from whichever thread committed the session and
    must hand the event over to their own loop.
    """

    def __init__(self):
        self._subscribers: List[Callable[[ChangeEvent], None]] = []

    def install(self, session_factory) -> None:
        event.listen(session_factory, "after_flush", self._collect)
        event.listen(session_factory, "after_commit", self._publish_pending)
        event.listen(session_factory, "after_rollback", self._discard)

    def subscribe(self, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def publish(self, change: ChangeEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception:
                logger.exception("Change feed subscriber failed")

    def _collect(self, session: Session, flush_context) -> None:
        pending = session.info.setdefault(PENDING_KEY, [])
        for change_type, objects in (("INSERT", session.new), ("UPDATE", session.dirty), ("DELETE", session.deleted)):
            for obj in objects:
                if change_type == "UPDATE" and not session.is_modified(obj):
                    continue
                change = _to_event(obj, change_type)
                if change is not None:
                    pending.append(change)

    def _publish_pending(self, session: Session) -> None:
        for change in session.info.pop(PENDING_KEY, []):
            self.publish(change)

    def _discard(self, session: Session) -> None:
        session.info.pop(PENDING_KEY, None)


class DebouncedRefetcher:
    """Coalesces bursts of change events into one callback per quiet window.

    Events enter an asyncio queue; the consumer waits until no new event has
    arrived for ``window`` seconds and then hands the whole batch over.
    """

    def __init__(self, callback: Callable[[List[ChangeEvent]], Awaitable[None]], window: float = 0.5):
        self.callback = callback
        self.window = window
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._task = self._loop.create_task(self._consume())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def notify(self, change: ChangeEvent) -> None:
        """Thread-safe entry point for the change feed."""
        loop = self._loop
        if loop is None or loop.is_closed() or not self.running:
            return
        loop.call_soon_threadsafe(self._queue.put_nowait, change)

    async def _consume(self) -> None:
        while True:
            batch = [await self._queue.get()]
            while True:
                try:
                    batch.append(await asyncio.wait_for(self._queue.get(), timeout=self.window))
                except asyncio.TimeoutError:
                    break
            try:
                await self.callback(batch)
            except Exception:
                logger.exception("Debounced refetch failed", extra={'extra_fields': {'events': len(batch)}})
