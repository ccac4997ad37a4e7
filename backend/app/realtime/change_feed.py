import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from ..core.errors import SubscriptionError

logger = logging.getLogger(__name__)

EVENT_TYPES = ("INSERT", "UPDATE", "DELETE")


@dataclass
class ChangeEvent:
    event_type: str
    table: str
    new_row: Optional[Dict[str, Any]] = None
    old_row: Optional[Dict[str, Any]] = None

    def to_payload(self) -> dict:
        return {
            "eventType": self.event_type,
            "table": self.table,
            "new": self.new_row,
            "old": self.old_row,
        }


Callback = Callable[[ChangeEvent], Awaitable[None]]


@dataclass(eq=False)
class Subscription:
    table: str
    callback: Callback
    event_types: frozenset
    filter: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: Optional[asyncio.Task] = None
    active: bool = True
    pending: int = 0

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if "*" not in self.event_types and event.event_type not in self.event_types:
            return False
        if not self.filter:
            return True
        row = event.new_row if event.new_row is not None else event.old_row
        if row is None:
            return False
        return all(row.get(col) == value for col, value in self.filter.items())


class ChangeFeed:
    """Row-level change notifications for subscribed tables.

    Each subscription owns a queue drained by its own task, so a subscriber
    sees events in publish order and never blocks the publisher.
    """

    def __init__(self):
        self.table_subscriptions: Dict[str, List[Subscription]] = {}
        self.closed = False

    async def subscribe(
        self,
        table: str,
        callback: Callback,
        filter: Optional[Dict[str, Any]] = None,
        event_types: Iterable[str] = ("*",),
    ) -> Subscription:
        if self.closed:
            raise SubscriptionError("change feed is closed")
        types = frozenset(t if t == "*" else t.upper() for t in event_types)
        unknown = types - set(EVENT_TYPES) - {"*"}
        if unknown:
            raise SubscriptionError(f"unknown event types: {sorted(unknown)}")
        sub = Subscription(table=table, callback=callback, event_types=types, filter=dict(filter or {}))
        sub.task = asyncio.create_task(self._pump(sub), name=f"feed:{table}:{sub.id[:8]}")
        if table not in self.table_subscriptions:
            self.table_subscriptions[table] = []
        self.table_subscriptions[table].append(sub)
        # let the delivery task start before reporting the subscription live
        await asyncio.sleep(0)
        logger.info(f"Feed subscribe table={table} sub={sub.id} filter={sub.filter} subs={len(self.table_subscriptions[table])}")
        return sub

    async def unsubscribe(self, sub: Subscription):
        if not sub.active:
            return
        sub.active = False
        subs = self.table_subscriptions.get(sub.table, [])
        if sub in subs:
            subs.remove(sub)
            if not subs:
                del self.table_subscriptions[sub.table]
        if sub.task is not None and sub.task is not asyncio.current_task():
            sub.task.cancel()
            try:
                await sub.task
            except asyncio.CancelledError:
                pass
        # release anyone joined on events that will never be delivered
        while not sub.queue.empty():
            sub.queue.get_nowait()
            sub.pending -= 1
            sub.queue.task_done()
        logger.info(f"Feed unsubscribe table={sub.table} sub={sub.id}")

    def publish(self, event: ChangeEvent) -> int:
        delivered = 0
        for sub in list(self.table_subscriptions.get(event.table, [])):
            if sub.active and sub.matches(event):
                sub.pending += 1
                sub.queue.put_nowait(event)
                delivered += 1
        logger.debug(f"Feed publish table={event.table} type={event.event_type} delivered={delivered}")
        return delivered

    async def drain(self):
        """Wait until every queued event, including ones published by handlers, is handled."""
        while True:
            pending = [
                sub
                for subs in list(self.table_subscriptions.values())
                for sub in subs
                if sub.active and sub.pending
            ]
            if not pending:
                return
            for sub in pending:
                await sub.queue.join()

    async def close(self):
        self.closed = True
        for subs in list(self.table_subscriptions.values()):
            for sub in list(subs):
                await self.unsubscribe(sub)
        logger.info("Feed closed")

    async def _pump(self, sub: Subscription):
        while True:
            event = await sub.queue.get()
            try:
                if sub.active:
                    await sub.callback(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Feed subscriber failed table={sub.table} sub={sub.id} type={event.event_type}")
            finally:
                sub.pending -= 1
                sub.queue.task_done()
            if not sub.active:
                return


feed = ChangeFeed()
