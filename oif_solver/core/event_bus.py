"""
Event Bus: distribution of order lifecycle events to observers.

The registry emits Open/Filled/Settle/Refund/Settled/Refunded/
NonceInvalidation events here instead of calling UI or indexer code
directly. The solver side publishes intent outcomes on the same bus.

Features:
- Sync publishing for code that cannot await (the protocol model)
- Async handlers processed from a queue by a background task
- Error isolation (one handler failure doesn't stop others)
- Bounded history of published events for inspection
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Coroutine, Dict, List, Optional, Union

from oif_solver.core.json_utils import dumps

log = logging.getLogger("oifsolver")


class EventType(Enum):
    # Registry events
    ORDER_OPENED = auto()         # Open(orderId, resolvedOrder)
    ORDER_FILLED = auto()         # Filled(orderId, originData, fillerData)
    ORDERS_SETTLING = auto()      # Settle(orderIds, fillerData) dispatched
    ORDERS_REFUNDING = auto()     # Refund(orderIds) dispatched
    ORDER_SETTLED = auto()        # Settled(orderId, receiver) on origin
    ORDER_REFUNDED = auto()       # Refunded(orderId, receiver) on origin
    NONCE_INVALIDATED = auto()    # NonceInvalidation(owner, nonce)

    # Solver events
    INTENT_REJECTED = auto()      # Allow/block list or rule failure
    INTENT_FILLED = auto()        # Fill transaction confirmed
    INTENT_SETTLED = auto()       # Settle transaction confirmed
    INTENT_FAILED = auto()        # Handler error


@dataclass
class Event:
    type: EventType
    data: Dict[str, Any]
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    source: Optional[str] = None

    def __str__(self) -> str:
        return f"Event({self.type.name}, ts={self.timestamp_ms}, source={self.source})"


Handler = Union[
    Callable[[Event], Coroutine[Any, Any, None]],
    Callable[[Event], None],
]


@dataclass
class Subscription:
    handler: Handler
    priority: int = 0  # Higher = called first
    name: Optional[str] = None


class EventBus:
    """
    Usage:
        bus = EventBus()
        bus.subscribe(EventType.ORDER_OPENED, on_open)

        # From sync code (registry)
        bus.emit_sync(EventType.ORDER_OPENED, source="domain:1", order_id="0x..")

        # Deliver to handlers
        asyncio.create_task(bus.start())   # or: await bus.drain()

    Thread-safety: publishing is safe from the event loop thread only.
    """

    DEFAULT_HISTORY_SIZE = 1000

    def __init__(
        self,
        history_size: int = DEFAULT_HISTORY_SIZE,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._log = log_event or self._default_log
        self._subscribers: Dict[EventType, List[Subscription]] = {}
        self._queue: asyncio.Queue[Event] = asyncio.Queue()
        self._running = False
        self._history_size = history_size
        self._history: List[Event] = []
        self._stats = {
            "events_published": 0,
            "events_processed": 0,
            "handler_errors": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(dumps({"event": event, **kwargs}))

    # -------------------------------------------------------------------------
    # Subscription Management
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        event_type: EventType,
        handler: Handler,
        priority: int = 0,
        name: Optional[str] = None,
    ) -> Subscription:
        sub = Subscription(handler=handler, priority=priority, name=name)
        subs = self._subscribers.setdefault(event_type, [])
        subs.append(sub)
        subs.sort(key=lambda s: s.priority, reverse=True)
        self._log(
            "event_bus_subscribe",
            event_type=event_type.name,
            handler_name=name or getattr(handler, "__name__", "handler"),
            priority=priority,
        )
        return sub

    def unsubscribe(self, event_type: EventType, subscription: Subscription) -> bool:
        subs = self._subscribers.get(event_type, [])
        if subscription in subs:
            subs.remove(subscription)
            return True
        return False

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def publish_sync(self, event: Event) -> None:
        """Record and queue an event without awaiting (for sync callers)."""
        if self._history_size > 0:
            self._history.append(event)
            if len(self._history) > self._history_size:
                self._history.pop(0)
        self._queue.put_nowait(event)
        self._stats["events_published"] += 1

    async def publish(self, event: Event) -> None:
        self.publish_sync(event)

    def emit_sync(self, event_type: EventType, source: Optional[str] = None, **data: Any) -> Event:
        event = Event(type=event_type, data=data, source=source)
        self.publish_sync(event)
        return event

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Process queued events until stop() is called. Run as a task."""
        self._running = True
        self._log("event_bus_started")
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            await self._process_event(event)
        self._log("event_bus_stopped")

    async def _process_event(self, event: Event) -> None:
        for sub in list(self._subscribers.get(event.type, [])):
            try:
                if asyncio.iscoroutinefunction(sub.handler):
                    await sub.handler(event)
                else:
                    sub.handler(event)
            except Exception as e:
                self._stats["handler_errors"] += 1
                self._log(
                    "event_bus_handler_error",
                    event_type=event.type.name,
                    handler_name=sub.name or "unknown",
                    error=str(e),
                    error_type=type(e).__name__,
                )
        self._stats["events_processed"] += 1

    def stop(self) -> None:
        self._running = False

    async def drain(self) -> int:
        """Deliver every queued event now. Returns the number processed."""
        count = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            await self._process_event(event)
            count += 1
        return count

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------

    def get_history(self, event_type: Optional[EventType] = None, limit: int = 100) -> List[Event]:
        events = self._history
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "queue_size": self._queue.qsize(),
            "history_size": len(self._history),
            "running": self._running,
        }
