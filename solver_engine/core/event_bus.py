"""
Event Bus: lifecycle fact distribution between solver components.

Handlers never call each other across a handler boundary. They publish typed
lifecycle facts here and subscribe to the facts they react to. The bus is a
transport, not a store: the only history it keeps is a bounded ring buffer
of processed events for debugging and tests.

Delivery model:
    publish() -> FIFO queue -> start() loop or drain()
        -> global subscribers, then type subscribers, each by priority
        -> sequential subscribers are awaited in place
        -> concurrent subscribers become tasks, at most max_concurrency at once

Every subscriber therefore observes events in publish order. Concurrent
subscribers are started in that order but may finish out of order.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Coroutine, Deque, Dict, List, Optional, Set, Union

log = logging.getLogger("solver")


class EventType(Enum):
    """
    Lifecycle event types.

    Grouped by the component family that produces them.
    """
    # Discovery events
    INTENT_DISCOVERED = auto()        # New intent from any discovery source
    INTENT_REJECTED = auto()          # Intent failed validation, no order created

    # Order events
    ORDER_VALIDATED = auto()          # Profitable and strategy said Execute
    ORDER_REJECTED = auto()           # Below profitability threshold
    ORDER_SKIPPED = auto()            # Strategy Skip (operator attention)
    ORDER_DEFERRED = auto()           # Strategy Defer (re-evaluated later)
    ORDER_EXECUTING = auto()          # Prepare confirmed, fill may be generated
    ORDER_COMPLETED = auto()          # Claim confirmed, order finalized
    ORDER_FAILED = auto()             # Order moved to FAILED

    # Delivery events
    TRANSACTION_PENDING = auto()      # Transaction submitted, hash known
    TRANSACTION_CONFIRMED = auto()    # Receipt with success status
    TRANSACTION_FAILED = auto()       # Reverted, rejected or unconfirmable

    # Settlement events
    POST_FILL_READY = auto()          # Fill confirmed, post-fill stage may run
    MONITORING_START = auto()         # Start waiting for claimability
    PROOF_READY = auto()              # Fill proof obtained and attached
    PRE_CLAIM_READY = auto()          # Claimable, pre-claim stage may run
    CLAIM_READY = auto()              # Pre-claim done, claim may be submitted
    MONITOR_TIMEOUT = auto()          # Claimability never reached in budget

    # System events
    ENGINE_STARTED = auto()
    ENGINE_STOPPED = auto()
    RECOVERY_COMPLETED = auto()


@dataclass(frozen=True)
class Event:
    """
    A lifecycle fact.

    correlation_id is the order id (or intent id before an order exists),
    so one order's trail can be pulled out of the history.
    """
    type: EventType
    data: Dict[str, Any]
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    source: Optional[str] = None
    correlation_id: Optional[str] = None

    def __str__(self) -> str:
        return f"Event({self.type.name}, id={self.correlation_id}, source={self.source})"


Handler = Union[
    Callable[[Event], Coroutine[Any, Any, None]],
    Callable[[Event], None],
]


@dataclass
class Subscription:
    handler: Handler
    priority: int = 0  # Higher runs first
    filter_fn: Optional[Callable[[Event], bool]] = None
    name: Optional[str] = None
    concurrent: bool = False

    @property
    def label(self) -> str:
        return self.name or getattr(self.handler, "__name__", "handler")

    def accepts(self, event: Event) -> bool:
        return self.filter_fn is None or bool(self.filter_fn(event))


class EventBus:
    """
    Queue-backed publish/subscribe bus.

    Usage:
        bus = EventBus(max_concurrency=32)
        bus.subscribe(EventType.INTENT_DISCOVERED, intents.on_intent_discovered, concurrent=True)
        bus.subscribe_all(metrics.record, priority=100)

        await bus.emit(EventType.ORDER_FAILED, source="order_handler", order_id=oid, reason=r)

        task = asyncio.create_task(bus.start())   # production
        await bus.drain()                          # tests
    """

    DEFAULT_HISTORY_SIZE = 1000
    DEFAULT_QUEUE_SIZE = 0  # unlimited
    DEFAULT_MAX_CONCURRENCY = 32

    def __init__(
        self,
        history_size: int = DEFAULT_HISTORY_SIZE,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        """
        Args:
            history_size: Processed events kept for get_history (0 disables)
            queue_size: Max queued events before publish() drops (0 = unlimited)
            max_concurrency: Concurrent handler tasks allowed in flight
            log_event: Structured logging callback
        """
        self._log = log_event or self._default_log

        self._by_type: Dict[EventType, List[Subscription]] = {}
        self._global: List[Subscription] = []

        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max(0, queue_size))
        self._history: Deque[Event] = deque(maxlen=max(0, history_size))

        self._slots = asyncio.Semaphore(max(1, max_concurrency))
        self._inflight: Set[asyncio.Task] = set()
        self._running = False

        self._stats = {
            "events_published": 0,
            "events_processed": 0,
            "events_dropped": 0,
            "events_unhandled": 0,
            "handler_errors": 0,
            "queue_high_water": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event.endswith(("_error", "_full")) else logging.DEBUG
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        event_type: EventType,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[Event], bool]] = None,
        name: Optional[str] = None,
        concurrent: bool = False,
    ) -> Subscription:
        """
        Subscribe a handler to one event type.

        concurrent=True runs each invocation as a task bounded by the bus's
        max_concurrency, so a slow handler does not hold up the queue.
        """
        sub = Subscription(handler, priority, filter_fn, name, concurrent)
        self._add(self._by_type.setdefault(event_type, []), sub)
        self._log(
            "event_bus_subscribe",
            event_type=event_type.name,
            handler_name=sub.label,
            priority=priority,
            concurrent=concurrent,
        )
        return sub

    def subscribe_all(
        self,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[Event], bool]] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        """Global subscriber: sees every event, before the type subscribers."""
        sub = Subscription(handler, priority, filter_fn, name)
        self._add(self._global, sub)
        self._log("event_bus_subscribe_all", handler_name=sub.label, priority=priority)
        return sub

    @staticmethod
    def _add(subs: List[Subscription], sub: Subscription) -> None:
        subs.append(sub)
        # sort() is stable, so equal priorities keep subscription order
        subs.sort(key=lambda s: -s.priority)

    def unsubscribe(self, event_type: Optional[EventType], subscription: Subscription) -> bool:
        """Remove a subscription (event_type None for a global one)."""
        subs = self._global if event_type is None else self._by_type.get(event_type, [])
        if subscription not in subs:
            return False
        subs.remove(subscription)
        return True

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    async def publish(self, event: Event) -> bool:
        """Queue an event. Returns False (and counts a drop) if the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats["events_dropped"] += 1
            self._log(
                "event_bus_queue_full",
                event_type=event.type.name,
                correlation_id=event.correlation_id,
            )
            return False

        self._stats["events_published"] += 1
        self._stats["queue_high_water"] = max(self._stats["queue_high_water"], self._queue.qsize())
        return True

    def create_event(
        self,
        event_type: EventType,
        source: Optional[str] = None,
        correlation_id: Optional[str] = None,
        **data: Any,
    ) -> Event:
        if correlation_id is None:
            correlation_id = data.get("order_id")
        return Event(type=event_type, data=data, source=source, correlation_id=correlation_id)

    async def emit(
        self,
        event_type: EventType,
        source: Optional[str] = None,
        correlation_id: Optional[str] = None,
        **data: Any,
    ) -> bool:
        """Build and publish in one call; order_id doubles as the correlation id."""
        return await self.publish(
            self.create_event(event_type, source=source, correlation_id=correlation_id, **data)
        )

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Process events until stop(). Run as a background task."""
        self._running = True
        self._log("event_bus_started")
        try:
            while self._running:
                try:
                    event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                try:
                    await self._dispatch(event)
                except Exception as e:
                    self._log("event_bus_error", error=str(e), error_type=type(e).__name__)
        except asyncio.CancelledError:
            self._log("event_bus_cancelled")
        finally:
            self._running = False
            self._log("event_bus_stopped")

    def stop(self) -> None:
        self._running = False

    async def drain(self, timeout: float = 5.0) -> int:
        """
        Process everything queued and wait for concurrent handlers.

        Events that handlers publish meanwhile are processed too. Returns the
        number of events processed.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        processed = 0

        while loop.time() < deadline:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                if not self._inflight:
                    break
                await asyncio.wait(
                    set(self._inflight),
                    timeout=max(0.0, deadline - loop.time()),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                continue
            await self._dispatch(event)
            processed += 1

        return processed

    async def cancel_inflight(self) -> None:
        """Cancel running concurrent handlers (shutdown)."""
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.difference_update(tasks)

    async def _dispatch(self, event: Event) -> None:
        self._history.append(event)

        typed = self._by_type.get(event.type, [])
        if not typed:
            self._stats["events_unhandled"] += 1

        for sub in (*self._global, *typed):
            if not sub.accepts(event):
                continue
            if sub.concurrent:
                await self._spawn(sub, event)
            else:
                await self._call(sub, event)

        self._stats["events_processed"] += 1

    async def _spawn(self, sub: Subscription, event: Event) -> None:
        # Backpressure: the queue stops moving while every slot is taken
        await self._slots.acquire()
        task = asyncio.create_task(self._call(sub, event))
        self._inflight.add(task)
        # Released on completion, including a cancel before the first step
        task.add_done_callback(lambda t: self._slots.release())
        task.add_done_callback(self._inflight.discard)

    async def _call(self, sub: Subscription, event: Event) -> None:
        try:
            result = sub.handler(event)
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats["handler_errors"] += 1
            self._log(
                "event_bus_handler_error",
                event_type=event.type.name,
                correlation_id=event.correlation_id,
                handler_name=sub.label,
                error=str(e),
                error_type=type(e).__name__,
            )

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def get_history(self, event_type: Optional[EventType] = None, limit: int = 100) -> List[Event]:
        """Most recent processed events, oldest first."""
        events = [e for e in self._history if event_type is None or e.type == event_type]
        return events[-limit:]

    @property
    def is_idle(self) -> bool:
        return self._queue.empty() and not self._inflight

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "queue_size": self._queue.qsize(),
            "inflight": len(self._inflight),
            "history_size": len(self._history),
            "subscriber_count": sum(len(s) for s in self._by_type.values()),
            "global_subscriber_count": len(self._global),
            "running": self._running,
        }
