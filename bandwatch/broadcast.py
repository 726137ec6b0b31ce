"""Periodic snapshot production and fan-out to live subscribers."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol, Set, Tuple

from bandwatch.events import EventLog, record_event
from bandwatch.models import Snapshot
from bandwatch.registry import DeviceRegistry

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 2.0
DEFAULT_QUEUE_SIZE = 256
DEFAULT_SEND_TIMEOUT = 5.0


class Subscriber(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self) -> None: ...


class BroadcastQueue:
    """Bounded FIFO between the snapshot producer and the broadcaster.

    :meth:`try_push` never blocks and never evicts: when the queue is full the
    new snapshot is rejected. Both ends must run on the same event loop.
    """

    def __init__(self, capacity: int = DEFAULT_QUEUE_SIZE) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._items: Deque[Snapshot] = deque()
        self._ready = asyncio.Event()
        self._closed = False

    def try_push(self, snapshot: Snapshot) -> bool:
        if self._closed or len(self._items) >= self.capacity:
            return False
        self._items.append(snapshot)
        self._ready.set()
        return True

    async def pop(self) -> Optional[Snapshot]:
        """Wait for the oldest snapshot; ``None`` once the queue is closed."""
        while not self._closed:
            if self._items:
                return self._items.popleft()
            self._ready.clear()
            await self._ready.wait()
        return None

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    @property
    def closed(self) -> bool:
        return self._closed

    def full(self) -> bool:
        return len(self._items) >= self.capacity

    def pending(self) -> Tuple[Snapshot, ...]:
        return tuple(self._items)

    def __len__(self) -> int:
        return len(self._items)


class SubscriberRegistry:
    """Set of live subscribers.

    Fan-out iterates over :meth:`members`, a copy taken under the lock, so a
    slow delivery never holds up :meth:`add` or :meth:`remove`.
    """

    def __init__(self) -> None:
        self._members: Set[Subscriber] = set()
        self._lock = threading.Lock()

    def add(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._members.add(subscriber)

    def remove(self, subscriber: Subscriber) -> bool:
        with self._lock:
            if subscriber not in self._members:
                return False
            self._members.discard(subscriber)
            return True

    def members(self) -> List[Subscriber]:
        with self._lock:
            return list(self._members)

    def __contains__(self, subscriber: object) -> bool:
        with self._lock:
            return subscriber in self._members

    def __len__(self) -> int:
        with self._lock:
            return len(self._members)


class SnapshotProducer:
    """Push a registry snapshot onto the broadcast queue every ``interval`` seconds."""

    def __init__(
        self,
        registry: DeviceRegistry,
        queue: BroadcastQueue,
        *,
        interval: float = DEFAULT_INTERVAL,
        events: Optional[EventLog] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.registry = registry
        self.queue = queue
        self.interval = interval
        self.events = events
        self.produced = 0
        self.dropped = 0
        self._stop_event = asyncio.Event()

    async def run(self) -> None:
        stop_event = self._stop_event
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            if not self.tick():
                await record_event(self.events, "snapshot_dropped", status="dropped", value=float(self.dropped))

    def tick(self) -> bool:
        """Produce one snapshot; ``False`` if the queue rejected it."""
        snapshot = self.registry.snapshot()
        self.produced += 1
        if self.queue.try_push(snapshot):
            return True
        self.dropped += 1
        logger.debug("Broadcast queue full, dropped snapshot (%d dropped so far)", self.dropped)
        return False

    def request_stop(self) -> None:
        self._stop_event.set()


class Broadcaster:
    """Drain the broadcast queue and deliver each snapshot to every subscriber.

    Deliveries run concurrently, each bounded by ``send_timeout``. A subscriber
    whose delivery fails or times out is closed and removed; the others still
    receive the snapshot.
    """

    def __init__(
        self,
        queue: BroadcastQueue,
        subscribers: SubscriberRegistry,
        *,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        events: Optional[EventLog] = None,
    ) -> None:
        if send_timeout <= 0:
            raise ValueError("send_timeout must be positive")
        self.queue = queue
        self.subscribers = subscribers
        self.send_timeout = send_timeout
        self.events = events
        self.broadcasts = 0

    async def run(self) -> None:
        while True:
            snapshot = await self.queue.pop()
            if snapshot is None:
                break
            await self.deliver(snapshot)
        logger.debug("Broadcaster stopped after %d broadcasts", self.broadcasts)

    async def deliver(self, snapshot: Snapshot) -> int:
        """Send ``snapshot`` to the current subscribers; returns how many got it."""
        self.broadcasts += 1
        members = self.subscribers.members()
        if not members:
            return 0
        payload = snapshot.to_dict()
        results = await asyncio.gather(*(self.send(member, payload) for member in members))
        return sum(1 for ok in results if ok)

    async def send(self, subscriber: Subscriber, payload: Dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(subscriber.send_json(payload), timeout=self.send_timeout)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.warning("Delivery to %s timed out after %.1fs", subscriber, self.send_timeout)
            await self.drop(subscriber, reason="timeout")
            return False
        except Exception as exc:
            logger.warning("Error broadcasting to %s: %s", subscriber, exc)
            await self.drop(subscriber, reason=str(exc) or type(exc).__name__)
            return False
        return True

    async def drop(self, subscriber: Subscriber, *, reason: str = "") -> None:
        """Close ``subscriber`` and forget it. Safe to call more than once."""
        removed = self.subscribers.remove(subscriber)
        with contextlib.suppress(Exception):
            await asyncio.wait_for(subscriber.close(), timeout=self.send_timeout)
        if removed:
            logger.info("Removed subscriber %s (%s). Total subscribers: %d", subscriber, reason, len(self.subscribers))
            status = "ok" if reason == "shutdown" else "error"
            await record_event(self.events, "subscriber_removed", status=status, message=reason)


__all__ = [
    "BroadcastQueue",
    "Broadcaster",
    "DEFAULT_INTERVAL",
    "DEFAULT_QUEUE_SIZE",
    "DEFAULT_SEND_TIMEOUT",
    "SnapshotProducer",
    "Subscriber",
    "SubscriberRegistry",
]
