"""Ownership and lifecycle of one aggregation and broadcast pipeline."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Set

from bandwatch.broadcast import (
    DEFAULT_INTERVAL,
    DEFAULT_QUEUE_SIZE,
    DEFAULT_SEND_TIMEOUT,
    Broadcaster,
    BroadcastQueue,
    SnapshotProducer,
    Subscriber,
    SubscriberRegistry,
)
from bandwatch.events import EventLog, record_event
from bandwatch.ingest import FrameDescriptor, FrameIngestor, IngestState
from bandwatch.models import DeviceRecord, Snapshot
from bandwatch.registry import DeviceRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MonitorConfig:
    """Tunables for :class:`BandwidthMonitor`."""

    interval: float = DEFAULT_INTERVAL
    queue_size: int = DEFAULT_QUEUE_SIZE
    send_timeout: float = DEFAULT_SEND_TIMEOUT
    local_ip: str = ""

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ValueError("interval must be positive")
        if self.queue_size <= 0:
            raise ValueError("queue_size must be positive")
        if self.send_timeout <= 0:
            raise ValueError("send_timeout must be positive")


class BandwidthMonitor:
    """Wire a registry, ingestor, producer, queue and broadcaster together.

    Each monitor owns its own :class:`DeviceRegistry`; several monitors can run
    side by side in one process.
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        *,
        registry: Optional[DeviceRegistry] = None,
        events: Optional[EventLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config or MonitorConfig()
        self.events = events
        self.registry = registry or DeviceRegistry(clock=clock)
        self.queue = BroadcastQueue(self.config.queue_size)
        self.subscribers = SubscriberRegistry()
        self.ingestor = FrameIngestor(self.registry)
        self.producer = SnapshotProducer(
            self.registry,
            self.queue,
            interval=self.config.interval,
            events=events,
        )
        self.broadcaster = Broadcaster(
            self.queue,
            self.subscribers,
            send_timeout=self.config.send_timeout,
            events=events,
        )
        self._source: Optional[Iterable[FrameDescriptor]] = None
        self._tasks: List[asyncio.Task] = []
        self._ingest_task: Optional[asyncio.Task] = None
        self._event_tasks: Set[asyncio.Task] = set()
        self._ingestion_done = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def ingestion_state(self) -> IngestState:
        return self.ingestor.state

    async def start(self, source: Optional[Iterable[FrameDescriptor]] = None) -> None:
        """Start producing and broadcasting; ingest ``source`` in a worker thread if given."""
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self.producer.run(), name="bandwatch-producer"),
            asyncio.create_task(self.broadcaster.run(), name="bandwatch-broadcaster"),
        ]
        if source is not None:
            self._source = source
            self._ingest_task = asyncio.create_task(
                asyncio.to_thread(self.ingestor.run, source),
                name="bandwatch-ingest",
            )
            self._ingest_task.add_done_callback(self._on_ingestion_done)
        logger.info("Monitor started (interval=%.1fs, queue=%d)", self.config.interval, self.config.queue_size)
        await record_event(self.events, "monitor_start", status="ok", extra={"interval": self.config.interval})

    async def stop(self) -> None:
        """Stop the producer, close the queue and every subscriber, stop ingestion."""
        if not self._running:
            return
        self._running = False
        self.producer.request_stop()
        self.queue.close()
        self.ingestor.request_stop()
        close = getattr(self._source, "close", None)
        if callable(close):
            with contextlib.suppress(Exception):
                close()

        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Monitor task ended with error: %s", result)
        self._tasks = []

        for subscriber in self.subscribers.members():
            await self.broadcaster.drop(subscriber, reason="shutdown")

        if self._ingest_task is not None and not self._ingest_task.done():
            # Ingestion stops at the next frame boundary; a capture blocked on
            # the wire is not waited for beyond the send timeout.
            await asyncio.wait({self._ingest_task}, timeout=self.config.send_timeout)
        if self._event_tasks:
            await asyncio.gather(*self._event_tasks, return_exceptions=True)
        logger.info("Monitor stopped (ingestion %s)", self.ingestor.state.value)
        await record_event(self.events, "monitor_stop", status="ok", message=self.ingestor.state.value)

    async def wait_ingestion(self) -> IngestState:
        """Wait until the capture source ends and return how it ended."""
        await self._ingestion_done.wait()
        return self.ingestor.state

    def get_snapshot(self) -> Snapshot:
        return self.registry.snapshot()

    def get_device(self, mac: str) -> Optional[DeviceRecord]:
        return self.registry.lookup(mac)

    async def on_subscriber_connected(self, subscriber: Subscriber) -> bool:
        """Register ``subscriber`` and send it the current state right away.

        Returns ``False`` when the initial delivery failed and the subscriber
        was dropped.
        """
        self.subscribers.add(subscriber)
        logger.info("Subscriber %s connected. Total subscribers: %d", subscriber, len(self.subscribers))
        await record_event(self.events, "subscriber_connected", status="ok", message=str(subscriber))
        return await self.broadcaster.send(subscriber, self.registry.snapshot().to_dict())

    async def on_subscriber_disconnected(self, subscriber: Subscriber) -> None:
        if self.subscribers.remove(subscriber):
            logger.info("Subscriber %s disconnected. Total subscribers: %d", subscriber, len(self.subscribers))

    def _on_ingestion_done(self, task: "asyncio.Task[Any]") -> None:
        self._ingestion_done.set()
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Ingestion worker crashed: %s", exc)
            return
        if self.ingestor.state is IngestState.FAILED:
            message = str(self.ingestor.error) if self.ingestor.error else "capture failed"
            task = asyncio.create_task(record_event(self.events, "capture_error", status="error", message=message))
            self._event_tasks.add(task)
            task.add_done_callback(self._event_tasks.discard)


__all__ = ["BandwidthMonitor", "MonitorConfig"]
