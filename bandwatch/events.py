"""Append-only CSV log of monitor lifecycle events.

Each row is ``timestamp,event,status,value,message,extra`` where ``extra`` is
a compact JSON object holding the log's static fields (the capture interface
when started from the CLI) merged with any per-event fields.
"""
from __future__ import annotations

import asyncio
import csv
import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from bandwatch.models import isoformat, utc_now

logger = logging.getLogger(__name__)

COLUMNS = ("timestamp", "event", "status", "value", "message", "extra")


class EventLog:
    """Records subscriber churn, dropped snapshots and capture errors.

    Device counters are never written here. Writes are serialized by a lock
    and each row is flushed on its own, so the file can be tailed live.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        static_extra: Optional[Mapping[str, Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.path = Path(path)
        self.static_extra: Dict[str, Any] = dict(static_extra or {})
        self._clock = clock or utc_now
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists() or self.path.stat().st_size == 0:
            self._append(COLUMNS)

    def log(
        self,
        event: str,
        *,
        status: str = "",
        value: Optional[float] = None,
        message: str = "",
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        fields = {**self.static_extra, **(extra or {})}
        encoded = json.dumps(fields, separators=(",", ":"), sort_keys=True, default=str) if fields else ""
        self._append((
            isoformat(self._clock()),
            event,
            status,
            "" if value is None else value,
            message,
            encoded,
        ))

    async def log_async(self, event: str, **kwargs: Any) -> None:
        # File I/O stays off the event loop.
        await asyncio.to_thread(self.log, event, **kwargs)

    def _append(self, row: Iterable[Any]) -> None:
        with self._lock, self.path.open("a", newline="", encoding="utf-8") as handle:
            csv.writer(handle).writerow(row)


async def record_event(events: Optional[EventLog], event: str, **kwargs: Any) -> None:
    """Log ``event`` when an event log is configured; I/O errors are only logged."""
    if events is None:
        return
    try:
        await events.log_async(event, **kwargs)
    except OSError as exc:
        logger.warning("Could not write %s to %s: %s", event, events.path, exc)


__all__ = ["COLUMNS", "EventLog", "record_event"]
