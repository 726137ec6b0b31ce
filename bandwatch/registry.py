"""Thread-safe per-device traffic counters."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from bandwatch.models import DeviceRecord, Snapshot, normalize_mac, utc_now

logger = logging.getLogger(__name__)

BROADCAST_MAC = "ff:ff:ff:ff:ff:ff"


@dataclass(slots=True)
class _Counters:
    """Mutable counters owned by the registry; only ever read through :meth:`freeze`."""

    mac: str
    ip: str = ""
    bytes_sent: int = 0
    bytes_recv: int = 0
    packets_sent: int = 0
    packets_recv: int = 0
    last_seen: Optional[datetime] = None

    def freeze(self) -> DeviceRecord:
        return DeviceRecord(
            mac=self.mac,
            ip=self.ip,
            bytes_sent=self.bytes_sent,
            bytes_recv=self.bytes_recv,
            packets_sent=self.packets_sent,
            packets_recv=self.packets_recv,
            last_seen=self.last_seen,
        )


class DeviceRegistry:
    """Map of hardware address to traffic counters.

    Every mutation goes through :meth:`attribute`. Reads return frozen
    :class:`DeviceRecord` values, so callers never observe or change a record
    while it is being updated. Records are kept for the lifetime of the
    registry.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] | None = None,
        started_at: datetime | None = None,
    ) -> None:
        self._clock = clock or utc_now
        self.started_at = started_at or self._clock()
        self._devices: Dict[str, _Counters] = {}
        self._lock = threading.Lock()

    def attribute(
        self,
        src_mac: Optional[str],
        src_ip: Optional[str],
        dst_mac: Optional[str],
        dst_ip: Optional[str],
        size: int,
    ) -> None:
        """Credit one frame of ``size`` bytes to its source and destination."""
        if size < 0:
            raise ValueError(f"frame size must be non-negative, got {size}")
        src = normalize_mac(src_mac)
        dst = normalize_mac(dst_mac)
        now = self._clock()
        with self._lock:
            if src and src != BROADCAST_MAC:
                record = self._record_for(src)
                record.bytes_sent += size
                record.packets_sent += 1
                self._touch(record, src_ip, now)
            if dst and dst != BROADCAST_MAC:
                record = self._record_for(dst)
                record.bytes_recv += size
                record.packets_recv += 1
                self._touch(record, dst_ip, now)

    def snapshot(self) -> Snapshot:
        with self._lock:
            records = [record.freeze() for record in self._devices.values()]
            now = self._clock()
        return Snapshot.from_records(records, started_at=self.started_at, now=now)

    def lookup(self, mac: str) -> Optional[DeviceRecord]:
        key = normalize_mac(mac)
        with self._lock:
            record = self._devices.get(key)
            return record.freeze() if record is not None else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)

    def __contains__(self, mac: object) -> bool:
        if not isinstance(mac, str):
            return False
        key = normalize_mac(mac)
        with self._lock:
            return key in self._devices

    def _record_for(self, mac: str) -> _Counters:
        record = self._devices.get(mac)
        if record is None:
            record = _Counters(mac=mac)
            self._devices[mac] = record
            logger.debug("New device %s (%d tracked)", mac, len(self._devices))
        return record

    @staticmethod
    def _touch(record: _Counters, ip: Optional[str], now: datetime) -> None:
        record.last_seen = now
        if ip and not record.ip:
            record.ip = ip


__all__ = ["BROADCAST_MAC", "DeviceRegistry", "normalize_mac"]
