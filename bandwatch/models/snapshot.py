from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from .device_record import DeviceRecord, isoformat, normalize_mac


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Point-in-time copy of every device plus network-wide aggregates.

    Devices are ordered by descending total bytes. Both the snapshot and its
    records are frozen, so one instance can be shared by every subscriber.
    """
    devices: Tuple[DeviceRecord, ...]
    total_sent: int
    total_recv: int
    total_packets: int
    active_devices: int
    monitor_duration: float
    timestamp: datetime

    @classmethod
    def from_records(
        cls,
        records: Iterable[DeviceRecord],
        *,
        started_at: datetime,
        now: datetime,
    ) -> "Snapshot":
        """Aggregate and order ``records`` into a snapshot taken at ``now``."""
        devices = list(records)
        total_sent = total_recv = total_packets = 0
        for device in devices:
            total_sent += device.bytes_sent
            total_recv += device.bytes_recv
            total_packets += device.total_packets
        devices.sort(key=lambda device: device.total_bytes, reverse=True)
        return cls(
            devices=tuple(devices),
            total_sent=total_sent,
            total_recv=total_recv,
            total_packets=total_packets,
            active_devices=len(devices),
            monitor_duration=max(0.0, (now - started_at).total_seconds()),
            timestamp=now,
        )

    def device(self, mac: str) -> Optional[DeviceRecord]:
        mac = normalize_mac(mac)
        for record in self.devices:
            if record.mac == mac:
                return record
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "devices": [device.to_dict() for device in self.devices],
            "totalSent": self.total_sent,
            "totalRecv": self.total_recv,
            "totalPackets": self.total_packets,
            "activeDevices": self.active_devices,
            "monitorDuration": self.monitor_duration,
            "timestamp": isoformat(self.timestamp),
        }
