from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def normalize_mac(mac: Optional[str]) -> str:
    if not mac:
        return ""
    return mac.strip().lower()


@dataclass(frozen=True, slots=True)
class DeviceRecord:
    """Cumulative traffic counters for one hardware address, as published.

    ``ip`` holds the first non-empty network address seen for the device and
    is never replaced afterwards. ``hostname`` is part of the wire form but is
    not filled in by the registry.
    """
    mac: str
    ip: str = ""
    bytes_sent: int = 0
    bytes_recv: int = 0
    packets_sent: int = 0
    packets_recv: int = 0
    last_seen: Optional[datetime] = None
    hostname: str = ""

    @property
    def total_bytes(self) -> int:
        return self.bytes_sent + self.bytes_recv

    @property
    def total_packets(self) -> int:
        return self.packets_sent + self.packets_recv

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mac": self.mac,
            "ip": self.ip,
            "bytesSent": self.bytes_sent,
            "bytesRecv": self.bytes_recv,
            "packetsSent": self.packets_sent,
            "packetsRecv": self.packets_recv,
            "lastSeen": isoformat(self.last_seen),
            "hostname": self.hostname,
        }
