"""Value types shared by the aggregation and broadcast pipeline.

``DeviceRecord`` is the frozen per-device counter set handed out by the
registry and ``Snapshot`` is the immutable, ordered view published to
subscribers.
"""
from .device_record import DeviceRecord, isoformat, normalize_mac, utc_now
from .snapshot import Snapshot

__all__ = [
    "DeviceRecord",
    "Snapshot",
    "isoformat",
    "normalize_mac",
    "utc_now",
]
