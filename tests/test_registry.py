"""Tests for per-device attribution and snapshots."""
from __future__ import annotations

import dataclasses
import threading
import unittest
from datetime import datetime, timedelta, timezone
from typing import List

from bandwatch.registry import BROADCAST_MAC, DeviceRegistry

MAC_A = "aa:aa:aa:aa:aa:01"
MAC_B = "bb:bb:bb:bb:bb:02"
MAC_C = "cc:cc:cc:cc:cc:03"


class _StepClock:
    """Returns a strictly increasing time on every call."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class DeviceRegistryTest(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _StepClock()
        self.registry = DeviceRegistry(clock=self.clock)

    def test_bytes_and_packets_sum_per_direction(self) -> None:
        frames = [(MAC_A, MAC_B, 100), (MAC_A, MAC_C, 50), (MAC_B, MAC_A, 10), (MAC_C, MAC_B, 7)]
        for src, dst, size in frames:
            self.registry.attribute(src, "", dst, "", size)

        for mac in (MAC_A, MAC_B, MAC_C):
            record = self.registry.lookup(mac)
            self.assertIsNotNone(record)
            self.assertEqual(record.bytes_sent, sum(size for src, _, size in frames if src == mac))
            self.assertEqual(record.bytes_recv, sum(size for _, dst, size in frames if dst == mac))
            self.assertEqual(record.packets_sent, sum(1 for src, _, _ in frames if src == mac))
            self.assertEqual(record.packets_recv, sum(1 for _, dst, _ in frames if dst == mac))

    def test_broadcast_address_is_never_recorded(self) -> None:
        self.registry.attribute(MAC_A, "10.0.0.1", BROADCAST_MAC, "", 60)
        self.registry.attribute(BROADCAST_MAC, "", MAC_B, "", 60)
        self.registry.attribute(MAC_A, "", "FF:FF:FF:FF:FF:FF", "", 60)

        self.assertNotIn(BROADCAST_MAC, self.registry)
        self.assertIsNone(self.registry.lookup(BROADCAST_MAC))
        self.assertEqual(len(self.registry), 2)
        self.assertEqual(self.registry.lookup(MAC_A).packets_sent, 2)

    def test_empty_identity_is_ignored(self) -> None:
        self.registry.attribute("", "10.0.0.9", MAC_B, "10.0.0.2", 42)
        self.registry.attribute(MAC_A, "10.0.0.1", None, None, 42)

        self.assertEqual(len(self.registry), 2)
        self.assertEqual(self.registry.lookup(MAC_B).bytes_recv, 42)
        self.assertEqual(self.registry.lookup(MAC_A).bytes_sent, 42)

    def test_first_non_empty_address_wins(self) -> None:
        self.registry.attribute(MAC_A, "", MAC_B, "", 1)
        self.assertEqual(self.registry.lookup(MAC_A).ip, "")

        self.registry.attribute(MAC_A, "192.168.1.10", MAC_B, "192.168.1.20", 1)
        self.registry.attribute(MAC_A, "192.168.1.99", MAC_B, "", 1)
        self.registry.attribute(MAC_B, "10.9.9.9", MAC_A, "10.8.8.8", 1)

        self.assertEqual(self.registry.lookup(MAC_A).ip, "192.168.1.10")
        self.assertEqual(self.registry.lookup(MAC_B).ip, "192.168.1.20")

    def test_last_seen_tracks_latest_attribution(self) -> None:
        self.registry.attribute(MAC_A, "", MAC_B, "", 1)
        first = self.registry.lookup(MAC_A).last_seen
        self.registry.attribute(MAC_B, "", MAC_A, "", 1)
        second = self.registry.lookup(MAC_A).last_seen

        self.assertIsNotNone(first)
        self.assertGreater(second, first)

    def test_negative_size_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.registry.attribute(MAC_A, "", MAC_B, "", -1)
        self.assertEqual(len(self.registry), 0)

    def test_lookup_is_case_insensitive_and_reports_missing(self) -> None:
        self.registry.attribute(MAC_A.upper(), "", "", "", 5)

        self.assertEqual(self.registry.lookup(MAC_A).bytes_sent, 5)
        self.assertEqual(self.registry.lookup(MAC_A.upper()).mac, MAC_A)
        self.assertIsNone(self.registry.lookup("00:00:00:00:00:00"))

    def test_snapshot_totals_match_device_sums(self) -> None:
        self.registry.attribute(MAC_A, "", MAC_B, "", 300)
        self.registry.attribute(MAC_B, "", MAC_C, "", 20)
        self.registry.attribute(MAC_C, "", BROADCAST_MAC, "", 5)

        snapshot = self.registry.snapshot()

        self.assertEqual(snapshot.total_sent, sum(d.bytes_sent for d in snapshot.devices))
        self.assertEqual(snapshot.total_recv, sum(d.bytes_recv for d in snapshot.devices))
        self.assertEqual(
            snapshot.total_packets,
            sum(d.packets_sent + d.packets_recv for d in snapshot.devices),
        )
        self.assertEqual(snapshot.active_devices, 3)

    def test_snapshot_orders_by_total_bytes_descending(self) -> None:
        self.registry.attribute(MAC_C, "", "", "", 10)
        self.registry.attribute(MAC_A, "", "", "", 1000)
        self.registry.attribute("", "", MAC_B, "", 500)
        self.registry.attribute(MAC_C, "", "", "", 1)

        totals = [d.total_bytes for d in self.registry.snapshot().devices]

        self.assertEqual(totals, sorted(totals, reverse=True))
        self.assertEqual(self.registry.snapshot().devices[0].mac, MAC_A)

    def test_snapshot_is_isolated_from_later_updates(self) -> None:
        self.registry.attribute(MAC_A, "", MAC_B, "", 64)
        snapshot = self.registry.snapshot()
        wire_before = snapshot.to_dict()

        self.registry.attribute(MAC_A, "10.0.0.1", MAC_B, "", 1500)

        self.assertEqual(snapshot.device(MAC_A).bytes_sent, 64)
        self.assertEqual(snapshot.to_dict(), wire_before)
        self.assertEqual(self.registry.lookup(MAC_A).bytes_sent, 1564)

    def test_published_records_are_read_only(self) -> None:
        self.registry.attribute(MAC_A, "", MAC_B, "", 64)
        snapshot = self.registry.snapshot()

        with self.assertRaises(dataclasses.FrozenInstanceError):
            snapshot.devices[0].bytes_sent = 999999
        with self.assertRaises(dataclasses.FrozenInstanceError):
            self.registry.lookup(MAC_A).ip = "10.9.9.9"

        self.assertEqual(snapshot.total_sent, sum(device.bytes_sent for device in snapshot.devices))
        self.assertEqual(self.registry.lookup(MAC_A).bytes_sent, 64)

    def test_snapshot_device_lookup_matches_registry_lookup(self) -> None:
        self.registry.attribute(MAC_A, "", MAC_B, "", 64)
        snapshot = self.registry.snapshot()

        for mac in (MAC_A.upper(), f"  {MAC_A} ", f"{MAC_A}\n"):
            with self.subTest(mac=mac):
                self.assertEqual(snapshot.device(mac), self.registry.lookup(mac))
                self.assertIsNotNone(snapshot.device(mac))

    def test_snapshot_reports_monitor_duration(self) -> None:
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        registry = DeviceRegistry(clock=lambda: start + timedelta(seconds=12.5), started_at=start)

        snapshot = registry.snapshot()

        self.assertAlmostEqual(snapshot.monitor_duration, 12.5)
        self.assertEqual(snapshot.active_devices, 0)
        self.assertEqual(snapshot.devices, ())

    def test_wire_form_uses_dashboard_field_names(self) -> None:
        self.registry.attribute(MAC_A, "10.0.0.1", MAC_B, "10.0.0.2", 64)

        payload = self.registry.snapshot().to_dict()

        self.assertEqual(
            set(payload),
            {"devices", "totalSent", "totalRecv", "totalPackets", "activeDevices", "monitorDuration", "timestamp"},
        )
        device = next(d for d in payload["devices"] if d["mac"] == MAC_A)
        self.assertEqual(
            set(device),
            {"mac", "ip", "bytesSent", "bytesRecv", "packetsSent", "packetsRecv", "lastSeen", "hostname"},
        )
        self.assertEqual(device["ip"], "10.0.0.1")
        self.assertEqual(device["hostname"], "")
        self.assertTrue(device["lastSeen"].endswith("+00:00"))
        self.assertIsInstance(payload["monitorDuration"], float)

    def test_concurrent_attribution_is_not_lost(self) -> None:
        registry = DeviceRegistry()
        workers = 8
        per_worker = 500

        def produce() -> None:
            for _ in range(per_worker):
                registry.attribute(MAC_A, "", MAC_B, "", 3)

        threads: List[threading.Thread] = [threading.Thread(target=produce) for _ in range(workers)]
        reader_results: List[int] = []

        def read() -> None:
            for _ in range(50):
                snapshot = registry.snapshot()
                reader_results.append(snapshot.total_sent)

        reader = threading.Thread(target=read)
        for thread in threads:
            thread.start()
        reader.start()
        for thread in threads:
            thread.join()
        reader.join()

        record = registry.lookup(MAC_A)
        self.assertEqual(record.packets_sent, workers * per_worker)
        self.assertEqual(record.bytes_sent, workers * per_worker * 3)
        self.assertEqual(registry.lookup(MAC_B).bytes_recv, workers * per_worker * 3)
        self.assertEqual(reader_results, sorted(reader_results))
        self.assertTrue(all(total % 3 == 0 for total in reader_results))


if __name__ == "__main__":
    unittest.main()
