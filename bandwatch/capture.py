"""Live capture source and interface discovery built on scapy."""
from __future__ import annotations

import ipaddress
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, List, Optional, Sequence, Tuple

from scapy.all import IP, Ether, conf, sniff

from bandwatch.ingest import FrameDescriptor

logger = logging.getLogger(__name__)

LOOPBACK_NAMES = frozenset({"lo", "lo0"})
DEFAULT_BUFFER_SIZE = 10000
PRIVILEGE_HINT = "You may need root/sudo or the CAP_NET_RAW capability"

SniffFunction = Callable[..., Any]


class CaptureError(RuntimeError):
	"""Opening or reading the capture device failed."""


@dataclass(frozen=True, slots=True)
class InterfaceInfo:
	"""A capture-capable network interface."""

	name: str
	description: str = ""
	addresses: Tuple[str, ...] = field(default_factory=tuple)

	@property
	def is_loopback(self) -> bool:
		return self.name in LOOPBACK_NAMES

	def to_dict(self) -> dict:
		return {
			"name": self.name,
			"description": self.description,
			"addresses": list(self.addresses),
		}


def list_interfaces() -> List[InterfaceInfo]:
	interfaces: List[InterfaceInfo] = []
	for iface in conf.ifaces.values():
		addresses: List[str] = []
		ips = getattr(iface, "ips", None) or {}
		for family in (4, 6):
			addresses.extend(str(addr) for addr in ips.get(family, ()))
		legacy_ip = getattr(iface, "ip", None)
		if not addresses and legacy_ip:
			addresses.append(str(legacy_ip))
		interfaces.append(
			InterfaceInfo(
				name=str(iface.name),
				description=str(getattr(iface, "description", "") or ""),
				addresses=tuple(addresses),
			)
		)
	return interfaces


def select_interface(interfaces: Sequence[InterfaceInfo], name: Optional[str] = None) -> InterfaceInfo:
	"""Pick ``name`` or, by default, the first non-loopback interface with an address."""
	if not interfaces:
		raise CaptureError("No capture devices found")
	if name:
		for iface in interfaces:
			if iface.name == name:
				return iface
		# Not enumerated (e.g. a pseudo-device); let the capture library decide.
		return InterfaceInfo(name=name)
	for iface in interfaces:
		if not iface.is_loopback and iface.addresses:
			return iface
	return interfaces[0]


def local_ip(iface: InterfaceInfo) -> str:
	"""First IPv4 address of ``iface``, or an empty string."""
	for address in iface.addresses:
		try:
			parsed = ipaddress.ip_address(address)
		except ValueError:
			continue
		if parsed.version == 4:
			return str(parsed)
	return ""


def frame_from_packet(packet: Any) -> FrameDescriptor:
	link_src = link_dst = net_src = net_dst = None
	if packet.haslayer(Ether):
		eth = packet[Ether]
		link_src, link_dst = eth.src, eth.dst
	if packet.haslayer(IP):
		ip = packet[IP]
		net_src, net_dst = ip.src, ip.dst
	return FrameDescriptor(
		length=len(packet),
		link_src=link_src,
		link_dst=link_dst,
		net_src=net_src,
		net_dst=net_dst,
	)


class ScapyCaptureSource:
	"""Lazy, non-restartable stream of :class:`FrameDescriptor` from a live interface.

	``sniff`` runs in a daemon thread and hands frames over through a bounded
	buffer. Frames arriving while the buffer is full are counted in
	:attr:`overflow` and discarded. Iteration ends after :meth:`close`; a
	failure inside the capture thread is re-raised from the iterator as
	:class:`CaptureError`.
	"""

	def __init__(
		self,
		iface: str,
		*,
		bpf_filter: Optional[str] = None,
		buffer_size: int = DEFAULT_BUFFER_SIZE,
		poll_interval: float = 0.5,
		sniff_func: Optional[SniffFunction] = None,
	) -> None:
		self.iface = iface
		self.bpf_filter = bpf_filter
		self.poll_interval = poll_interval
		self.overflow = 0
		self.error: Optional[BaseException] = None
		self._sniff = sniff_func or sniff
		self._frames: "queue.Queue[FrameDescriptor]" = queue.Queue(maxsize=buffer_size)
		self._closed = threading.Event()
		self._finished = threading.Event()
		self._thread: Optional[threading.Thread] = None
		self._consumed = False

	def open(self) -> None:
		if self._thread is not None:
			return
		self._thread = threading.Thread(target=self._capture_loop, daemon=True, name=f"capture-{self.iface}")
		self._thread.start()
		logger.info("Capturing on %s", self.iface)

	def close(self) -> None:
		self._closed.set()

	@property
	def closed(self) -> bool:
		return self._closed.is_set()

	def __iter__(self) -> Iterator[FrameDescriptor]:
		if self._consumed:
			raise CaptureError("capture source cannot be restarted")
		self._consumed = True
		self.open()
		return self._drain()

	def _drain(self) -> Iterator[FrameDescriptor]:
		while True:
			try:
				frame = self._frames.get(timeout=self.poll_interval)
			except queue.Empty:
				if self._closed.is_set():
					return
				if self._finished.is_set() and self._frames.empty():
					if self.error is not None:
						raise CaptureError(f"capture on {self.iface} failed: {self.error}") from self.error
					return
				continue
			yield frame

	def _capture_loop(self) -> None:
		kwargs: dict = {
			"iface": self.iface,
			"prn": self._on_packet,
			"store": False,
			"stop_filter": lambda _: self._closed.is_set(),
		}
		if self.bpf_filter:
			kwargs["filter"] = self.bpf_filter
		try:
			self._sniff(**kwargs)
		except Exception as exc:
			if not self._closed.is_set():
				self.error = exc
				logger.error("Capture on %s failed: %s. %s", self.iface, exc, PRIVILEGE_HINT)
		finally:
			self._finished.set()

	def _on_packet(self, packet: Any) -> None:
		try:
			frame = frame_from_packet(packet)
		except Exception:  # pragma: no cover - dissector edge cases
			logger.debug("Could not decode packet on %s", self.iface, exc_info=True)
			return
		try:
			self._frames.put_nowait(frame)
		except queue.Full:
			self.overflow += 1


__all__ = [
	"CaptureError",
	"InterfaceInfo",
	"ScapyCaptureSource",
	"frame_from_packet",
	"list_interfaces",
	"local_ip",
	"select_interface",
]
