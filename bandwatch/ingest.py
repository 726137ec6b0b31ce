"""Translate decoded frames into registry attributions."""
from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Iterable, Optional

from bandwatch.registry import DeviceRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FrameDescriptor:
	"""Addressing and size of one captured frame.

	Any address may be missing: a frame without a link-layer header has no
	``link_src``/``link_dst`` and a non-IP frame has no ``net_src``/``net_dst``.
	"""

	length: int
	link_src: Optional[str] = None
	link_dst: Optional[str] = None
	net_src: Optional[str] = None
	net_dst: Optional[str] = None


class IngestState(str, enum.Enum):
	PENDING = "pending"
	RUNNING = "running"
	EXHAUSTED = "exhausted"
	STOPPED = "stopped"
	FAILED = "failed"


class FrameIngestor:
	"""Feed a capture source into a :class:`DeviceRegistry`.

	A bad frame is skipped and counted. An error raised by the source itself
	ends ingestion with state ``FAILED`` and is kept on :attr:`error`.
	"""

	def __init__(self, registry: DeviceRegistry) -> None:
		self.registry = registry
		self.state = IngestState.PENDING
		self.error: Optional[BaseException] = None
		self.frames_seen = 0
		self.frames_attributed = 0
		self.frames_skipped = 0
		self._stop = threading.Event()

	def ingest_frame(self, frame: FrameDescriptor) -> bool:
		self.frames_seen += 1
		try:
			src = frame.link_src or ""
			dst = frame.link_dst or ""
			if not src and not dst:
				self.frames_skipped += 1
				return False
			size = int(frame.length)
			self.registry.attribute(src, frame.net_src or "", dst, frame.net_dst or "", size)
		except (AttributeError, TypeError, ValueError) as exc:
			self.frames_skipped += 1
			logger.debug("Skipping malformed frame %r: %s", frame, exc)
			return False
		self.frames_attributed += 1
		return True

	def run(self, frames: Iterable[FrameDescriptor]) -> IngestState:
		"""Consume ``frames`` until it ends, fails or :meth:`request_stop` is called.

		Blocking; the monitor runs it in a worker thread.
		"""
		self.state = IngestState.RUNNING
		iterator = iter(frames)
		while True:
			if self._stop.is_set():
				self.state = IngestState.STOPPED
				break
			try:
				frame = next(iterator)
			except StopIteration:
				self.state = IngestState.STOPPED if self._stop.is_set() else IngestState.EXHAUSTED
				break
			except Exception as exc:
				self.error = exc
				self.state = IngestState.FAILED
				logger.exception("Capture source failed after %d frames", self.frames_seen)
				break
			self.ingest_frame(frame)
		logger.info(
			"Ingestion %s: %d frames seen, %d attributed, %d skipped",
			self.state.value,
			self.frames_seen,
			self.frames_attributed,
			self.frames_skipped,
		)
		return self.state

	def request_stop(self) -> None:
		self._stop.set()


__all__ = ["FrameDescriptor", "FrameIngestor", "IngestState"]
