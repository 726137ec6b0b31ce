"""HTTP and websocket surface over a :class:`BandwidthMonitor`."""
from __future__ import annotations

import contextlib
import logging
import time
from typing import Any, AsyncIterator, Iterable, Optional

from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from bandwatch.ingest import FrameDescriptor
from bandwatch.monitor import BandwidthMonitor

logger = logging.getLogger(__name__)


class WebSocketSubscriber:
    """Hashable subscriber handle around a FastAPI websocket."""

    def __init__(self, ws: WebSocket) -> None:
        self.ws = ws
        client = ws.client
        self.peer = f"{client.host}:{client.port}" if client else "unknown"

    async def send_json(self, data: Any) -> None:
        await self.ws.send_json(data)

    async def close(self) -> None:
        await self.ws.close()

    def __repr__(self) -> str:
        return f"<WebSocketSubscriber {self.peer}>"


def create_app(
    monitor: BandwidthMonitor,
    *,
    source: Optional[Iterable[FrameDescriptor]] = None,
) -> FastAPI:
    """Build the API app; its lifespan starts and stops ``monitor``.

    ``source`` is handed to :meth:`BandwidthMonitor.start` and ingested in the
    background while the app is serving.
    """

    @contextlib.asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await monitor.start(source)
        try:
            yield
        finally:
            await monitor.stop()

    app = FastAPI(title="BandWatch API", version="0.1.0", lifespan=lifespan)
    app.state.monitor = monitor
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    @app.get("/api/health")
    async def health():
        return {
            "status": "ok",
            "time": time.time(),
            "ingestion": monitor.ingestion_state.value,
            "subscribers": len(monitor.subscribers),
            "localIp": monitor.config.local_ip,
        }

    @app.get("/api/stats")
    async def stats():
        return monitor.get_snapshot().to_dict()

    @app.get("/api/devices/{mac}")
    async def device(mac: str):
        record = monitor.get_device(mac)
        if record is None:
            raise HTTPException(status_code=404, detail="Device not found")
        return record.to_dict()

    @app.websocket("/ws")
    async def stream(ws: WebSocket):
        await ws.accept()
        subscriber = WebSocketSubscriber(ws)
        if not await monitor.on_subscriber_connected(subscriber):
            return
        try:
            # Inbound messages are ignored; reading only detects closure.
            while True:
                message = await ws.receive()
                if message["type"] == "websocket.disconnect":
                    break
        except RuntimeError as exc:
            logger.debug("Websocket %s read failed: %s", subscriber.peer, exc)
        finally:
            await monitor.on_subscriber_disconnected(subscriber)

    return app


__all__ = ["WebSocketSubscriber", "create_app"]
