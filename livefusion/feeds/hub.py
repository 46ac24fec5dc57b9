"""
Feed hub WebSocket server.

Producers (scrapers, feed pollers) connect to ws://host:port/feed and push
JSON envelopes. Every text frame gets an {ok, note} ack. A heartbeat task
logs connection and store counts on a fixed period.
"""

import asyncio
from typing import Optional

import orjson
import structlog
from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from config.settings import HubSettings
from livefusion.feeds.ingest import FeedIngestor

logger = structlog.get_logger()

FEED_PATH = "/feed"


class FeedHub:
    """WebSocket ingestion surface."""

    def __init__(self, ingestor: FeedIngestor, config: Optional[HubSettings] = None):
        self.ingestor = ingestor
        self.config = config or HubSettings()
        self.logger = logger.bind(component="feed_hub")

        self._running = False
        self._stop_event = asyncio.Event()
        self._connections = 0
        self._connections_total = 0
        self._frames = 0

    @property
    def connections(self) -> int:
        return self._connections

    async def start(self) -> None:
        """Serve until stop() or cancellation."""
        self._running = True
        self._stop_event.clear()
        async with serve(
            self._handle,
            self.config.host,
            self.config.port,
            max_size=self.config.max_message_bytes,
        ):
            self.logger.info(
                "Feed hub listening",
                url=f"ws://{self.config.host}:{self.config.port}{FEED_PATH}",
            )
            await self._stop_event.wait()
        self._running = False
        self.logger.info("Feed hub stopped")

    async def stop(self) -> None:
        self._running = False
        self._stop_event.set()

    async def _handle(self, websocket: ServerConnection) -> None:
        path = websocket.request.path if websocket.request else ""
        if path.split("?", 1)[0].rstrip("/") not in (FEED_PATH, ""):
            await websocket.close(code=1008, reason="unknown path")
            return

        peer = str(websocket.remote_address)
        self._connections += 1
        self._connections_total += 1
        self.logger.info("Feed client connected", peer=peer, connections=self._connections)

        try:
            async for message in websocket:
                if isinstance(message, bytes):
                    continue
                self._frames += 1
                ok, note = self.ingestor.handle_text(message)
                await websocket.send(orjson.dumps({"ok": ok, "note": note}).decode())
        except ConnectionClosed as e:
            self.logger.debug("Feed client connection closed", peer=peer, code=e.rcvd.code if e.rcvd else None)
        finally:
            self._connections -= 1
            self.logger.info("Feed client disconnected", peer=peer, connections=self._connections)

    # =========================================================================
    # Heartbeat
    # =========================================================================

    def heartbeat_snapshot(self) -> dict:
        counts = self.ingestor.store.counts()
        return {
            "connections": self._connections,
            "live_items": counts["live_items"],
            "odds_items": counts["odds_items"],
            "fused_ready": len(self.ingestor.store.fused_keys()),
        }

    async def run_heartbeat(self) -> None:
        """Log feed_hub_heartbeat every interval until cancelled."""
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_seconds)
            self.logger.info("feed_hub_heartbeat", **self.heartbeat_snapshot())

    def get_metrics(self) -> dict:
        return {
            "running": self._running,
            "connections": self._connections,
            "connections_total": self._connections_total,
            "frames": self._frames,
            **self.ingestor.get_metrics(),
        }
