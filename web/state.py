"""
Shared state for the gateway.

The Gateway object is built once at startup (see ``web.create_app``) and
stored on ``app.state.gateway``; handlers receive it explicitly. Connection
wraps an accepted WebSocket with serialized, failure-tolerant sends.
"""

import asyncio
import itertools
import logging
import threading
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from assistant_cli import AssistantRunner
from config import GatewayConfig
from pty_backend import PtyBackend

logger = logging.getLogger(__name__)


_conn_ids = itertools.count(1)


# ============================================================
# Connection (serialized, failure-tolerant sends)
# ============================================================

class Connection:
    """One accepted WebSocket.

    ``send_json`` is serialized per connection so the session handler and the
    notification fan-out never interleave frames. Sends to a closed or broken
    socket are dropped; the first failure marks the connection closed.
    """

    def __init__(self, ws: WebSocket, authenticated: bool):
        self.id = next(_conn_ids)
        self.ws = ws
        self.path: str = ws.url.path
        self.authenticated = authenticated
        self._closed = False
        self._send_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<Connection {self.id} {self.path}>"

    @property
    def writable(self) -> bool:
        return (
            not self._closed
            and self.ws.client_state == WebSocketState.CONNECTED
            and self.ws.application_state == WebSocketState.CONNECTED
        )

    def mark_closed(self) -> None:
        self._closed = True

    async def send_json(self, data: Dict[str, Any]) -> bool:
        """Send one JSON message. Returns False if the message was dropped."""
        async with self._send_lock:
            if not self.writable:
                return False
            try:
                await self.ws.send_json(data)
                return True
            except Exception as e:
                logger.debug("%r: send failed, marking closed: %s", self, e)
                self._closed = True
                return False

    async def receive_text(self) -> Optional[str]:
        """Next text (or UTF-8 decoded binary) frame, or None on disconnect."""
        msg = await self.ws.receive()
        if msg.get("type") == "websocket.disconnect":
            self._closed = True
            return None
        text = msg.get("text")
        if text is not None:
            return text
        data = msg.get("bytes")
        if data is not None:
            return data.decode("utf-8", errors="replace")
        return ""

    async def close(self, code: int = 1000) -> None:
        async with self._send_lock:
            if self._closed:
                return
            self._closed = True
            try:
                await self.ws.close(code=code)
            except Exception:
                pass


class BroadcastRegistry:
    """Chat connections eligible for fan-out. Safe for concurrent add/remove."""

    def __init__(self):
        self._lock = threading.Lock()
        self._members: Set[Connection] = set()

    def add(self, conn: Connection) -> None:
        with self._lock:
            self._members.add(conn)

    def discard(self, conn: Connection) -> None:
        with self._lock:
            self._members.discard(conn)

    def snapshot(self) -> List[Connection]:
        with self._lock:
            return list(self._members)

    def __contains__(self, conn: Connection) -> bool:
        with self._lock:
            return conn in self._members

    def __len__(self) -> int:
        with self._lock:
            return len(self._members)


# ============================================================
# Gateway
# ============================================================

class Gateway:
    """Process-wide gateway state, built once at startup and stored on ``app.state``."""

    def __init__(self, config: GatewayConfig, backend: PtyBackend, runner: AssistantRunner):
        self.config = config
        self.backend = backend
        self.runner = runner
        self.registry = BroadcastRegistry()
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    async def broadcast(self, event) -> int:
        """Write a NotificationEvent to every writable chat connection. Returns the delivery count."""
        message = event.to_message()
        delivered = 0
        for conn in self.registry.snapshot():
            if not conn.writable:
                continue
            if await conn.send_json(message):
                delivered += 1
        logger.info("broadcast: %s %s -> %d client(s)", event.change_type, event.changed_file, delivered)
        return delivered

    def publish_threadsafe(self, event) -> None:
        """Schedule a broadcast from a non-loop thread (the projects watcher)."""
        loop = self.loop
        if loop is None or loop.is_closed():
            logger.debug("broadcast: no running loop, dropping %s", event.change_type)
            return
        future = asyncio.run_coroutine_threadsafe(self.broadcast(event), loop)
        future.add_done_callback(_log_broadcast_failure)


def _log_broadcast_failure(future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("broadcast failed: %s", exc)

