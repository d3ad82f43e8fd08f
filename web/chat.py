"""
Chat WebSocket relay.

Each ``command`` message runs the assistant CLI through the gateway's
AssistantRunner and streams its events back verbatim. ``abort`` stops a
running assistant session. Failures are reported as ``error`` messages and
never close the connection.
"""

import asyncio
import logging
from typing import Any, Dict, Set

from assistant_cli import AssistantError
from web.messages import (
    ChatAbort,
    ChatCommand,
    ProtocolError,
    Unrecognized,
    parse_chat_message,
)
from web.state import Connection, Gateway

logger = logging.getLogger(__name__)


class ChatRelay:
    """Relays chat commands for one connection."""

    def __init__(self, conn: Connection, gateway: Gateway):
        self.conn = conn
        self.gateway = gateway
        self._tasks: Set[asyncio.Task] = set()

    async def send(self, data: Dict[str, Any]) -> None:
        await self.conn.send_json(data)

    async def send_error(self, message: str) -> None:
        await self.send({"type": "error", "error": message})

    async def run(self) -> None:
        logger.info("chat ws: connected (%r)", self.conn)
        try:
            while True:
                text = await self.conn.receive_text()
                if text is None:
                    break
                await self.handle_raw(text)
        except Exception as e:
            logger.warning("chat ws: receive failed on %r: %s", self.conn, e)
        finally:
            self.conn.mark_closed()
            # Assistant processes are owned by the runner and keep running;
            # their remaining events are dropped by the closed connection.
            logger.info("chat ws: disconnected (%r, %d command(s) still running)", self.conn, len(self._tasks))

    async def handle_raw(self, text: str) -> None:
        try:
            message = parse_chat_message(text)
        except ProtocolError as e:
            logger.debug("chat ws: bad message (len=%s): %s", len(text), e)
            await self.send_error(str(e))
            return
        try:
            await self.dispatch(message)
        except Exception as e:
            logger.exception("chat ws: error handling %s", type(message).__name__)
            await self.send_error(str(e) or type(e).__name__)

    async def dispatch(self, message) -> None:
        if isinstance(message, ChatCommand):
            self.start_command(message)
        elif isinstance(message, ChatAbort):
            await self.abort(message.session_id)
        elif isinstance(message, Unrecognized):
            await self.send_error(f"Unrecognized message type: {message.type}")
        else:
            raise TypeError(f"unhandled chat message {message!r}")

    def start_command(self, message: ChatCommand) -> asyncio.Task:
        options = message.options
        logger.info(
            "chat ws: command %r project=%s session=%s",
            (message.command or "[continue/resume]")[:80],
            options.get("projectPath") or "unknown",
            "resume" if options.get("sessionId") else "new",
        )
        task = asyncio.create_task(self._run_command(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_command(self, message: ChatCommand) -> None:
        try:
            await self.gateway.runner.spawn(message.command, message.options, self.send)
        except AssistantError as e:
            logger.error("chat ws: %s", e)
            await self.send_error(str(e))
        except Exception as e:
            logger.exception("chat ws: command failed")
            await self.send_error(str(e) or type(e).__name__)

    async def abort(self, session_id: str) -> None:
        logger.info("chat ws: abort request for session %s", session_id or "<none>")
        success = await self.gateway.runner.abort(session_id)
        await self.send({"type": "session-aborted", "sessionId": session_id, "success": success})
