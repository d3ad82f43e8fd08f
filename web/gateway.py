"""
WebSocket upgrade gate and connection router.

Every WebSocket upgrade lands here. Unauthenticated upgrades are refused with
a plain HTTP 401 before the handshake completes; authenticated ones are
dispatched by path prefix to the shell or chat handler.
"""

import logging

from fastapi import APIRouter, WebSocket
from fastapi.responses import PlainTextResponse

from web.chat import ChatRelay
from web.state import Connection, Gateway
from web.terminal import ShellSession

logger = logging.getLogger(__name__)

router = APIRouter()


def is_authenticated(ws: WebSocket) -> bool:
    """True if the signed session cookie carries a successful login."""
    if "session" not in ws.scope:
        return False
    return ws.session.get("authenticated") is True


def route_matches(path: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


async def _reject(ws: WebSocket) -> None:
    try:
        await ws.send_denial_response(PlainTextResponse("Unauthorized", status_code=401))
    except RuntimeError:
        # Server lacks the denial-response extension; closing before accept still refuses the handshake
        await ws.close(code=1008)


@router.websocket("/{path:path}")
async def websocket_gateway(ws: WebSocket, path: str):
    gateway: Gateway = ws.app.state.gateway
    request_path = ws.url.path

    if not is_authenticated(ws):
        logger.warning("ws: unauthorized upgrade attempt for %s", request_path)
        await _reject(ws)
        return

    await ws.accept()
    conn = Connection(ws, authenticated=True)
    logger.info("ws: authenticated client connected to %s", request_path)

    if route_matches(request_path, gateway.config.shell_route):
        await ShellSession(conn, gateway).run()
    elif route_matches(request_path, gateway.config.chat_route):
        gateway.registry.add(conn)
        try:
            await ChatRelay(conn, gateway).run()
        finally:
            gateway.registry.discard(conn)
    else:
        logger.warning("ws: unknown path %s, closing", request_path)
        await conn.close(code=1008)
