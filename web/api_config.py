"""
Client bootstrap: where the browser should open its WebSockets.
"""

import logging

from fastapi import APIRouter, Request

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/config")
async def client_config(request: Request):
    """WebSocket base URL for the host the client reached us on. No login required."""
    config = request.app.state.gateway.config
    forwarded = request.headers.get("x-forwarded-proto", "").split(",")[0].strip().lower()
    secure = request.url.scheme == "https" or forwarded == "https"
    host = request.headers.get("host") or f"{config.host}:{config.port}"
    ws_url = f"{'wss' if secure else 'ws'}://{host}"
    logger.debug("config: returning wsUrl=%s", ws_url)
    return {"serverPort": config.port, "wsUrl": ws_url}
