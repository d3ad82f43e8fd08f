"""
Assistant gateway web server.
FastAPI app exposing the shell and chat WebSockets behind a session login.

Run:  python -m web [--port 3001] [--host 127.0.0.1]
"""

import asyncio
import logging
from typing import Optional

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.sessions import SessionMiddleware

from assistant_cli import AssistantRunner
from config import GatewayConfig
from pty_backend import LocalPtyBackend, PtyBackend
from web.notify import ProjectsWatcher
from web.state import Gateway
from web import api_config, auth, gateway as gateway_routes

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[GatewayConfig] = None,
    backend: Optional[PtyBackend] = None,
    runner: Optional[AssistantRunner] = None,
) -> FastAPI:
    """Build the app. Raises config.ConfigError if the session secret is unusable."""
    config = config or GatewayConfig()
    config.validate()

    gateway = Gateway(
        config,
        backend=backend or LocalPtyBackend(),
        runner=runner or AssistantRunner(config),
    )

    app = FastAPI(title="Assistant Gateway")
    app.state.gateway = gateway
    app.state.limiter = Limiter(key_func=get_remote_address)
    app.add_exception_handler(RateLimitExceeded, auth.rate_limit_exceeded)
    app.state.projects_watcher = None

    app.add_middleware(
        SessionMiddleware,
        secret_key=config.session_secret,
        max_age=config.cookie_max_age,
        https_only=config.https_only,
        same_site="lax",
    )

    @app.on_event("startup")
    async def _on_startup():
        gateway.loop = asyncio.get_running_loop()
        if config.watch_projects:
            watcher = ProjectsWatcher(
                config.projects_dir,
                on_event=gateway.publish_threadsafe,
                debounce=config.watch_debounce_seconds,
            )
            if watcher.start():
                app.state.projects_watcher = watcher

    @app.on_event("shutdown")
    async def _on_shutdown():
        """Stop the watcher and terminate any assistant processes still running."""
        watcher = app.state.projects_watcher
        if watcher is not None:
            watcher.stop()
            app.state.projects_watcher = None
        await gateway.runner.shutdown()
        gateway.loop = None

    rate = auth.login_rate(config.login_max_attempts, config.login_window_seconds)
    app.include_router(auth.create_router(app.state.limiter, rate))
    app.include_router(api_config.router)
    # Catch-all WebSocket route; keep it last
    app.include_router(gateway_routes.router)
    return app
