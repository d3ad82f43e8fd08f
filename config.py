"""
Configuration module for the assistant gateway.
Handles environment variables and server settings.
"""

import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

MIN_SESSION_SECRET_LENGTH = 32


class ConfigError(Exception):
    """Raised when the server configuration is unusable."""


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _is_production() -> bool:
    env = os.getenv("APP_ENV") or os.getenv("NODE_ENV") or ""
    return env.lower() == "production"


@dataclass
class GatewayConfig:
    """Gateway configuration, read from the environment at construction time."""
    session_secret: str = field(default_factory=lambda: os.getenv("SESSION_SECRET", ""))
    app_password: str = field(default_factory=lambda: os.getenv("APP_PASSWORD", ""))
    host: str = field(default_factory=lambda: os.getenv("HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", "3001")))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    # Assistant CLI, launched both inside the pty and by the chat runner
    assistant_command: str = field(default_factory=lambda: os.getenv("ASSISTANT_COMMAND", "claude"))
    # The CLI talks to a local stand-in endpoint; the key only has to be non-empty
    proxy_base_url: str = field(default_factory=lambda: os.getenv("ASSISTANT_PROXY_URL", "http://localhost:3456"))
    placeholder_api_key: str = field(default_factory=lambda: os.getenv("ASSISTANT_PLACEHOLDER_KEY", "any-string-will-work"))

    # WebSocket route prefixes
    shell_route: str = field(default_factory=lambda: os.getenv("SHELL_ROUTE", "/shell"))
    chat_route: str = field(default_factory=lambda: os.getenv("CHAT_ROUTE", "/ws"))

    # Session cookie
    cookie_max_age: int = 24 * 60 * 60
    https_only: bool = field(default_factory=_is_production)

    # Login brute-force protection
    login_max_attempts: int = field(default_factory=lambda: int(os.getenv("LOGIN_MAX_ATTEMPTS", "10")))
    login_window_seconds: float = field(default_factory=lambda: float(os.getenv("LOGIN_WINDOW_SECONDS", "900")))

    # Projects watcher
    projects_dir: str = field(default_factory=lambda: os.path.expanduser(
        os.getenv("PROJECTS_DIR", os.path.join("~", ".claude", "projects"))))
    watch_projects: bool = field(default_factory=lambda: _env_bool("WATCH_PROJECTS", "true"))
    watch_debounce_seconds: float = 0.3

    def validate(self) -> None:
        """Fail fast on settings that would silently weaken every session."""
        if not self.session_secret or len(self.session_secret) < MIN_SESSION_SECRET_LENGTH:
            raise ConfigError(
                "SESSION_SECRET is not defined or is too weak. "
                f"Set a random string of at least {MIN_SESSION_SECRET_LENGTH} characters in your .env file."
            )

    def assistant_env(self) -> dict:
        """Environment overrides that route the assistant CLI to the local proxy."""
        return {
            "ANTHROPIC_BASE_URL": self.proxy_base_url,
            "ANTHROPIC_API_KEY": self.placeholder_api_key,
        }
