"""
Inbound WebSocket message types for the shell and chat protocols.

Each protocol has a closed set of message classes; anything with an unknown
``type`` parses to ``Unrecognized`` so handlers can report it instead of
silently ignoring it.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union


class ProtocolError(ValueError):
    """Inbound message could not be parsed."""


@dataclass(frozen=True)
class Unrecognized:
    type: str


# ── Shell protocol ─────────────────────────────────────────────

@dataclass(frozen=True)
class ShellInit:
    project_path: Optional[str] = None
    session_id: Optional[str] = None
    has_session: bool = False
    cols: Optional[int] = None
    rows: Optional[int] = None


@dataclass(frozen=True)
class ShellInput:
    data: str


@dataclass(frozen=True)
class ShellResize:
    cols: int
    rows: int


ShellMessage = Union[ShellInit, ShellInput, ShellResize, Unrecognized]


# ── Chat protocol ──────────────────────────────────────────────

@dataclass(frozen=True)
class ChatCommand:
    command: str
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChatAbort:
    session_id: str


ChatMessage = Union[ChatCommand, ChatAbort, Unrecognized]


# ── Parsing ────────────────────────────────────────────────────

def _load(raw: Union[str, bytes]) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")
    return data


def _int(data: Dict[str, Any], key: str, required: bool = True) -> Optional[int]:
    value = data.get(key)
    if value is None and not required:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"'{key}' must be an integer")
    # json accepts NaN and Infinity
    if isinstance(value, float) and not math.isfinite(value):
        raise ProtocolError(f"'{key}' must be an integer")
    return int(value)


def _opt_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        return None
    return str(value)


def parse_shell_message(raw: Union[str, bytes]) -> ShellMessage:
    data = _load(raw)
    msg_type = data.get("type", "")
    if msg_type == "init":
        return ShellInit(
            project_path=_opt_str(data, "projectPath"),
            session_id=_opt_str(data, "sessionId"),
            has_session=bool(data.get("hasSession")),
            cols=_int(data, "cols", required=False),
            rows=_int(data, "rows", required=False),
        )
    if msg_type == "input":
        payload = data.get("data")
        if not isinstance(payload, str):
            raise ProtocolError("'data' must be a string")
        return ShellInput(data=payload)
    if msg_type == "resize":
        return ShellResize(cols=_int(data, "cols"), rows=_int(data, "rows"))
    return Unrecognized(type=str(msg_type))


def parse_chat_message(raw: Union[str, bytes]) -> ChatMessage:
    data = _load(raw)
    msg_type = data.get("type", "")
    if msg_type in ("command", "claude-command"):
        command = data.get("command") or ""
        if not isinstance(command, str):
            raise ProtocolError("'command' must be a string")
        options = data.get("options") or {}
        if not isinstance(options, dict):
            raise ProtocolError("'options' must be an object")
        return ChatCommand(command=command, options=options)
    if msg_type in ("abort", "abort-session"):
        return ChatAbort(session_id=str(data.get("sessionId") or ""))
    return Unrecognized(type=str(msg_type))
