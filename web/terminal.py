"""
Shell WebSocket sessions.

One ShellSession per socket. The client sends ``init`` to start the assistant
CLI on a PTY, then ``input`` and ``resize``; the server streams ``output``
(after URL detection) and ``url_open`` messages back. Closing the socket
always terminates the PTY process.
"""

import asyncio
import codecs
import enum
import logging
import os
import shlex
from typing import Dict, List, Optional, Tuple

from pty_backend import ProcessExit, PtyProcess
from web.messages import (
    ProtocolError,
    ShellInit,
    ShellInput,
    ShellResize,
    Unrecognized,
    parse_shell_message,
)
from web.state import Connection, Gateway
from web.url_scan import BROWSER_OVERRIDE, scan_output

logger = logging.getLogger(__name__)

DEFAULT_COLS = 80
DEFAULT_ROWS = 24
# struct winsize fields are unsigned short
MAX_DIMENSION = 65535

# Output batching window; also widens the span URL detection sees at once
_FLUSH_INTERVAL = 0.008
_MAX_BATCH_BYTES = 8192

_CYAN = "\x1b[36m"
_YELLOW = "\x1b[33m"
_RED = "\x1b[31m"
_RESET = "\x1b[0m"


class ShellState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    CLOSED = "closed"


def build_shell_command(assistant: str, project_path: str, resume_id: Optional[str]) -> str:
    """``cd`` into the project and run the assistant, resuming when asked."""
    if resume_id:
        run = f"{assistant} --resume {shlex.quote(resume_id)} || {assistant}"
    else:
        run = assistant
    return f"cd {shlex.quote(project_path)} && {run}"


def _error_banner(message: str) -> str:
    return f"\r\n{_RED}Error: {message}{_RESET}\r\n"


def _exit_banner(result: ProcessExit) -> str:
    suffix = f" ({result.signal})" if result.signal else ""
    return f"\r\n{_YELLOW}Process exited with code {result.exit_code}{suffix}{_RESET}\r\n"


class ShellSession:
    """Owns at most one PTY process for a single shell connection."""

    def __init__(self, conn: Connection, gateway: Gateway):
        self.conn = conn
        self.gateway = gateway
        self.state = ShellState.IDLE
        self.process: Optional[PtyProcess] = None
        self.cols = DEFAULT_COLS
        self.rows = DEFAULT_ROWS
        self.project_path: Optional[str] = None
        self.resume_id: Optional[str] = None
        self._pump_task: Optional[asyncio.Task] = None

    # ── Environment ─────────────────────────────────────────────

    def build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.gateway.config.assistant_env())
        env.update({
            "TERM": "xterm-256color",
            "COLORTERM": "truecolor",
            "FORCE_COLOR": "3",
            # Browser launches print a sentinel we turn into url_open events
            "BROWSER": BROWSER_OVERRIDE,
        })
        return env

    # ── Outbound ────────────────────────────────────────────────

    async def send_output(self, data: str) -> None:
        await self.conn.send_json({"type": "output", "data": data})

    async def send_error(self, message: str) -> None:
        await self.conn.send_json({"type": "error", "error": message})

    # ── Main loop ───────────────────────────────────────────────

    async def run(self) -> None:
        logger.info("shell ws: connected (%r)", self.conn)
        try:
            while True:
                text = await self.conn.receive_text()
                if text is None:
                    break
                await self.handle_raw(text)
        except Exception as e:
            # Transport errors end the session like a normal close
            logger.warning("shell ws: receive failed on %r: %s", self.conn, e)
        finally:
            await self.close()

    async def handle_raw(self, text: str) -> None:
        try:
            message = parse_shell_message(text)
        except ProtocolError as e:
            logger.debug("shell ws: bad message (len=%s): %s", len(text), e)
            await self.send_error(str(e))
            return
        try:
            await self.dispatch(message)
        except Exception as e:
            logger.exception("shell ws: error handling %s", type(message).__name__)
            await self.send_output(_error_banner(str(e) or type(e).__name__))

    async def dispatch(self, message) -> None:
        if isinstance(message, ShellInit):
            await self.start(message)
        elif isinstance(message, ShellInput):
            await self.write_input(message.data)
        elif isinstance(message, ShellResize):
            self.resize(message.cols, message.rows)
        elif isinstance(message, Unrecognized):
            await self.send_error(f"Unrecognized message type: {message.type}")
        else:
            raise TypeError(f"unhandled shell message {message!r}")

    # ── init ────────────────────────────────────────────────────

    async def start(self, init: ShellInit) -> None:
        if self.state is not ShellState.IDLE:
            logger.warning("shell ws: init while %s, ignored", self.state.value)
            await self.send_output(_error_banner("A session is already running in this terminal."))
            return

        self.state = ShellState.STARTING
        self.project_path = init.project_path or os.getcwd()
        self.resume_id = init.session_id if init.has_session and init.session_id else None
        if init.cols and init.rows and init.cols > 0 and init.rows > 0:
            self.cols = min(init.cols, MAX_DIMENSION)
            self.rows = min(init.rows, MAX_DIMENSION)

        if self.resume_id:
            banner = f"{_CYAN}Resuming assistant session {self.resume_id} in: {self.project_path}{_RESET}\r\n"
        else:
            banner = f"{_CYAN}Starting new assistant session in: {self.project_path}{_RESET}\r\n"
        await self.send_output(banner)

        command = build_shell_command(self.gateway.config.assistant_command, self.project_path, self.resume_id)
        logger.info("shell ws: starting in %s (%s)", self.project_path,
                    f"resume {self.resume_id}" if self.resume_id else "new session")
        try:
            process = await self.gateway.backend.spawn(
                ["bash", "-c", command],
                cwd=os.environ.get("HOME") or "/",
                env=self.build_env(),
                cols=self.cols,
                rows=self.rows,
            )
        except Exception as e:
            logger.exception("shell ws: spawn failed")
            self.state = ShellState.IDLE
            await self.send_output(_error_banner(str(e) or type(e).__name__))
            return

        self.process = process
        self.state = ShellState.RUNNING
        logger.info("shell ws: spawned pid=%s", process.pid)
        self._pump_task = asyncio.create_task(self._pump(process))

    # ── input / resize ──────────────────────────────────────────

    async def write_input(self, data: str) -> None:
        process = self.process
        if process is None:
            logger.warning("shell ws: no active process to send input to")
            return
        try:
            process.write(data.encode("utf-8"))
        except OSError as e:
            logger.error("shell ws: write to pid=%s failed: %s", process.pid, e)
            await self.send_output(_error_banner(f"Could not write to terminal: {e}"))

    def resize(self, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0:
            return
        cols, rows = min(cols, MAX_DIMENSION), min(rows, MAX_DIMENSION)
        self.cols, self.rows = cols, rows
        if self.process is not None:
            logger.debug("shell ws: resize %sx%s", cols, rows)
            self.process.resize(cols, rows)

    # ── Output pump ─────────────────────────────────────────────

    @staticmethod
    async def _read_batch(process: PtyProcess) -> Tuple[List[bytes], bool]:
        """Wait for output, then drain whatever else arrives within the flush window.

        Returns (chunks, eof). ``chunks`` may be empty when EOF comes first.
        """
        first = await process.read()
        if first is None:
            return [], True
        batch = [first]
        size = len(first)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + _FLUSH_INTERVAL
        while size < _MAX_BATCH_BYTES:
            try:
                chunk = process.read_nowait()
            except asyncio.QueueEmpty:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    chunk = await asyncio.wait_for(process.read(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
            if chunk is None:
                return batch, True
            batch.append(chunk)
            size += len(chunk)
        return batch, False

    async def _forward(self, text: str) -> None:
        result = scan_output(text)
        for url in result.urls:
            logger.info("shell ws: detected URL for opening: %s", url)
            await self.conn.send_json({"type": "url_open", "url": url})
        await self.send_output(result.output)

    async def _pump(self, process: PtyProcess) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            eof = False
            while not eof:
                batch, eof = await self._read_batch(process)
                text = decoder.decode(b"".join(batch))
                if text:
                    await self._forward(text)
            tail = decoder.decode(b"", final=True)
            if tail:
                await self._forward(tail)
            result = await process.wait()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("shell ws: output pump failed for pid=%s", process.pid)
            await process.close()
            result = await process.wait()

        logger.info("shell ws: pid=%s exited with code %s signal=%s", process.pid, result.exit_code, result.signal)
        if self.process is process:
            self.process = None
            self._pump_task = None
            if self.state is ShellState.RUNNING:
                self.state = ShellState.IDLE
            await process.close()
        await self.send_output(_exit_banner(result))

    # ── Teardown ────────────────────────────────────────────────

    async def close(self) -> None:
        """Terminate the owned process (if any) and stop the pump."""
        if self.state is ShellState.CLOSED:
            return
        self.state = ShellState.CLOSED
        self.conn.mark_closed()
        process, self.process = self.process, None
        pump, self._pump_task = self._pump_task, None
        if pump is not None:
            pump.cancel()
        # Signal the process before any suspension so a cancelled handler still kills it
        if process is not None:
            logger.info("shell ws: killing pid=%s", process.pid)
            try:
                await process.close()
            except Exception as e:
                logger.error("shell ws: failed to terminate pid=%s: %s", process.pid, e)
        if pump is not None:
            await asyncio.gather(pump, return_exceptions=True)
        logger.info("shell ws: closed (%r)", self.conn)
