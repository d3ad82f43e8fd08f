"""
Runner for the assistant CLI in non-interactive streaming mode.

Each command spawns ``<assistant> --output-format stream-json --verbose -p <command>``
in the project directory and turns its stdout/stderr into structured events.
Running processes are tracked by assistant session id so they can be aborted.
"""

import asyncio
import json
import logging
import os
import shlex
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import GatewayConfig

logger = logging.getLogger(__name__)

Send = Callable[[Dict[str, Any]], Awaitable[None]]

_ABORT_GRACE = 3.0
# stream-json lines carry whole tool results
_STREAM_LIMIT = 16 * 1024 * 1024


class AssistantError(Exception):
    """The assistant process could not be started."""


class AssistantRunner:
    """Spawns and aborts assistant CLI processes."""

    def __init__(self, config: GatewayConfig):
        self._config = config
        self._processes: Dict[str, asyncio.subprocess.Process] = {}

    @property
    def active_sessions(self) -> List[str]:
        return list(self._processes)

    def build_argv(self, command: str, options: Dict[str, Any]) -> List[str]:
        argv = shlex.split(self._config.assistant_command)
        argv += ["--output-format", "stream-json", "--verbose"]
        session_id = options.get("sessionId")
        if session_id and options.get("resume", True):
            argv += ["--resume", str(session_id)]
        if command and command.strip():
            argv += ["-p", command]
        return argv

    def _build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self._config.assistant_env())
        return env

    async def spawn(self, command: str, options: Optional[Dict[str, Any]], send: Send) -> int:
        """Run one command to completion, forwarding every event through ``send``.

        Returns the process exit code. Raises AssistantError if the process
        cannot be started.
        """
        options = options or {}
        cwd = options.get("projectPath") or options.get("cwd") or os.getcwd()
        cwd = os.path.abspath(os.path.expanduser(str(cwd)))
        argv = self.build_argv(command, options)
        resume_id = options.get("sessionId")

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=self._build_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=_STREAM_LIMIT,
            )
        except (OSError, ValueError) as e:
            raise AssistantError(f"Failed to start assistant: {e}") from e

        key = str(resume_id) if resume_id else f"pending-{uuid.uuid4().hex[:12]}"
        self._processes[key] = proc
        logger.info("assistant: started pid=%s session=%s cwd=%s", proc.pid, key, cwd)
        is_new_session = not resume_id
        captured_id: Optional[str] = None

        async def pump_stdout():
            nonlocal key, captured_id
            assert proc.stdout is not None
            async for raw in proc.stdout:
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    await send({"type": "claude-output", "data": line})
                    continue
                sid = data.get("session_id") if isinstance(data, dict) else None
                if sid and captured_id is None:
                    captured_id = str(sid)
                    if key != captured_id:
                        self._processes.pop(key, None)
                        key = captured_id
                        self._processes[key] = proc
                    if is_new_session:
                        await send({"type": "session-created", "sessionId": captured_id})
                await send({"type": "claude-response", "data": data})

        async def pump_stderr():
            assert proc.stderr is not None
            async for raw in proc.stderr:
                text = raw.decode("utf-8", errors="replace").rstrip("\n")
                if text:
                    await send({"type": "claude-error", "error": text})

        pumps = [asyncio.ensure_future(pump_stdout()), asyncio.ensure_future(pump_stderr())]
        try:
            await asyncio.gather(*pumps)
            exit_code = await proc.wait()
        except BaseException as e:
            # Also reached on cancellation; never leave the process running untracked
            logger.error("assistant: pid=%s stream failed (%s), terminating", proc.pid, type(e).__name__)
            for pump in pumps:
                pump.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            await self._terminate(proc)
            raise
        finally:
            if self._processes.get(key) is proc:
                del self._processes[key]
        logger.info("assistant: pid=%s exited with code %s", proc.pid, exit_code)
        await send({"type": "claude-complete", "exitCode": exit_code, "isNewSession": is_new_session})
        return exit_code

    async def abort(self, session_id: str) -> bool:
        """Terminate the process running for ``session_id``. False if none is running."""
        proc = self._processes.get(str(session_id)) if session_id else None
        if proc is None or proc.returncode is not None:
            return False
        logger.info("assistant: aborting session %s (pid=%s)", session_id, proc.pid)
        if not await self._terminate(proc):
            return False
        self._processes.pop(str(session_id), None)
        return True

    async def _terminate(self, proc: asyncio.subprocess.Process) -> bool:
        """SIGTERM, then SIGKILL after a grace period. False if the process was already gone."""
        try:
            proc.terminate()
        except ProcessLookupError:
            return False
        try:
            await asyncio.wait_for(proc.wait(), timeout=_ABORT_GRACE)
        except asyncio.TimeoutError:
            logger.warning("assistant: pid=%s ignored SIGTERM, killing", proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
        return True

    async def shutdown(self) -> None:
        """Terminate every running assistant process."""
        for session_id in list(self._processes):
            try:
                await self.abort(session_id)
            except Exception as e:
                logger.error("Shutdown: failed to abort assistant session %s: %s", session_id, e)
