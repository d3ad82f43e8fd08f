"""
Process adapter for pseudo-terminal sessions.

Spawns a child attached to a PTY, streams its output into an asyncio queue,
forwards input and window-size changes, and tears it down.
"""

import asyncio
import logging
import os
import select
import signal
import struct
import sys
import termios
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

_READ_SIZE = 4096
_TERMINATE_GRACE = 2.0
_POLL_INTERVAL = 0.05
_SELECT_TIMEOUT = 0.25


@dataclass(frozen=True)
class ProcessExit:
    """How a PTY child finished. ``signal`` is the signal name when killed by one."""
    exit_code: int
    signal: Optional[str] = None


class PtyProcess(ABC):
    """A live child process attached to a pseudo-terminal."""

    pid: Optional[int] = None

    @abstractmethod
    async def read(self) -> Optional[bytes]:
        """Return the next output chunk, or None once the output stream has ended."""

    @abstractmethod
    def read_nowait(self) -> Optional[bytes]:
        """Return an already-buffered chunk. Raises asyncio.QueueEmpty if nothing is ready."""

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Write raw bytes to the terminal input."""

    @abstractmethod
    def resize(self, cols: int, rows: int) -> None:
        """Change the terminal geometry."""

    @abstractmethod
    async def wait(self) -> ProcessExit:
        """Wait for the child to exit and return its status."""

    @abstractmethod
    async def close(self) -> None:
        """Terminate the child (best effort) and release the terminal."""


class PtyBackend(ABC):
    """Factory for PTY processes."""

    @abstractmethod
    async def spawn(
        self,
        argv: List[str],
        cwd: str,
        env: Dict[str, str],
        cols: int = 80,
        rows: int = 24,
    ) -> PtyProcess:
        """Start ``argv`` on a fresh PTY. Raises OSError if the process cannot be started."""


# ============================================================
# Local PTY (pty.fork)
# ============================================================

def _set_winsize(fd: int, cols: int, rows: int) -> None:
    if hasattr(termios, "tcsetwinsize"):
        termios.tcsetwinsize(fd, (rows, cols))
    else:
        import fcntl
        buf = struct.pack("HHHH", rows, cols, 0, 0)
        fcntl.ioctl(fd, termios.TIOCSWINSZ, buf)


# Bad geometry surfaces as OverflowError (tcsetwinsize) or struct.error (ioctl path)
_WINSIZE_ERRORS = (OSError, AttributeError, OverflowError, struct.error)


def _pty_exec(argv: List[str], cwd: str, env: Dict[str, str]) -> None:
    """Run in the child after pty.fork(): stdio is already the slave; chdir and exec."""
    try:
        os.chdir(cwd)
    except OSError:
        os.chdir("/")
    os.execvpe(argv[0], argv, env)


def _pty_read_loop(
    master_fd: int,
    queue: asyncio.Queue,
    loop: asyncio.AbstractEventLoop,
    stopped: threading.Event,
) -> None:
    """Thread: read from PTY master and put bytes into asyncio queue."""
    try:
        while not stopped.is_set():
            try:
                ready, _, _ = select.select([master_fd], [], [], _SELECT_TIMEOUT)
            except (OSError, ValueError):
                break
            if not ready:
                continue
            try:
                data = os.read(master_fd, _READ_SIZE)
            except BlockingIOError:
                continue
            except OSError:
                # EIO once the child side is gone, EBADF after close()
                break
            if not data:
                break
            loop.call_soon_threadsafe(queue.put_nowait, data)
    finally:
        try:
            loop.call_soon_threadsafe(queue.put_nowait, None)
        except RuntimeError:
            # Loop already closed during shutdown
            pass


def _decode_status(status: int) -> ProcessExit:
    if os.WIFSIGNALED(status):
        signum = os.WTERMSIG(status)
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        return ProcessExit(exit_code=128 + signum, signal=name)
    return ProcessExit(exit_code=os.WEXITSTATUS(status))


def _discard_child(pid: int, master_fd: int) -> None:
    """Kill and reap a child whose PtyProcess was never handed out."""
    for kill in (os.killpg, os.kill):
        try:
            kill(pid, signal.SIGKILL)
            break
        except OSError:
            continue
    try:
        os.waitpid(pid, 0)
    except ChildProcessError:
        pass
    try:
        os.close(master_fd)
    except OSError:
        pass


class LocalPtyProcess(PtyProcess):
    """PTY child created with pty.fork().

    The master fd is non-blocking. Input the terminal cannot take yet is kept
    in ``_pending`` and flushed by an event-loop writer callback.
    """

    def __init__(self, pid: int, master_fd: int, loop: asyncio.AbstractEventLoop):
        self.pid = pid
        self._master_fd: Optional[int] = master_fd
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self._exit: Optional[ProcessExit] = None
        self._reap_lock = threading.Lock()
        self._pending = bytearray()
        self._writer_armed = False
        self._write_error: Optional[OSError] = None
        self._stopped = threading.Event()
        self._reader = threading.Thread(
            target=_pty_read_loop,
            args=(master_fd, self._queue, loop, self._stopped),
            name=f"pty-reader-{pid}",
            daemon=True,
        )
        self._reader.start()

    async def read(self) -> Optional[bytes]:
        return await self._queue.get()

    def read_nowait(self) -> Optional[bytes]:
        return self._queue.get_nowait()

    def write(self, data: bytes) -> None:
        if self._master_fd is None:
            raise BrokenPipeError("terminal is closed")
        if self._write_error is not None:
            raise self._write_error
        self._pending += data
        if not self._writer_armed:
            self._flush()
            if self._write_error is not None:
                raise self._write_error

    def _flush(self) -> None:
        fd = self._master_fd
        while self._pending and fd is not None:
            try:
                written = os.write(fd, self._pending)
            except BlockingIOError:
                break
            except OSError as e:
                logger.debug("pty %s: write failed: %s", self.pid, e)
                self._write_error = e
                self._pending.clear()
                break
            del self._pending[:written]
        if self._pending and not self._writer_armed and fd is not None:
            self._loop.add_writer(fd, self._flush)
            self._writer_armed = True
        elif not self._pending and self._writer_armed:
            self._disarm_writer()

    def _disarm_writer(self) -> None:
        if self._writer_armed and self._master_fd is not None:
            self._loop.remove_writer(self._master_fd)
        self._writer_armed = False

    def resize(self, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0 or self._master_fd is None:
            return
        try:
            _set_winsize(self._master_fd, cols, rows)
        except _WINSIZE_ERRORS as e:
            logger.debug("pty %s: resize failed: %s", self.pid, e)

    def _poll(self) -> Optional[ProcessExit]:
        """Non-blocking reap. Returns None while the child is still running."""
        with self._reap_lock:
            if self._exit is not None:
                return self._exit
            try:
                pid, status = os.waitpid(self.pid, os.WNOHANG)
            except ChildProcessError:
                # Reaped elsewhere; the real status is lost
                self._exit = ProcessExit(exit_code=0)
                return self._exit
            if pid == 0:
                return None
            self._exit = _decode_status(status)
            return self._exit

    async def wait(self) -> ProcessExit:
        while True:
            result = self._poll()
            if result is not None:
                return result
            await asyncio.sleep(_POLL_INTERVAL)

    def _signal_group(self, sig: int) -> None:
        try:
            os.killpg(self.pid, sig)
        except (ProcessLookupError, PermissionError):
            try:
                os.kill(self.pid, sig)
            except OSError:
                pass

    async def close(self) -> None:
        if self._poll() is None:
            self._signal_group(signal.SIGHUP)
            self._signal_group(signal.SIGTERM)
            try:
                await asyncio.wait_for(self.wait(), timeout=_TERMINATE_GRACE)
            except asyncio.TimeoutError:
                logger.warning("pty %s: did not exit after SIGTERM, killing", self.pid)
                self._signal_group(signal.SIGKILL)
                await self.wait()
        self._stopped.set()
        self._disarm_writer()
        self._pending.clear()
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None


class LocalPtyBackend(PtyBackend):
    """Spawns processes on a local pseudo-terminal."""

    async def spawn(self, argv, cwd, env, cols=80, rows=24) -> PtyProcess:
        if sys.platform == "win32":
            raise OSError("PTY not available on this system")
        import pty

        loop = asyncio.get_running_loop()
        pid, master_fd = pty.fork()
        if pid == 0:
            try:
                _pty_exec(argv, cwd, env)
            except Exception:
                os._exit(127)
            os._exit(0)
        try:
            try:
                _set_winsize(master_fd, cols, rows)
            except _WINSIZE_ERRORS as e:
                logger.debug("pty %s: initial resize %sx%s failed: %s", pid, cols, rows, e)
            os.set_blocking(master_fd, False)
            process = LocalPtyProcess(pid, master_fd, loop)
        except BaseException:
            logger.error("pty: setup failed for pid=%s, killing it", pid)
            _discard_child(pid, master_fd)
            raise
        logger.info("pty: spawned pid=%s argv=%s", pid, argv[:1])
        return process
