"""Shared fixtures: fake PTY backend and assistant runner, app factory."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from config import GatewayConfig
from pty_backend import ProcessExit, PtyBackend, PtyProcess
from web import create_app

SECRET = "s" * 48
PASSWORD = "correct horse battery staple"


class FakeProcess(PtyProcess):
    """Scripted PTY process. Output is queued at spawn; ``finish`` ends the stream."""

    def __init__(self, pid: int, script: List[bytes], exit_result: Optional[ProcessExit]):
        self.pid = pid
        self.queue: asyncio.Queue = asyncio.Queue()
        self.written: List[bytes] = []
        self.resizes: List[tuple] = []
        self.closed = False
        self.fail_writes = False
        self._exit_result = exit_result
        for chunk in script:
            self.queue.put_nowait(chunk)
        if exit_result is not None:
            self.queue.put_nowait(None)

    async def read(self):
        return await self.queue.get()

    def read_nowait(self):
        return self.queue.get_nowait()

    def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise BrokenPipeError("broken pipe")
        self.written.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.resizes.append((cols, rows))

    async def wait(self) -> ProcessExit:
        while self._exit_result is None:
            await asyncio.sleep(0.01)
        return self._exit_result

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            if self._exit_result is None:
                self._exit_result = ProcessExit(exit_code=129, signal="SIGHUP")
                self.queue.put_nowait(None)


class FakeBackend(PtyBackend):
    def __init__(self, script=None, exit_result=None, error: Optional[Exception] = None):
        self.script = list(script or [])
        self.exit_result = exit_result
        self.error = error
        self.spawned: List[Dict[str, Any]] = []
        self.processes: List[FakeProcess] = []

    async def spawn(self, argv, cwd, env, cols=80, rows=24):
        self.spawned.append({"argv": argv, "cwd": cwd, "env": env, "cols": cols, "rows": rows})
        if self.error is not None:
            raise self.error
        proc = FakeProcess(1000 + len(self.processes), self.script, self.exit_result)
        self.processes.append(proc)
        return proc


class FakeRunner:
    """Stands in for AssistantRunner."""

    def __init__(self, events=None, error: Optional[Exception] = None, active=()):
        self.events = list(events or [])
        self.error = error
        self.active = set(active)
        self.calls: List[tuple] = []
        self.aborted: List[str] = []

    async def spawn(self, command, options, send):
        self.calls.append((command, options))
        if self.error is not None:
            raise self.error
        for event in self.events:
            await send(event)
        return 0

    async def abort(self, session_id):
        self.aborted.append(session_id)
        if session_id in self.active:
            self.active.discard(session_id)
            return True
        return False

    async def shutdown(self):
        pass


def make_config(tmp_path, **overrides) -> GatewayConfig:
    values = dict(
        session_secret=SECRET,
        app_password=PASSWORD,
        projects_dir=str(tmp_path / "projects"),
        watch_projects=False,
        assistant_command="claude",
    )
    values.update(overrides)
    return GatewayConfig(**values)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def app(tmp_path, backend, runner):
    return create_app(make_config(tmp_path), backend=backend, runner=runner)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_client(client):
    resp = client.post("/api/login", json={"password": PASSWORD})
    assert resp.status_code == 200
    return client
