"""Shared fixtures: fake processes and clients for registry/router tests."""

from __future__ import annotations

import anyio
import pytest

from srbmux.config import SorbetConfig
from srbmux.sessions import ServerSession
from srbmux.workspace import RootFolder, Workspace


class FakeProcess:
    """Stands in for ProcessHandle where no OS process is needed."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.exit_status = None
        self.killed = False
        self.failed = False

    def kill(self) -> None:
        self.killed = True


class FakeClient:
    def __init__(self, root: RootFolder, stop_delay: float = 0.0) -> None:
        self.root = root
        self.stop_delay = stop_delay
        self.started = False
        self.stopped = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        if self.stop_delay:
            await anyio.sleep(self.stop_delay)
        self.stopped = True

    def file_changed(self, event) -> None:
        del event


class FakeStarter:
    """Session starter that records launches instead of spawning processes."""

    def __init__(self) -> None:
        self.launched: list[str] = []
        self.clients: dict[str, FakeClient] = {}
        self.stop_delays: dict[str, float] = {}
        self.gate: anyio.Event | None = None
        self.fail_for: set[str] = set()

    async def __call__(self, session: ServerSession):
        key = session.root.key
        self.launched.append(key)
        if self.gate is not None:
            await self.gate.wait()
        if key in self.fail_for:
            raise RuntimeError(f"cannot start {key}")
        client = FakeClient(session.root, self.stop_delays.get(key, 0.0))
        await client.start()
        self.clients[key] = client
        return FakeProcess(len(self.launched)), client


@pytest.fixture
def starter() -> FakeStarter:
    return FakeStarter()


@pytest.fixture
def nested_workspace() -> Workspace:
    """Roots /repo and /repo/sub plus an unrelated /other."""
    return Workspace(
        [
            RootFolder("file:///repo/sub", "sub", 1),
            RootFolder("file:///repo", "repo", 0),
            RootFolder("file:///other/", "other", 2),
        ]
    )


@pytest.fixture
def test_config() -> SorbetConfig:
    return SorbetConfig(watch_files=False, stop_timeout=2.0)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep developer SRBMUX_* settings out of the tests."""
    for name in (
        "SRBMUX_COMMAND_PATH",
        "SRBMUX_USE_BUNDLER",
        "SRBMUX_USE_WATCHMAN",
        "SRBMUX_BUNDLER_PATH",
        "SRBMUX_WATCH_FILES",
        "SRBMUX_STOP_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
