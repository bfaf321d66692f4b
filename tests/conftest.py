from __future__ import annotations

import sys
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from specpilot.terminal.pty_backend import DataCallback, ExitCallback, PtyBackend
from specpilot.terminal.registry import SessionRegistry

_CRITICAL_TEST_FILES = {
    "test_completion_collector.py",
    "test_orchestrator.py",
    "test_spec_tasks.py",
}


@pytest.hookimpl(trylast=True)
def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    del config
    for item in items:
        path = Path(str(getattr(item, "path", item.fspath)))
        name = path.name

        if "integration" in path.parts:
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.slow)
            if sys.platform == "win32":
                item.add_marker(pytest.mark.skip(reason="POSIX pseudo-terminal required"))

        if name in _CRITICAL_TEST_FILES:
            item.add_marker(pytest.mark.critical_regression)


class FakePty:
    """In-memory stand-in for a spawned shell; tests push output with ``emit``."""

    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.writes: list[str] = []
        self.size: tuple[int, int] | None = None
        self.terminated = False
        self.alive = True
        self.fail_writes = False
        self.on_write: Callable[[str], None] | None = None
        self._on_data: DataCallback | None = None
        self._on_exit: ExitCallback | None = None

    def attach(self, on_data: DataCallback, on_exit: ExitCallback) -> None:
        self._on_data = on_data
        self._on_exit = on_exit

    def write(self, data: str) -> None:
        if self.fail_writes:
            raise OSError("input/output error")
        self.writes.append(data)
        if self.on_write is not None:
            self.on_write(data)

    def resize(self, cols: int, rows: int) -> None:
        self.size = (cols, rows)

    def terminate(self) -> None:
        self.terminated = True
        self.alive = False

    def isalive(self) -> bool:
        return self.alive

    def emit(self, chunk: str) -> None:
        assert self._on_data is not None
        self._on_data(chunk)

    def exit(self, code: int | None = 0) -> None:
        assert self._on_exit is not None
        self.alive = False
        self._on_exit(code)


class FakeSpawner:
    def __init__(self) -> None:
        self.calls: list[tuple[list[str], str, dict[str, str], int, int]] = []
        self.processes: list[FakePty] = []

    def __call__(self, command: list[str], cwd: str, env: dict[str, str], cols: int, rows: int) -> FakePty:
        self.calls.append((command, cwd, env, cols, rows))
        process = FakePty(pid=4242 + len(self.processes))
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakePty:
        return self.processes[-1]


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def registry(spawner: FakeSpawner) -> Iterator[SessionRegistry]:
    registry = SessionRegistry(PtyBackend(spawner, shell="/bin/sh"))
    yield registry
    registry.close_all()
