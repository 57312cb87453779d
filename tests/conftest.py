"""Pytest configuration and shared fakes for the supervisor tests.

The project root is put on ``sys.path`` so ``import haven_monitor`` works when
tests are run from the repository root or other locations. The fakes expose
the small part of the ``subprocess.Popen`` surface the supervisor uses.
"""

import os
import sys
import time
import queue
import threading
from pathlib import Path
from typing import Callable, List

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from haven_monitor.local.relay_config import RelayConfig  # noqa: E402
from haven_monitor.local.supervisor import ProcessSupervisor  # noqa: E402


class _FakePipe:
    def __init__(self) -> None:
        self._lines: "queue.Queue[bytes]" = queue.Queue()
        self.closed = False

    def readline(self) -> bytes:
        return self._lines.get()

    def feed(self, data: bytes) -> None:
        self._lines.put(data)

    def close(self) -> None:
        self.closed = True


class FakeWorker:
    """A scripted stand-in for a Popen handle. Lines are fed with `emit`."""

    _next_pid = 40000

    def __init__(self, args: List[str], cwd: Path) -> None:
        FakeWorker._next_pid += 1
        self.pid = FakeWorker._next_pid
        self.args = list(args)
        self.cwd = cwd
        self.stdout = _FakePipe()
        self.returncode = None
        self.terminate_calls = 0
        self._exited = threading.Event()

    def emit(self, line: str) -> None:
        self.stdout.feed(line.encode("utf-8") + b"\n")

    def finish(self, code: int = 0) -> None:
        if self._exited.is_set():
            return
        self.returncode = code
        self._exited.set()
        self.stdout.feed(b"")

    def terminate(self) -> None:
        self.terminate_calls += 1
        self.finish(-15)

    def kill(self) -> None:
        self.finish(-9)

    def poll(self):
        return self.returncode

    def wait(self, timeout=None) -> int:
        self._exited.wait(timeout)
        return self.returncode


class RecordingLauncher:
    """Launcher that hands out FakeWorkers and remembers every launch."""

    def __init__(self) -> None:
        self.workers: List[FakeWorker] = []

    def __call__(self, args: List[str], cwd: Path) -> FakeWorker:
        worker = FakeWorker(args, cwd)
        self.workers.append(worker)
        return worker

    @property
    def last(self) -> FakeWorker:
        return self.workers[-1]


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Polls `predicate` until it holds or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def emit_and_wait(supervisor: ProcessSupervisor, worker: FakeWorker, line: str) -> None:
    """Feeds one line and waits until the supervisor has logged it."""
    before = supervisor.logs(1)
    last_id = before[0].id if before else None

    def logged() -> bool:
        latest = supervisor.logs(1)
        return bool(latest) and latest[0].id != last_id and latest[0].message == line

    worker.emit(line)
    assert wait_for(logged)


@pytest.fixture
def worker_executable(tmp_path: Path) -> Path:
    exe = tmp_path / "bin" / "haven"
    exe.parent.mkdir(parents=True)
    exe.write_text("#!/bin/sh\n")
    os.chmod(exe, 0o755)
    return exe


@pytest.fixture
def launcher() -> RecordingLauncher:
    return RecordingLauncher()


@pytest.fixture
def relay_config() -> RelayConfig:
    return RelayConfig(
        owner_npub="npub1testowner",
        relay_url="relay.example.com",
        import_start_date="2023-01-01",
        import_seed_relays=["wss://seed.example.com"],
        blastr_relays=["wss://blast-a.example.com", "wss://blast-b.example.com"],
    )


@pytest.fixture
def supervisor(tmp_path: Path, launcher: RecordingLauncher, worker_executable: Path):
    sup = ProcessSupervisor(
        data_dir=tmp_path / "relay",
        launcher=launcher,
        executable_candidates=[worker_executable],
        stop_grace=0,
        import_restart_delay=0,
        templates_source=tmp_path / "templates",
    )
    yield sup
    for worker in launcher.workers:
        worker.finish(0)
    sup.close()
