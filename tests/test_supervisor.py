"""Tests for haven_monitor.local.supervisor.ProcessSupervisor.

The worker is replaced by FakeWorker handles from conftest; every assertion
that depends on the dispatcher thread waits with `wait_for`.
"""
import os
import json
import sys
from pathlib import Path

import pytest

from haven_monitor.local.supervisor import ProcessSupervisor
from haven_monitor.local.supervisor.classifier import LEVEL_ERROR, LEVEL_INFO, LEVEL_WARN

from conftest import emit_and_wait, wait_for


def test_start_launches_worker_in_data_dir(supervisor, launcher, relay_config, worker_executable) -> None:
    supervisor.start(relay_config)

    assert len(launcher.workers) == 1
    worker = launcher.last
    assert worker.args == [str(worker_executable)]
    assert worker.cwd == supervisor.data_dir

    state = supervisor.state
    assert state.running and state.booting
    assert state.boot_status == "Starting system..."
    assert not state.importing
    assert state.started_at is not None
    assert any(e.message == f"Starting relay from: {worker_executable}" for e in supervisor.logs())


def test_start_writes_relay_lists(supervisor, relay_config) -> None:
    supervisor.start(relay_config)

    blastr = json.loads((supervisor.data_dir / relay_config.blastr_relays_file).read_text())
    seeds = json.loads((supervisor.data_dir / relay_config.import_seed_relays_file).read_text())
    assert blastr == relay_config.blastr_relays
    assert seeds == relay_config.import_seed_relays
    assert (supervisor.data_dir / "blossom").is_dir()
    messages = [e.message for e in supervisor.logs()]
    assert "Wrote 2 blastr relays to relays_blastr.json" in messages


def test_start_is_ignored_while_running(supervisor, launcher, relay_config) -> None:
    supervisor.start(relay_config)
    supervisor.start(relay_config)
    assert len(launcher.workers) == 1


def test_boot_phases_until_inbox_subscription(supervisor, launcher, relay_config) -> None:
    supervisor.start(relay_config)
    worker = launcher.last

    emit_and_wait(supervisor, worker, "Starting eventstore")
    assert supervisor.state.boot_status == "Starting eventstore..."

    emit_and_wait(supervisor, worker, "Subscribing to inbox")
    state = supervisor.state
    assert state.running
    assert not state.booting
    assert state.boot_status == ""


def test_lock_line_sets_locked_and_logs_error(supervisor, launcher, relay_config) -> None:
    supervisor.start(relay_config)
    line = "ERROR Cannot acquire directory lock on \"db/inbox\""

    emit_and_wait(supervisor, launcher.last, line)

    assert supervisor.state.locked
    entry = supervisor.logs(1)[0]
    assert entry.message == line
    assert entry.level == LEVEL_ERROR


def test_event_and_connection_counters(supervisor, launcher, relay_config) -> None:
    supervisor.start(relay_config)
    worker = launcher.last

    emit_and_wait(supervisor, worker, "new note from npub1abc")
    emit_and_wait(supervisor, worker, "new reaction from npub1abc")
    emit_and_wait(supervisor, worker, "accepted connection from 10.0.0.2")
    emit_and_wait(supervisor, worker, "connection closed by client")
    emit_and_wait(supervisor, worker, "connection closed by client")

    state = supervisor.state
    assert state.events_stored == 2
    assert state.active_connections == 0


def test_log_levels_follow_line_content(supervisor, launcher, relay_config) -> None:
    supervisor.start(relay_config)
    worker = launcher.last

    emit_and_wait(supervisor, worker, "WARN slow disk")
    emit_and_wait(supervisor, worker, "plain line")

    levels = [e.level for e in supervisor.logs(2)]
    assert levels == [LEVEL_WARN, LEVEL_INFO]


def test_exit_clears_running_state_and_logs_code(supervisor, launcher, relay_config) -> None:
    supervisor.start(relay_config)
    worker = launcher.last
    emit_and_wait(supervisor, worker, "accepted connection from 10.0.0.2")

    worker.finish(2)

    assert wait_for(lambda: not supervisor.state.running)
    state = supervisor.state
    assert not state.booting
    assert state.active_connections == 0
    assert any(e.message == "Relay process terminated with code: 2" for e in supervisor.logs())


def test_stop_is_idempotent(supervisor, launcher, relay_config) -> None:
    supervisor.start(relay_config)
    worker = launcher.last
    completions = []

    supervisor.stop(completion=lambda: completions.append("first"))
    assert wait_for(lambda: not supervisor.state.running)
    assert wait_for(lambda: completions == ["first"])

    supervisor.stop(completion=lambda: completions.append("second"))
    assert completions == ["first", "second"]
    assert worker.terminate_calls == 1
    exits = [e for e in supervisor.logs() if "process terminated" in e.message]
    assert len(exits) == 1


def test_stop_when_idle_completes_immediately(supervisor) -> None:
    completions = []
    supervisor.stop(completion=lambda: completions.append(True))
    assert completions == [True]


def test_stop_skips_a_worker_that_already_exited(supervisor, launcher, relay_config) -> None:
    supervisor.start(relay_config)
    worker = launcher.last
    # Exited but not yet reaped by the reader thread
    worker.returncode = 0
    completions = []

    supervisor.stop(completion=lambda: completions.append(True))

    assert completions == [True]
    assert worker.terminate_calls == 0


def test_default_db_dir_follows_settings(monkeypatch, tmp_path, launcher) -> None:
    from haven_monitor.local.config import effective_settings as config

    monkeypatch.setattr(config, "RELAY_DATA_DIR", tmp_path / "relay")
    monkeypatch.setattr(config, "RELAY_DB_DIR", tmp_path / "elsewhere" / "db")
    sup = ProcessSupervisor(launcher=launcher)
    try:
        assert sup.data_dir == tmp_path / "relay"
        assert sup.db_dir == tmp_path / "elsewhere" / "db"
    finally:
        sup.close()


def test_missing_binary_is_reported(tmp_path, launcher, relay_config) -> None:
    missing = tmp_path / "nowhere" / "haven"
    sup = ProcessSupervisor(
        data_dir=tmp_path / "relay",
        launcher=launcher,
        executable_candidates=[missing],
        templates_source=tmp_path / "templates",
    )
    try:
        sup.start(relay_config)
        assert not sup.state.running
        assert launcher.workers == []
        entry = sup.logs(1)[0]
        assert entry.level == LEVEL_ERROR
        assert entry.message.startswith("haven binary not found")
    finally:
        sup.close()


def test_launch_error_is_reported(tmp_path, worker_executable, relay_config) -> None:
    def failing_launcher(args, cwd):
        raise PermissionError("exec format error")

    sup = ProcessSupervisor(
        data_dir=tmp_path / "relay",
        launcher=failing_launcher,
        executable_candidates=[worker_executable],
        templates_source=tmp_path / "templates",
    )
    try:
        sup.start(relay_config)
        assert not sup.state.running
        assert sup.state.started_at is None
        entry = sup.logs(1)[0]
        assert entry.level == LEVEL_ERROR
        assert "exec format error" in entry.message
    finally:
        sup.close()


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")
def test_executable_permissions_are_fixed(supervisor, relay_config, worker_executable) -> None:
    os.chmod(worker_executable, 0o644)

    supervisor.start(relay_config)

    assert worker_executable.stat().st_mode & 0o777 == 0o755
    assert any(e.message == "Fixed permissions for binary" for e in supervisor.logs())


def test_log_retention_is_capped(supervisor, launcher, relay_config) -> None:
    supervisor.logs_buffer._entries = type(supervisor.logs_buffer._entries)(maxlen=5)
    supervisor.start(relay_config)
    worker = launcher.last
    for i in range(8):
        emit_and_wait(supervisor, worker, f"line {i}")

    messages = [e.message for e in supervisor.logs()]
    assert messages == [f"line {i}" for i in range(3, 8)]


def test_templates_are_copied_on_start(supervisor, relay_config, tmp_path: Path) -> None:
    source = tmp_path / "templates"
    source.mkdir()
    (source / "index.html").write_text("<html></html>")

    supervisor.start(relay_config)

    assert (supervisor.data_dir / "templates" / "index.html").read_text() == "<html></html>"
