"""Tests for the operator console command dispatch."""
from haven_monitor.local.console import execute_command
from haven_monitor.local.console import handler


def test_exit_ends_the_console() -> None:
    assert execute_command("exit", []) is True


def test_unknown_command_keeps_console_open() -> None:
    assert execute_command("frobnicate", []) is False


def test_help_lists_commands(capsys) -> None:
    execute_command("help", [])
    out = capsys.readouterr().out
    for command in ("start", "import", "cancel-import", "dismiss-import", "clear-locks", "watch"):
        assert command in out


def test_logs_rejects_non_numeric_count(capsys) -> None:
    execute_command("logs", ["many"])
    assert "Usage: logs [count]" in capsys.readouterr().out


def test_config_set_rejects_unmodifiable_key(capsys) -> None:
    execute_command("config", ["set", "WORKER_NAME", "other"])
    assert "not a modifiable setting" in capsys.readouterr().out


def test_status_uses_the_console_supervisor(monkeypatch, supervisor, capsys) -> None:
    monkeypatch.setattr(handler, "_supervisor", supervisor)
    execute_command("status", [])
    out = capsys.readouterr().out
    assert "STOPPED" in out
    assert "Events      : 0" in out
