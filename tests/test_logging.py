"""Tests for haven_monitor.log: console formatting and the Loki handler."""
import logging
import threading

from haven_monitor.log.handler import LokiHandler
from haven_monitor.log.setup import MainFormatter, SubprocessLogFilter

from conftest import wait_for


def make_record(name: str, msg: str, level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, msg, None, None)


def test_worker_lines_are_filtered_and_formatted_raw() -> None:
    record = make_record("proc.haven", "Starting eventstore")

    assert not SubprocessLogFilter().filter(record)
    assert SubprocessLogFilter().filter(make_record("haven_monitor.main", "hi"))
    assert MainFormatter().format(record) == "[haven] Starting eventstore"


def test_monitor_lines_use_the_standard_format() -> None:
    text = MainFormatter().format(make_record("haven_monitor.stream", "subscribed", logging.WARNING))
    assert "WARNING" in text and "[haven_monitor.stream] - subscribed" in text


class _Response:
    status_code = 204
    text = ""


def test_loki_handler_batches_and_labels_entries(monkeypatch) -> None:
    posted = []

    def fake_post(url, json=None, timeout=None):
        posted.append((url, json))
        return _Response()

    handler = LokiHandler("http://loki.example.com/", org_id="tenant", flush_interval=60)
    monkeypatch.setattr(handler.session, "post", fake_post)
    try:
        handler.emit(make_record("proc.haven", "new note"))
        handler.emit(make_record("proc.haven", "new zap"))
        handler.emit(make_record("haven_monitor.main", "console ready"))
        handler.flush()
    finally:
        handler.close()

    assert len(posted) == 1
    url, payload = posted[0]
    assert url == "http://loki.example.com/loki/api/v1/push"
    assert handler.session.headers["X-Scope-OrgID"] == "tenant"
    jobs = [stream["stream"]["job"] for stream in payload["streams"]]
    assert jobs == ["haven-worker", "haven-monitor"]
    worker_lines = [value[1] for value in payload["streams"][0]["values"]]
    assert worker_lines == ["new note", "new zap"]


def test_full_buffer_is_pushed_by_the_flush_thread(monkeypatch) -> None:
    senders = []

    def fake_post(url, json=None, timeout=None):
        senders.append(threading.current_thread().name)
        return _Response()

    handler = LokiHandler("http://loki.example.com", flush_interval=60)
    handler.batch_size = 2
    monkeypatch.setattr(handler.session, "post", fake_post)
    try:
        handler.emit(make_record("proc.haven", "first"))
        handler.emit(make_record("proc.haven", "second"))
        # emit only signals; the caller never does the HTTP push
        assert threading.current_thread().name not in senders
        assert wait_for(lambda: senders == ["LokiFlushThread"])
        assert handler.pending == []
    finally:
        handler.close()
