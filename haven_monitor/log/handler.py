import os
import sys
import socket
import logging
import threading
import requests
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from haven_monitor.local.config import effective_settings as config

# (labels, timestamp in ns, line)
_Entry = Tuple[Tuple[Tuple[str, str], ...], str, str]


class LokiHandler(logging.Handler):
    """
    Ships monitor and worker logs to a Grafana Loki instance.

    Records are buffered and pushed in batches from a background thread.
    Worker output (the `proc.<worker>` loggers) is labelled `job=haven-worker`
    and sent as the raw line; everything else is `job=haven-monitor`.
    Entries sharing a label set are pushed as one Loki stream.
    """
    def __init__(self, url: str, org_id: Optional[str] = None, flush_interval: Optional[float] = None):
        """
        :param url: The base URL of the Loki instance.
        :param org_id: The tenant ID sent as 'X-Scope-OrgID'.
        :param flush_interval: Seconds between background pushes. Defaults to LOG_BUFFER_FLUSH_INTERVAL.
        """
        super().__init__()
        self.url = f"{url.rstrip('/')}/loki/api/v1/push"
        self.session = requests.Session()
        self.session.headers['Content-Type'] = 'application/json'
        if org_id:
            self.session.headers['X-Scope-OrgID'] = org_id

        self.pending: List[_Entry] = []
        self.pending_lock = threading.Lock()
        self.flush_interval = config.LOG_BUFFER_FLUSH_INTERVAL if flush_interval is None else flush_interval
        self.batch_size = config.LOG_BUFFER_SIZE
        self.hostname = os.getenv('HOSTNAME') or socket.gethostname()

        self.stop_event = threading.Event()
        self.wake_event = threading.Event()
        self.flush_thread = threading.Thread(target=self._flush_loop, daemon=True, name="LokiFlushThread")
        self.flush_thread.start()

    def _flush_loop(self) -> None:
        while not self.stop_event.is_set():
            self.wake_event.wait(self.flush_interval)
            self.wake_event.clear()
            self.flush()
        self.flush()

    def labels_for(self, record: logging.LogRecord) -> Tuple[Tuple[str, str], ...]:
        if record.name.startswith('proc.'):
            job, source = "haven-worker", record.name.split('.', 1)[-1]
        else:
            job, source = "haven-monitor", record.name
        return (
            ("job", job),
            ("level", record.levelname.lower()),
            ("hostname", self.hostname),
            ("logger", source),
        )

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = record.getMessage() if record.name.startswith('proc.') else self.format(record)
            entry = (self.labels_for(record), str(int(record.created * 1e9)), line)
            with self.pending_lock:
                self.pending.append(entry)
                full = len(self.pending) >= self.batch_size
            # Pushing is left to the flush thread; emit runs under callers' locks
            if full:
                self.wake_event.set()
        except Exception:
            self.handleError(record)

    @staticmethod
    def build_streams(entries: List[_Entry]) -> List[Dict[str, object]]:
        """Groups entries by label set, keeping first-seen order of streams and entries."""
        grouped: "OrderedDict[Tuple[Tuple[str, str], ...], List[List[str]]]" = OrderedDict()
        for labels, ts, line in entries:
            grouped.setdefault(labels, []).append([ts, line])
        return [{"stream": dict(labels), "values": values} for labels, values in grouped.items()]

    def flush(self) -> None:
        """Pushes everything buffered so far; the HTTP call runs without holding the lock."""
        with self.pending_lock:
            if not self.pending:
                return
            batch, self.pending = self.pending, []

        try:
            response = self.session.post(self.url, json={"streams": self.build_streams(batch)}, timeout=5)
            if response.status_code != 204:
                print(
                    f"ERROR: Loki rejected {len(batch)} entries: {response.status_code} - {response.text}",
                    file=sys.stderr,
                )
        except requests.RequestException as e:
            print(f"CRITICAL: Failed to send {len(batch)} logs to Loki: {e}", file=sys.stderr)

    def close(self) -> None:
        """Stops the flush thread after a final push."""
        self.stop_event.set()
        self.wake_event.set()
        if self.flush_thread.is_alive():
            self.flush_thread.join(timeout=self.flush_interval + 2)
        self.session.close()
        super().close()
