"""
The one-shot import flow of the supervisor.

Importing while the relay runs is a three step sequence: remember the request,
stop the relay, and launch the import from the relay's exit handler. A
successful import restarts the relay with the remembered configuration.

Progress is an estimate. Its checkpoints only need to keep their order
(connected < date scan < tagged import < tagged done < complete), and it never
moves backwards during a run; only `cancel_import` resets it.

All functions expect the caller to hold `supervisor.lock`.
"""
import logging
from datetime import date, datetime
from typing import TYPE_CHECKING, Optional

from haven_monitor.local.relay_config import RelayConfig
from haven_monitor.local.supervisor import classifier
from haven_monitor.local.supervisor.classifier import LEVEL_ERROR, LEVEL_INFO, LEVEL_WARN, Signal
from haven_monitor.local.supervisor.state import ImportRun

if TYPE_CHECKING:
    from .supervisor import ProcessSupervisor

log = logging.getLogger(__name__)

PROGRESS_CONNECTED = 0.1
PROGRESS_SCAN_END = 0.9
PROGRESS_EMPTY_STEP = 0.03
PROGRESS_EMPTY_CAP = 0.85
PROGRESS_TAGGED_STARTED = 0.85
PROGRESS_TAGGED_DONE = 0.95
PROGRESS_COMPLETE = 1.0

STATUS_STARTING = "Starting import..."
STATUS_COMPLETE = "Import Complete"
STATUS_RESTARTING = "Import Complete - Restarting"
STATUS_CANCELLED = "Import cancelled"


#* --- Progress Model ---
def parse_day(label: Optional[str]) -> Optional[date]:
    """Parses a 'YYYY-MM-DD' label, returning None for anything else."""
    if not label:
        return None
    try:
        return datetime.strptime(label.strip(), "%Y-%m-%d").date()
    except ValueError:
        return None

def estimate_progress(start: date, current: date, now: datetime) -> Optional[float]:
    """
    Linear estimate of how far a date scan has come, mapped into [0.1, 0.9].

    :param start: The import start date.
    :param current: The date the worker has reached.
    :param now: The wall-clock time the scan runs up to.
    :return: The estimate, or None if the scan window is empty.
    """
    start_dt = datetime.combine(start, datetime.min.time())
    total = (now - start_dt).total_seconds()
    if total <= 0:
        return None
    elapsed = (datetime.combine(current, datetime.min.time()) - start_dt).total_seconds()
    scaled = PROGRESS_CONNECTED + (elapsed / total) * (PROGRESS_SCAN_END - PROGRESS_CONNECTED)
    return min(max(scaled, PROGRESS_CONNECTED), PROGRESS_SCAN_END)

def _advance(supervisor: "ProcessSupervisor", value: float) -> None:
    state = supervisor.live_state
    state.import_progress = max(state.import_progress, min(value, PROGRESS_COMPLETE))

def _advance_to_date(supervisor: "ProcessSupervisor", label: Optional[str]) -> bool:
    current = parse_day(label)
    run = supervisor.import_run
    if current is None or run is None or run.start_date is None:
        return False
    estimate = estimate_progress(run.start_date, current, supervisor.clock())
    if estimate is None:
        return False
    _advance(supervisor, estimate)
    return True


#* --- Signals ---
def apply_import_signal(supervisor: "ProcessSupervisor", signal: Signal) -> bool:
    """
    Applies an import signal to the live state.

    :return: True if the signal belonged to the import flow.
    """
    state = supervisor.live_state

    if isinstance(signal, classifier.ImportConnected):
        _advance(supervisor, PROGRESS_CONNECTED)
        state.import_status = "Connected to relays..."
    elif isinstance(signal, classifier.ImportProgressHint):
        _advance_to_date(supervisor, signal.date_label)
    elif isinstance(signal, classifier.ImportRangeFound):
        if signal.from_label:
            state.import_status = f"Found notes from {signal.from_label}..."
        else:
            state.import_status = "Found notes..."
    elif isinstance(signal, classifier.ImportNoneFound):
        if signal.for_label:
            state.import_status = f"Checking {signal.for_label}... (No notes found)"
        if not _advance_to_date(supervisor, signal.date_label):
            state.import_progress = max(
                state.import_progress,
                min(state.import_progress + PROGRESS_EMPTY_STEP, PROGRESS_EMPTY_CAP),
            )
    elif isinstance(signal, classifier.ImportTaggedStarted):
        _advance(supervisor, PROGRESS_TAGGED_STARTED)
        state.import_status = "Importing tagged notes..."
    elif isinstance(signal, classifier.ImportTaggedDone):
        _advance(supervisor, PROGRESS_TAGGED_DONE)
        if signal.count is not None:
            state.import_status = f"Imported {signal.count} tagged notes"
        else:
            state.import_status = "Tagged notes imported"
    elif isinstance(signal, classifier.ImportComplete):
        _advance(supervisor, PROGRESS_COMPLETE)
        state.import_status = STATUS_COMPLETE
    else:
        return False
    return True


#* --- Flow ---
def request_import(supervisor: "ProcessSupervisor", relay_config: RelayConfig) -> None:
    """
    Entry point of `import_notes`.

    With a running worker the request is parked and the worker stopped; the
    exit handler launches the import. Otherwise the import starts right away.
    """
    if supervisor.live_state.running:
        supervisor.import_run = ImportRun(
            start_date=parse_day(relay_config.import_start_date),
            pending_config=relay_config,
        )
        supervisor.record_locked(LEVEL_INFO, "Stopping relay to run the import...")
        supervisor.stop()
        return
    begin_import(supervisor, relay_config)

def begin_import(supervisor: "ProcessSupervisor", relay_config: RelayConfig) -> None:
    """Bootstraps missing input files and launches the worker in import mode."""
    if supervisor.import_run is None:
        supervisor.import_run = ImportRun(start_date=parse_day(relay_config.import_start_date))

    for level, message in supervisor.ensure_import_files(relay_config):
        supervisor.record_locked(level, message)

    if not supervisor.launch(import_mode=True):
        # Nothing was started; drop the request so a later start() does not retry it.
        supervisor.import_run = None
        return

    state = supervisor.live_state
    state.booting = False
    state.boot_status = ""
    state.importing = True
    state.import_progress = 0.0
    state.import_status = STATUS_STARTING

def handle_import_exit(supervisor: "ProcessSupervisor", code: int) -> None:
    """Finishes the import flow once the import process has exited."""
    state = supervisor.live_state
    run = supervisor.import_run
    if run is None:
        # Cancelled or dismissed; the caller already reset the import state.
        state.importing = False
        return

    if code == 0:
        state.importing = False
        state.import_progress = PROGRESS_COMPLETE
        state.import_status = STATUS_RESTARTING
        supervisor.import_run = None
        if run.pending_config is not None:
            supervisor.schedule(supervisor.import_restart_delay, supervisor.start, run.pending_config)
        return

    # Keep the overlay up; the caller decides to retry, dismiss or cancel.
    state.importing = True
    state.import_status = f"Import Failed (code {code})"
    supervisor.record_locked(LEVEL_ERROR, f"Import failed with exit code {code}")

def cancel_import(supervisor: "ProcessSupervisor") -> None:
    """Stops the import without restarting the relay."""
    state = supervisor.live_state
    supervisor.import_run = None
    state.importing = False
    if not supervisor.live_state.running:
        return
    supervisor.terminate_current()
    state.import_progress = 0.0
    state.import_status = STATUS_CANCELLED
    supervisor.record_locked(LEVEL_WARN, "Import cancelled by user")

def dismiss_import(supervisor: "ProcessSupervisor") -> None:
    """Hides the import and restarts the relay if a configuration is still pending."""
    state = supervisor.live_state
    run = supervisor.import_run
    supervisor.import_run = None
    state.importing = False
    pending = run.pending_config if run is not None else None

    if state.running:
        supervisor.terminate_current()
        if pending is not None:
            supervisor.restart_config = pending
        return
    if pending is not None:
        supervisor.start(pending)
