import queue
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from haven_monitor.local.config import effective_settings as config
from haven_monitor.local.relay_config import RelayConfig
from haven_monitor.local.supervisor import classifier, importer, process_utils, shutdown, workspace
from haven_monitor.local.supervisor.classifier import LEVEL_ERROR, LEVEL_INFO, LEVEL_WARN
from haven_monitor.local.supervisor.state import ImportRun, LogBuffer, LogEntry, ProcessState

log = logging.getLogger(__name__)

_STOP_DISPATCHER = object()


class ProcessSupervisor:
    """
    Runs the relay worker and turns its output into operational state.

    Reader threads push output lines and the exit code onto one queue; a single
    dispatcher thread drains it. Every mutation of the state, whether from the
    dispatcher, a caller or a timer, happens under `self.lock`, so readers get
    consistent snapshots through `state` and `logs`.
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        launcher: Optional[Callable[[List[str], Path], Any]] = None,
        executable_candidates: Optional[Sequence[Path]] = None,
        clock: Callable[[], datetime] = datetime.now,
        stop_grace: Optional[float] = None,
        import_restart_delay: Optional[float] = None,
        templates_source: Optional[Path] = None,
    ) -> None:
        """
        Initializes the supervisor state and starts its dispatcher thread.

        :param data_dir: The worker's working directory. Defaults to RELAY_DATA_DIR.
        :param launcher: Callable(args, cwd) returning a Popen-like handle.
        :param executable_candidates: Worker locations to try, in order.
        :param clock: Returns "now" for the import progress estimate.
        :param stop_grace: Seconds before `stop()` reports completion.
        :param import_restart_delay: Seconds between a successful import and the relay restart.
        :param templates_source: Directory copied into the data directory on every start.
        """
        self.data_dir = Path(data_dir or config.RELAY_DATA_DIR)
        self.db_dir = Path(config.RELAY_DB_DIR) if data_dir is None else self.data_dir / "db"
        self.templates_source = Path(templates_source or config.TEMPLATES_SOURCE_DIR)
        self.launcher = launcher or process_utils.launch_worker
        self.executable_candidates = list(
            executable_candidates or (config.BUNDLED_WORKER_PATH, config.FALLBACK_WORKER_PATH)
        )
        self.clock = clock
        self.stop_grace = config.STOP_GRACE_SECONDS if stop_grace is None else stop_grace
        self.import_restart_delay = (
            config.IMPORT_RESTART_DELAY_SECONDS if import_restart_delay is None else import_restart_delay
        )
        self.worker_name: str = config.WORKER_NAME
        self.lock_partitions = tuple(config.LOCK_PARTITIONS)
        self.lock_file_name: str = config.LOCK_FILE_NAME
        self.stray_kill_timeout: float = config.STRAY_KILL_TIMEOUT

        self.lock = threading.RLock()
        self.live_state = ProcessState()
        self.logs_buffer = LogBuffer(config.LOG_RETENTION)
        self.import_run: Optional[ImportRun] = None
        self.restart_config: Optional[RelayConfig] = None
        self.import_mode = False

        self._process: Any = None
        self._output_attached = False
        self._proc_logger = logging.getLogger(f"proc.{self.worker_name}")
        self._events: "queue.Queue[Any]" = queue.Queue()
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, daemon=True, name="SupervisorDispatchThread"
        )
        self._dispatcher.start()

    #* --- Public read API ---
    @property
    def state(self) -> ProcessState:
        """A consistent copy of the current state."""
        with self.lock:
            return self.live_state.snapshot()

    def logs(self, last: Optional[int] = None) -> List[LogEntry]:
        """The retained log entries, oldest first."""
        return self.logs_buffer.snapshot(last)

    @property
    def pending_config(self) -> Optional[RelayConfig]:
        with self.lock:
            return self.import_run.pending_config if self.import_run else None

    #* --- Lifecycle ---
    def start(self, relay_config: RelayConfig) -> None:
        """
        Starts the long-running worker.

        Does nothing if a worker is already running. If an import is waiting,
        that import is launched instead.

        :param relay_config: The configuration snapshot to run with.
        """
        with self.lock:
            if self.live_state.running:
                log.debug("Start requested while the worker is running. Ignoring.")
                return
            if self.import_run is not None and self.import_run.pending_config is not None:
                importer.begin_import(self, self.import_run.pending_config)
                return
            self.import_run = None

            notes = workspace.prepare_run_files(relay_config, self.data_dir, self.templates_source)
            for level, message in notes:
                self.record_locked(level, message)

            if not self.launch(import_mode=False):
                return

            state = self.live_state
            state.booting = True
            state.boot_status = "Starting system..."
            state.importing = False
            state.locked = False
            state.started_at = self.clock()

    def stop(self, completion: Optional[Callable[[], None]] = None) -> None:
        """
        Requests graceful termination of the worker without waiting for it.

        `completion` runs after a short grace delay, independently of the exit
        handler; either may run first. Stopping an idle supervisor calls
        `completion` immediately.
        """
        with self.lock:
            if not self.live_state.running or not process_utils.is_alive(self._process):
                running = False
            else:
                running = True
                self._output_attached = False
                self.live_state.booting = False
                self.live_state.boot_status = ""
                process_utils.request_termination(self._process)
        if not running:
            if completion:
                completion()
            return
        if completion:
            self.schedule(self.stop_grace, completion)

    def import_notes(self, relay_config: RelayConfig) -> None:
        """Runs a one-shot import, stopping the relay first if it is running."""
        with self.lock:
            importer.request_import(self, relay_config)

    def cancel_import(self) -> None:
        """Aborts the import and clears any pending restart."""
        with self.lock:
            importer.cancel_import(self)

    def dismiss_import(self) -> None:
        """Closes the import and restarts the relay if a configuration is pending."""
        with self.lock:
            importer.dismiss_import(self)

    def clear_locks(self, completion: Optional[Callable[[], None]] = None) -> threading.Thread:
        """Removes database lock markers and stray workers on a background thread."""
        return shutdown.clear_locks_in_background(self, completion)

    def refresh_metrics(self) -> ProcessState:
        """Samples memory and CPU of the live worker via psutil and returns a snapshot."""
        with self.lock:
            process = self._process if self.live_state.running else None
        memory_mb, cpu = 0.0, 0.0
        if process is not None:
            try:
                memory_mb, cpu = process_utils.sample_usage(process.pid)
            except Exception as e:
                log.debug(f"Could not sample worker usage: {e}")
        with self.lock:
            self.live_state.memory_mb = memory_mb
            self.live_state.cpu_percent = cpu
            return self.live_state.snapshot()

    def close(self) -> None:
        """Stops the worker and the dispatcher thread."""
        self.stop()
        self._events.put(_STOP_DISPATCHER)
        self._dispatcher.join(timeout=5)

    #* --- Helpers used by the import flow and the lock cleanup ---
    def record(self, level: str, message: str) -> None:
        with self.lock:
            self.record_locked(level, message)

    def record_locked(self, level: str, message: str) -> None:
        entry = LogEntry(timestamp=datetime.now(), level=level, message=message)
        self.logs_buffer.append(entry)
        self._proc_logger.log(entry.logging_level, message)

    def mark_unlocked(self) -> None:
        with self.lock:
            self.live_state.locked = False

    def ensure_import_files(self, relay_config: RelayConfig):
        return workspace.ensure_import_files(relay_config, self.data_dir)

    def schedule(self, delay: float, fn: Callable[..., None], *args: Any) -> threading.Timer:
        timer = threading.Timer(delay, fn, args=args)
        timer.daemon = True
        timer.start()
        return timer

    def terminate_current(self) -> None:
        if self._process is not None:
            process_utils.request_termination(self._process)

    def launch(self, import_mode: bool) -> bool:
        """
        Locates and launches the worker, wiring its output to the dispatcher.

        :param import_mode: Adds the one-shot import flag when True.
        :return: True if a process was started.
        """
        executable = process_utils.locate_worker_executable(self.executable_candidates)
        if executable is None:
            tried = ", ".join(str(p) for p in self.executable_candidates)
            self.record_locked(LEVEL_ERROR, f"{self.worker_name} binary not found (tried: {tried})")
            return False

        try:
            if process_utils.ensure_executable_mode(executable, config.WORKER_FILE_MODE):
                self.record_locked(LEVEL_INFO, "Fixed permissions for binary")
        except OSError as e:
            self.record_locked(LEVEL_WARN, f"Could not set permissions: {e}")

        args = [str(executable)]
        if import_mode:
            args.append(config.IMPORT_FLAG)
        self.record_locked(LEVEL_INFO, f"Starting relay from: {executable}")

        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            process = self.launcher(args, self.data_dir)
        except OSError as e:
            log.error(f"Failed to launch worker '{executable}': {e}", exc_info=True)
            self.record_locked(LEVEL_ERROR, f"Failed to launch {executable}: {e}")
            return False

        self._process = process
        self._output_attached = True
        self.import_mode = import_mode
        self.live_state.running = True
        process_utils.start_output_reader(process, self._events.put)
        return True

    #* --- Dispatcher ---
    def _dispatch_loop(self) -> None:
        while True:
            message = self._events.get()
            try:
                if message is _STOP_DISPATCHER:
                    return
                kind, process, payload = message
                if kind == process_utils.MSG_LINE:
                    self._handle_line(process, payload)
                elif kind == process_utils.MSG_EXIT:
                    self._handle_exit(process, payload)
            except Exception as e:
                log.error(f"Error while processing worker event: {e}", exc_info=True)
            finally:
                self._events.task_done()

    def _handle_line(self, process: Any, line: str) -> None:
        with self.lock:
            if process is not self._process or not self._output_attached:
                return
            state = self.live_state
            for signal in classifier.classify(line, importing=state.importing, booting=state.booting):
                self._apply_signal(signal)
            self.record_locked(classifier.classify_level(line), line)

    def _apply_signal(self, signal: classifier.Signal) -> None:
        state = self.live_state
        if importer.apply_import_signal(self, signal):
            return
        if isinstance(signal, classifier.BootPhase):
            state.boot_status = signal.description
        elif isinstance(signal, classifier.InboxReady):
            state.booting = False
            state.boot_status = ""
        elif isinstance(signal, classifier.EventCountDelta):
            state.events_stored += max(0, signal.n)
        elif isinstance(signal, classifier.ConnectionDelta):
            state.active_connections = max(0, state.active_connections + signal.delta)
        elif isinstance(signal, classifier.LockDetected):
            state.locked = True

    def _handle_exit(self, process: Any, code: int) -> None:
        with self.lock:
            if process is not self._process:
                log.debug(f"Ignoring exit of superseded worker (code {code}).")
                return
            self._process = None
            self._output_attached = False
            was_import = self.import_mode
            self.import_mode = False

            kind = "Import" if was_import else "Relay"
            self.record_locked(LEVEL_WARN, f"{kind} process terminated with code: {code}")
            state = self.live_state
            state.running = False
            state.booting = False
            state.boot_status = ""
            state.active_connections = 0
            state.memory_mb = 0.0
            state.cpu_percent = 0.0

            if was_import:
                importer.handle_import_exit(self, code)
            else:
                state.importing = False
                if self.import_run is not None and self.import_run.pending_config is not None:
                    importer.begin_import(self, self.import_run.pending_config)

            if self.restart_config is not None and not state.running:
                restart_config, self.restart_config = self.restart_config, None
                self.start(restart_config)
