import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional

from haven_monitor.local.supervisor import process_utils
from haven_monitor.local.supervisor.classifier import LEVEL_INFO, LEVEL_WARN

if TYPE_CHECKING:
    from .supervisor import ProcessSupervisor

log = logging.getLogger(__name__)


def remove_lock_files(db_dir: Path, partitions: Iterable[str], lock_name: str) -> List[Path]:
    """
    Deletes the lock marker of each named database partition.

    A missing lock file is not an error.

    :param db_dir: The directory holding one subdirectory per partition.
    :param partitions: The partition names (e.g. 'inbox', 'outbox').
    :param lock_name: The marker file name inside each partition.
    :return: The lock files that were actually removed.
    """
    removed: List[Path] = []
    for name in partitions:
        lock_file = db_dir / name / lock_name
        try:
            lock_file.unlink()
            removed.append(lock_file)
        except FileNotFoundError:
            continue
        except OSError as e:
            log.warning(f"Could not delete lock file '{lock_file}': {e}")
    return removed


def _clear_locks(supervisor: "ProcessSupervisor", completion: Optional[Callable[[], None]]) -> None:
    """Runs in a background thread. Best-effort; every outcome ends in a log entry."""
    for lock_file in remove_lock_files(supervisor.db_dir, supervisor.lock_partitions, supervisor.lock_file_name):
        supervisor.record(LEVEL_INFO, f"Deleted lock file: {lock_file.name} in {lock_file.parent.name}")

    try:
        killed = process_utils.kill_processes_by_name(supervisor.worker_name, supervisor.stray_kill_timeout)
        if killed:
            supervisor.record(LEVEL_INFO, f"Killed {killed} stray {supervisor.worker_name} process(es)")
    except Exception as e:
        log.error(f"Stray worker cleanup failed: {e}", exc_info=True)
        supervisor.record(LEVEL_WARN, f"Could not kill stray {supervisor.worker_name} processes: {e}")

    supervisor.mark_unlocked()
    supervisor.record(LEVEL_INFO, "Database locks cleared. You can now try starting the relay again.")
    if completion:
        completion()


def clear_locks_in_background(
    supervisor: "ProcessSupervisor",
    completion: Optional[Callable[[], None]] = None,
) -> threading.Thread:
    """
    Starts the lock remediation on a daemon thread and returns immediately.

    :param supervisor: The supervisor whose worker holds the locks.
    :param completion: Called from the background thread once done.
    """
    thread = threading.Thread(
        target=_clear_locks,
        args=(supervisor, completion),
        daemon=True,
        name="ClearLocksThread",
    )
    thread.start()
    return thread
