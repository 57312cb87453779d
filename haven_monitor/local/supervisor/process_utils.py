import os
import sys
import psutil
import logging
import threading
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

log = logging.getLogger(__name__)

# Messages posted by reader threads: (kind, process, payload)
MSG_LINE = "line"
MSG_EXIT = "exit"


#* --- Executable Lookup ---
def get_executable_path(base_path: Path) -> Path:
    """Returns the platform-specific full path for an executable."""
    return base_path.with_suffix(".exe") if sys.platform == "win32" else base_path

def locate_worker_executable(candidates: Iterable[Path]) -> Optional[Path]:
    """
    Returns the first existing executable among the candidates, in order.

    :param candidates: Base paths to try (bundled location first).
    :return: The resolved executable path, or None if none exists.
    """
    for base_path in candidates:
        path = get_executable_path(Path(base_path))
        if path.is_file():
            return path
        log.debug(f"Worker executable not found at '{path}'.")
    return None

def ensure_executable_mode(path: Path, mode: int) -> bool:
    """
    Sets the permission bits of the executable if they differ from `mode`.

    :return: True if the mode was changed, False if it was already correct.
    :raises OSError: If the permissions cannot be read or changed.
    """
    current = path.stat().st_mode & 0o777
    if current == mode:
        return False
    os.chmod(path, mode)
    return True


#* --- Process Creation ---
def _get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific creation flags for subprocess.Popen."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    return {}

def launch_worker(args: List[str], cwd: Path) -> subprocess.Popen:
    """
    Launches the worker with stdout and stderr combined into one pipe.

    The environment is inherited unchanged.

    :param args: The command line, executable first.
    :param cwd: The working directory (the relay data directory).
    :return: The Popen handle.
    :raises OSError: If the process cannot be started.
    """
    log.info(f"Starting worker: {' '.join(args)} (cwd: {cwd})")
    return subprocess.Popen(
        args,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=str(cwd),
        **_get_popen_creation_flags(),
    )


#* --- Output Reading ---
def _read_pipe(process, post: Callable[[Tuple[str, Any, Any]], None]) -> None:
    """
    Target function for the reader thread.

    Posts every non-empty line, then waits for the process and posts its exit
    code, so the exit message always follows the last line.
    """
    pipe = process.stdout
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            post((MSG_LINE, process, line))
    except Exception as e:
        log.debug(f"Pipe reader for PID {process.pid} exited: {e}")
    finally:
        pipe.close()
    post((MSG_EXIT, process, process.wait()))

def start_output_reader(process, post: Callable[[Tuple[str, Any, Any]], None]) -> threading.Thread:
    """Starts a daemon thread that drains the process output into `post`."""
    thread = threading.Thread(
        target=_read_pipe,
        args=(process, post),
        daemon=True,
        name=f"WorkerReader-{process.pid}",
    )
    thread.start()
    return thread


#* --- Process Status & Termination ---
def is_alive(process) -> bool:
    return process is not None and process.poll() is None

def request_termination(process) -> None:
    """Sends a graceful termination request (SIGTERM); already-exited processes are ignored."""
    try:
        process.terminate()
    except (ProcessLookupError, OSError) as e:
        log.debug(f"Terminate request for PID {process.pid} ignored: {e}")

def kill_processes_by_name(name: str, timeout: float = 3) -> int:
    """
    Force-kills every process whose executable name matches `name`.

    :param name: The process name to match (e.g. 'haven').
    :param timeout: Seconds to wait for the killed processes to disappear.
    :return: The number of processes that were sent a kill.
    """
    own_pid = os.getpid()
    victims: List[psutil.Process] = []
    for proc in psutil.process_iter(["pid", "name"]):
        try:
            if proc.info["pid"] == own_pid or proc.info["name"] != name:
                continue
            log.warning(f"Killing stray worker process {proc.info['name']} (PID {proc.pid}).")
            proc.kill()
            victims.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            log.debug(f"Skipping process during stray cleanup: {e}")
            continue
    if victims:
        psutil.wait_procs(victims, timeout=timeout)
    return len(victims)

def sample_usage(pid: int) -> Tuple[float, float]:
    """
    Returns (resident memory in MB, CPU percent) for a live process.

    :raises psutil.Error: If the process is gone or inaccessible.
    """
    proc = psutil.Process(pid)
    with proc.oneshot():
        memory_mb = proc.memory_info().rss / (1024 * 1024)
        cpu = proc.cpu_percent(interval=None)
    return memory_mb, cpu
