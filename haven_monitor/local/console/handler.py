import time
import asyncio
import logging
from typing import List, Optional

from haven_monitor.local.config import effective_settings as config
from haven_monitor.local.relay_config import RelayConfig
from haven_monitor.local.supervisor import ProcessSupervisor
from haven_monitor.log.setup import setup_logging
from haven_monitor.stream import ChangeBatch, EventAggregator, SubscriptionMultiplexer

log = logging.getLogger(__name__)

_supervisor: Optional[ProcessSupervisor] = None


def get_supervisor() -> ProcessSupervisor:
    """Returns the console's supervisor, creating it on first use."""
    global _supervisor
    if _supervisor is None:
        _supervisor = ProcessSupervisor()
    return _supervisor


def current_relay_config() -> RelayConfig:
    return RelayConfig.from_settings(config)


#* --- Lifecycle commands ---
def handle_start_command() -> None:
    get_supervisor().start(current_relay_config())
    _print_last_logs(3)

def handle_stop_command(wait: bool = True) -> None:
    supervisor = get_supervisor()
    if not supervisor.state.running:
        print("Relay is not running.")
        return
    done = []
    supervisor.stop(completion=lambda: done.append(True))
    if wait:
        deadline = time.monotonic() + supervisor.stop_grace + 5
        while not done and time.monotonic() < deadline:
            time.sleep(0.1)
    print("Stop requested.")

def handle_restart_command() -> None:
    supervisor = get_supervisor()
    handle_stop_command()
    deadline = time.monotonic() + 10
    while supervisor.state.running and time.monotonic() < deadline:
        time.sleep(0.2)
    handle_start_command()

def handle_import_command() -> None:
    get_supervisor().import_notes(current_relay_config())
    print("Import requested. Use 'status' to follow its progress.")

def handle_clear_locks_command() -> None:
    thread = get_supervisor().clear_locks()
    print("Clearing database locks in the background...")
    thread.join(timeout=10)
    _print_last_logs(2)


#* --- Status and logs ---
def display_status() -> None:
    """Prints the supervisor state, including worker resource usage."""
    state = get_supervisor().refresh_metrics()
    print("\n--- Relay Status ---")
    if state.importing:
        print(f"  Status      : IMPORTING ({state.import_progress * 100:.0f}%) - {state.import_status}")
    elif state.running and state.booting:
        print(f"  Status      : BOOTING - {state.boot_status}")
    elif state.running:
        print("  Status      : RUNNING")
    else:
        print("  Status      : STOPPED")
    if state.locked:
        print("  WARNING     : Database is locked. Run 'clear-locks' before starting again.")
    if state.running:
        print(f"  CPU / MEM   : {state.cpu_percent:.1f}% / {state.memory_mb:.1f} MB")
    if state.started_at:
        print(f"  Started at  : {state.started_at:%Y-%m-%d %H:%M:%S}")
    print(f"  Connections : {state.active_connections}")
    print(f"  Events      : {state.events_stored}")
    print("-" * 20 + "\n")

def _print_last_logs(count: int) -> None:
    for entry in get_supervisor().logs(count):
        print(f"{entry.timestamp:%H:%M:%S} {entry.level:<5} {entry.message}")

def handle_logs_command(args: List[str]) -> None:
    """Prints the last N retained worker log entries (default 50)."""
    try:
        count = int(args[0]) if args else 50
    except ValueError:
        print("Usage: logs [count]")
        return
    print(f"\n--- Last {count} log entries ---")
    _print_last_logs(count)
    print()


#* --- Stream preview ---
async def _watch(seconds: float, endpoints: List[str]) -> None:
    def on_change(batch: ChangeBatch) -> None:
        print(
            f"+{len(batch.new_records)} notes, +{len(batch.new_media)} media "
            f"(total {len(batch.records)} notes, {len(batch.media)} media)"
        )
        for record in batch.new_records[:3]:
            print(f"    {record.created_at_date:%Y-%m-%d %H:%M} {record.content[:70]!r}")

    aggregator = EventAggregator()
    aggregator.add_listener(on_change)
    multiplexer = SubscriptionMultiplexer(aggregator)
    multiplexer.fetch(endpoints)
    try:
        await asyncio.sleep(seconds)
    finally:
        await multiplexer.close()

def handle_watch_command(args: List[str]) -> None:
    """Subscribes to the local relay (or given endpoints) and prints change batches."""
    seconds = 15.0
    endpoints: List[str] = []
    for arg in args:
        if arg.startswith(("ws://", "wss://")):
            endpoints.append(arg)
        else:
            try:
                seconds = float(arg)
            except ValueError:
                print("Usage: watch [seconds] [ws://endpoint ...]")
                return
    endpoints = endpoints or current_relay_config().local_endpoints()
    print(f"Watching {', '.join(endpoints)} for {seconds:.0f}s...")
    try:
        asyncio.run(_watch(seconds, endpoints))
    except KeyboardInterrupt:
        print("\n--- Watch interrupted. Returning to console. ---")


#* --- Configuration ---
def _config_show() -> None:
    print("\n--- Current Monitor Configuration ---")
    for key in sorted(config.MODIFIABLE_SETTINGS):
        print(f"  {key} = {getattr(config, key, 'N/A')}")
    print("---")
    print("Use 'config set <KEY> <VALUE>' to change a setting.")
    print("Supervisor timings apply to the next start; stream settings to the next 'watch'.")
    print("---------------------------------------\n")

def _config_set(args: List[str]) -> None:
    if len(args) < 2:
        print("Usage: config set <SETTING_NAME> <VALUE>")
        return
    key, value_str = args[0].upper(), " ".join(args[1:])
    try:
        new_value = config.update(key, value_str)
    except KeyError:
        print(f"Error: '{key}' is not a modifiable setting.")
        return
    except (ValueError, TypeError) as e:
        print(f"Could not convert value '{value_str}' for key '{key}': {e}")
        return
    print(f"Setting '{key}' updated to '{new_value}'.")

def handle_config_command(args: List[str]) -> None:
    """
    Handles all sub-commands for the 'config' command-line interface.

    :param args: A list of string arguments following the 'config' command.
    """
    sub_command = args[0].lower() if args else "show"
    if sub_command == "show":
        _config_show()
    elif sub_command == "set":
        _config_set(args[1:])
    else:
        print(f"Unknown config sub-command: '{sub_command}'. Use 'config show' or 'config set'.")


def toggle_verbose_logging() -> None:
    """Toggles DEBUG console output, including the raw worker lines."""
    config.VERBOSE_LOGGING = not config.VERBOSE_LOGGING
    level = logging.DEBUG if config.VERBOSE_LOGGING else logging.INFO
    setup_logging(level, show_worker_output=config.VERBOSE_LOGGING)
    print(f"Verbose console logging is now {'ON' if config.VERBOSE_LOGGING else 'OFF'}.")

def print_help():
    """Prints the main help text for the console."""
    print("\nAvailable commands:")
    print("  start                  - Start the relay worker.")
    print("  stop                   - Stop the relay worker gracefully.")
    print("  restart                - Stop and then start the relay worker.")
    print("  import                 - Run a one-shot import of historical notes, then restart.")
    print("  cancel-import          - Abort a running import without restarting.")
    print("  dismiss-import         - Close the import and restart the relay if it was running before.")
    print("  clear-locks            - Remove stale database locks and kill stray workers.")
    print("  status                 - Show the relay state, counters and resource usage.")
    print("  logs [count]           - Print the most recent worker log entries.")
    print("  watch [seconds] [urls] - Subscribe to the relay and print incoming notes and media.")
    print("  config <show|set>      - Show or change monitor settings.")
    print("  verbose                - Toggle DEBUG output and raw worker lines in the console.")
    print("  exit                   - Stop the relay and exit the console.")
    print()
