import sys
import logging
import threading

import setproctitle

# Basic console logger for messages BEFORE full setup is complete.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [console] - %(message)s',
    stream=sys.stdout
)
log = logging.getLogger("console")

import haven_monitor.local.console as console
from haven_monitor.local.config import effective_settings as config
from haven_monitor.log.setup import setup_logging

CONSOLE_LOCK = threading.Lock()


def shutdown() -> None:
    """Stops a running worker and the supervisor dispatcher before exit."""
    supervisor = console.get_supervisor()
    if supervisor.state.running:
        log.info("Stopping the relay before exiting...")
        done = threading.Event()
        supervisor.stop(completion=done.set)
        done.wait(timeout=supervisor.stop_grace + 5)
    supervisor.close()


def main() -> None:
    """The main entry point for the console application."""
    setproctitle.setproctitle(config.CONSOLE_PROCESS_TITLE)
    setup_logging(logging.INFO)

    # Non-interactive mode for one-off commands
    if len(sys.argv) > 1:
        command, args = sys.argv[1].lower(), sys.argv[2:]
        if "--verbose" in args:
            console.toggle_verbose_logging()
            args.remove("--verbose")

        console.execute_command(command, args)
        # Commands that leave the relay running block until it exits
        supervisor = console.get_supervisor()
        try:
            while supervisor.state.running:
                threading.Event().wait(1.0)
        except KeyboardInterrupt:
            log.warning("Interrupted, stopping the relay.")
        shutdown()
        return

    print("--- Haven Relay Monitor Console ---")
    print("Type 'help' for a list of commands.")

    with CONSOLE_LOCK:
        status = "Running" if console.get_supervisor().state.running else "Stopped"
    print(f"Relay is currently {status}.")

    while True:
        try:
            # The input prompt must be outside the lock to not block background threads
            command_line_str = input("> ")
            with CONSOLE_LOCK:
                if not command_line_str.strip():
                    continue
                command_line = command_line_str.strip().split()
                command, args = command_line[0].lower(), command_line[1:]
                log.debug(f"Received command: {command}, args: {args}")

                if console.execute_command(command, args):
                    break

        except (KeyboardInterrupt, EOFError):
            with CONSOLE_LOCK:
                log.warning("\nExiting console due to KeyboardInterrupt.")
                break
        except Exception as e:
            with CONSOLE_LOCK:
                log.error(f"An unexpected error occurred in the console: {e}", exc_info=True)

    shutdown()


if __name__ == "__main__":
    main()
    print("Exiting console application. See you next time!")
