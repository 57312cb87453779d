import logging
from typing import List

from haven_monitor.local.console.handler import (
    display_status, get_supervisor, handle_clear_locks_command, handle_config_command,
    handle_import_command, handle_logs_command, handle_restart_command, handle_start_command,
    handle_stop_command, handle_watch_command, print_help, toggle_verbose_logging,
)

log = logging.getLogger(__name__)


def execute_command(command: str, args: List[str]) -> bool:
    """
    Executes a single command from the user.

    :param command: The main command string (e.g., 'start', 'config').
    :param args: A list of arguments for the command.
    :return bool: True if the console should exit, False otherwise.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    command_map = {
        "start": handle_start_command,
        "stop": handle_stop_command,
        "restart": handle_restart_command,
        "import": handle_import_command,
        "cancel-import": lambda: get_supervisor().cancel_import(),
        "dismiss-import": lambda: get_supervisor().dismiss_import(),
        "clear-locks": handle_clear_locks_command,
        "status": display_status,
        "logs": lambda: handle_logs_command(args),
        "watch": lambda: handle_watch_command(args),
        "config": lambda: handle_config_command(args),
        "verbose": toggle_verbose_logging,
        "help": print_help,
    }

    if command == "exit":
        return True
    if command in command_map:
        command_map[command]()
    else:
        log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
    return False
