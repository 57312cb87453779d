import logging
import sys

from haven_monitor.local.config import effective_settings as config
from haven_monitor.log.handler import LokiHandler


class SubprocessLogFilter(logging.Filter):
    """
    This filter identifies logs coming from the worker logger
    and keeps them off the console unless verbose output is enabled.
    """
    def filter(self, record):
        # The 'proc.' prefix is used by ProcessSupervisor.record_locked
        return not record.name.startswith('proc.')

class MainFormatter(logging.Formatter):
    """A custom formatter to handle regular logs and raw worker lines."""

    def __init__(self) -> None:
        super().__init__('%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s')

    def format(self, record):
        # Worker output is already a complete line.
        if record.name.startswith('proc.'):
            return f"[{record.name.split('.', 1)[-1]}] {record.getMessage()}"
        return super().format(record)

def setup_logging(console_level: int = logging.INFO, show_worker_output: bool = False) -> None:
    """
    Configures the root logger for the monitor.
    This sets up the console handler and optionally Loki,
    clearing any previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param show_worker_output: If True, worker lines are echoed on the console.
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to prevent re-adding them on re-runs
    if root_logger.hasHandlers():
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    if not show_worker_output:
        console_handler.addFilter(SubprocessLogFilter())
    root_logger.addHandler(console_handler)

    # --- Loki Handler (conditional) ---
    if config.LOKI_ENABLED:
        try:
            loki_handler = LokiHandler(url=config.LOKI_URL, org_id=config.LOKI_ORG_ID)
            loki_handler.setLevel(logging.INFO) # Avoid spamming Loki with DEBUG logs
            root_logger.addHandler(loki_handler)
            root_logger.info(f"Grafana Loki logging handler initialized for {config.LOKI_URL}.")
        except Exception as e:
            root_logger.error(f"Failed to initialize Grafana Loki logging handler: {e}")
