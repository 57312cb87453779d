"""
This module contains the configuration settings for the Haven monitor.
It defines paths, supervisor and stream tunables, logging configuration,
and the templates for files generated in the relay data directory.
It is used throughout the application to ensure consistent settings and paths.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)

#* --- Core Paths ---
BASE_DIR = pathlib.Path(__file__).resolve().parent.parent  # Project Root
BIN_DIR = BASE_DIR / "bin"
MONITOR_HOME = pathlib.Path(os.getenv("HAVEN_MONITOR_HOME", pathlib.Path.home() / ".haven_monitor"))
OVERRIDES_JSON_PATH = MONITOR_HOME / "overrides.json"

#* --- Relay Data Directory ---
# Working directory of the worker. Holds the list files, the .env and the databases.
RELAY_DATA_DIR = pathlib.Path(os.getenv("HAVEN_DATA_DIR", pathlib.Path.home() / "haven_relay"))
RELAY_DB_DIR = RELAY_DATA_DIR / "db"
TEMPLATES_SOURCE_DIR = pathlib.Path(os.getenv("HAVEN_TEMPLATES_DIR", BASE_DIR / "templates"))
ENV_FILE_NAME = ".env"

#* --- Worker Executable ---
WORKER_NAME = "haven"
BUNDLED_WORKER_PATH = pathlib.Path(os.getenv("HAVEN_BUNDLED_BINARY", BIN_DIR / WORKER_NAME))
FALLBACK_WORKER_PATH = pathlib.Path("/usr/local/bin") / WORKER_NAME
IMPORT_FLAG = "--import"
WORKER_FILE_MODE = 0o755

#* --- Supervisor Settings ---
LOG_RETENTION = 1000
STOP_GRACE_SECONDS = 0.5
IMPORT_RESTART_DELAY_SECONDS = 1.0
LOCK_PARTITIONS = ("blossom", "chat", "inbox", "outbox", "private")
LOCK_FILE_NAME = "LOCK"
STRAY_KILL_TIMEOUT = 3  # seconds to wait for killed workers to disappear

#* --- Relay Defaults (worker-facing configuration) ---
OWNER_NPUB = os.getenv("OWNER_NPUB", "")
RELAY_URL = os.getenv("RELAY_URL", "")
RELAY_PORT = int(os.getenv("RELAY_PORT", "3355"))
DB_ENGINE = os.getenv("DB_ENGINE", "badger")
BLOSSOM_PATH = os.getenv("BLOSSOM_PATH", "blossom/")
HAVEN_LOG_LEVEL = os.getenv("HAVEN_LOG_LEVEL", "INFO")
IMPORT_START_DATE = os.getenv("IMPORT_START_DATE", "2023-01-01")
IMPORT_SEED_RELAYS_FILE = os.getenv("IMPORT_SEED_RELAYS_FILE", "relays_import.json")
IMPORT_SEED_RELAYS = [
    "wss://relay.damus.io",
    "wss://relay.primal.net",
    "wss://relay.snort.social",
    "wss://relay.nos.social",
]
BLASTR_RELAYS_FILE = os.getenv("BLASTR_RELAYS_FILE", "relays_blastr.json")
BLASTR_RELAYS = [
    "wss://relay.damus.io",
    "wss://relay.primal.net",
    "wss://nos.lol",
    "wss://nostr.wine",
]

#* --- Stream Settings ---
SUBSCRIPTION_KINDS = (1, 1063)
SUBSCRIPTION_LIMIT = 500
NOTE_KIND = 1
FILE_METADATA_KIND = 1063
RECORD_RETENTION = 1000
RESORT_EVERY = 20
NOTIFY_THROTTLE_SECONDS = 0.3
SEEN_IDS_LIMIT = int(os.getenv("SEEN_IDS_LIMIT", "0"))  # 0 keeps every id for the session
RECONNECT_INITIAL_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0
WS_OPEN_TIMEOUT = 10
WS_PING_INTERVAL = 20
WS_MAX_MESSAGE_SIZE = 2 ** 22

#* --- Logging ---
LOG_BUFFER_SIZE = 100
LOG_BUFFER_FLUSH_INTERVAL = 10
LOKI_ENABLED = os.getenv("LOKI_ENABLED", "False").lower() in ('true', '1', 't')
LOKI_URL = os.getenv("LOKI_URL", "http://localhost:3100")
LOKI_ORG_ID = os.getenv("LOKI_ORG_ID", "fake")

#* --- Application variables ---
VERBOSE_LOGGING = False
CONSOLE_PROCESS_TITLE = "Haven Monitor - Console"

#* --- MODIFIABLE SETTINGS (Changeable at runtime via 'config' command) ---
MODIFIABLE_SETTINGS = {
    # Relay
    "OWNER_NPUB", "RELAY_URL", "RELAY_PORT", "HAVEN_LOG_LEVEL", "IMPORT_START_DATE",
    # Supervisor
    "STOP_GRACE_SECONDS", "IMPORT_RESTART_DELAY_SECONDS",
    # Stream
    "NOTIFY_THROTTLE_SECONDS", "RECORD_RETENTION", "RESORT_EVERY", "SEEN_IDS_LIMIT",
    "RECONNECT_INITIAL_DELAY", "RECONNECT_MAX_DELAY",
    # Logging
    "LOG_BUFFER_SIZE", "LOG_BUFFER_FLUSH_INTERVAL",
}

#* --- File Templates ---
# Written only when missing, right before a one-shot import.
MINIMAL_ENV_TEMPLATE = """OWNER_NPUB="{owner_npub}"
RELAY_URL="{relay_url}"
RELAY_PORT={relay_port}
DB_ENGINE="{db_engine}"
IMPORT_START_DATE="{import_start_date}"
IMPORT_SEED_RELAYS_FILE="{import_seed_relays_file}"
HAVEN_LOG_LEVEL="{log_level}"
"""
