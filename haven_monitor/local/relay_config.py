"""
The worker-facing configuration snapshot.

A `RelayConfig` is handed to the supervisor on `start` and `import_notes`. It is
copied, never shared, so a pending import keeps the values it was requested with.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from haven_monitor.local.config import effective_settings as config


@dataclass
class RelayConfig:
    owner_npub: str = ""
    relay_url: str = ""
    relay_port: int = 3355
    db_engine: str = "badger"
    blossom_path: str = "blossom/"
    log_level: str = "INFO"
    import_start_date: str = "2023-01-01"
    import_seed_relays_file: str = "relays_import.json"
    import_seed_relays: List[str] = field(default_factory=list)
    blastr_relays_file: str = "relays_blastr.json"
    blastr_relays: List[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: Optional[object] = None) -> "RelayConfig":
        """Builds a snapshot from the merged settings (defaults, .env and overrides)."""
        s = settings or config
        return cls(
            owner_npub=s.OWNER_NPUB,
            relay_url=s.RELAY_URL,
            relay_port=s.RELAY_PORT,
            db_engine=s.DB_ENGINE,
            blossom_path=s.BLOSSOM_PATH,
            log_level=s.HAVEN_LOG_LEVEL,
            import_start_date=s.IMPORT_START_DATE,
            import_seed_relays_file=s.IMPORT_SEED_RELAYS_FILE,
            import_seed_relays=list(s.IMPORT_SEED_RELAYS),
            blastr_relays_file=s.BLASTR_RELAYS_FILE,
            blastr_relays=list(s.BLASTR_RELAYS),
        )

    @property
    def effective_relay_url(self) -> str:
        """The relay URL, falling back to localhost on the configured port."""
        url = self.relay_url.strip()
        if not url or url in ("localhost", "127.0.0.1"):
            return f"localhost:{self.relay_port}"
        return url

    def local_endpoints(self) -> List[str]:
        """The subscription endpoints served by the local relay."""
        base = f"ws://localhost:{self.relay_port}"
        return [f"{base}/", f"{base}/inbox", f"{base}/chat", f"{base}/private"]
