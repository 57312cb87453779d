"""
Preparation of the files the worker reads from its data directory.

The normal run rewrites the relay lists and replaces the templates directory on
every start. The import run only fills in what is missing and never overwrites.
"""
import json
import shutil
import logging
from pathlib import Path
from typing import List, Tuple

from haven_monitor.local.config import effective_settings as config
from haven_monitor.local.relay_config import RelayConfig
from haven_monitor.local.supervisor.classifier import LEVEL_ERROR, LEVEL_INFO, LEVEL_WARN

log = logging.getLogger(__name__)

# (level, message) pairs the supervisor turns into log entries
Notes = List[Tuple[str, str]]


def _write_json_list(path: Path, items: List[str]) -> None:
    path.write_text(json.dumps(items, indent=2))


def render_minimal_env(relay_config: RelayConfig) -> str:
    """Renders the minimal .env the worker needs for a one-shot import."""
    return config.MINIMAL_ENV_TEMPLATE.format(
        owner_npub=relay_config.owner_npub,
        relay_url=relay_config.effective_relay_url,
        relay_port=relay_config.relay_port,
        db_engine=relay_config.db_engine,
        import_start_date=relay_config.import_start_date,
        import_seed_relays_file=relay_config.import_seed_relays_file,
        log_level=relay_config.log_level,
    )


def prepare_run_files(relay_config: RelayConfig, data_dir: Path, templates_source: Path) -> Notes:
    """
    Writes everything the long-running worker expects before a normal start.

    :param relay_config: The configuration snapshot being started.
    :param data_dir: The relay data directory (worker CWD).
    :param templates_source: Directory copied to `<data_dir>/templates`.
    :return: Notes for the supervisor's log.
    """
    notes: Notes = []
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        (data_dir / relay_config.blossom_path.strip("/")).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        log.error(f"Failed to create relay data directory '{data_dir}': {e}")
        notes.append((LEVEL_ERROR, f"Could not create data directory {data_dir}: {e}"))
        return notes

    templates_dest = data_dir / "templates"
    if templates_source.is_dir():
        try:
            if templates_dest.exists():
                shutil.rmtree(templates_dest)
            shutil.copytree(templates_source, templates_dest)
            notes.append((LEVEL_INFO, f"Copied templates to {templates_dest}"))
        except OSError as e:
            log.error(f"Failed to copy templates to '{templates_dest}': {e}")
            notes.append((LEVEL_WARN, f"Could not copy templates: {e}"))
    else:
        notes.append((LEVEL_WARN, f"Templates folder not found at {templates_source}"))

    try:
        _write_json_list(data_dir / relay_config.import_seed_relays_file, relay_config.import_seed_relays)
        _write_json_list(data_dir / relay_config.blastr_relays_file, relay_config.blastr_relays)
        notes.append((
            LEVEL_INFO,
            f"Wrote {len(relay_config.blastr_relays)} blastr relays to {relay_config.blastr_relays_file}",
        ))
    except OSError as e:
        log.error(f"Failed to write relay list files in '{data_dir}': {e}")
        notes.append((LEVEL_WARN, f"Could not write relay lists: {e}"))
    return notes


def ensure_import_files(relay_config: RelayConfig, data_dir: Path) -> Notes:
    """
    Creates the .env and relay list files if, and only if, they are missing.

    :param relay_config: The configuration the import runs with.
    :param data_dir: The relay data directory (worker CWD).
    :return: Notes for the supervisor's log.
    """
    notes: Notes = []
    targets = [
        (data_dir / config.ENV_FILE_NAME, lambda p: p.write_text(render_minimal_env(relay_config))),
        (data_dir / relay_config.import_seed_relays_file,
         lambda p: _write_json_list(p, relay_config.import_seed_relays)),
        (data_dir / relay_config.blastr_relays_file,
         lambda p: _write_json_list(p, relay_config.blastr_relays)),
    ]
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        for path, writer in targets:
            if path.exists():
                continue
            writer(path)
            notes.append((LEVEL_INFO, f"Created missing {path.name}"))
    except OSError as e:
        log.error(f"Failed to prepare import files in '{data_dir}': {e}")
        notes.append((LEVEL_WARN, f"Could not prepare import files: {e}"))
    return notes
