import json
import logging
from pathlib import Path
from typing import Any, Dict

import haven_monitor.settings as default_settings

log = logging.getLogger(__name__)

_TRUE_STRINGS = ('true', '1', 't', 'yes', 'y', 'on')


class MergedSettings:
    """
    Attribute access to the monitor configuration.

    Values come from `settings.py` (which already applied `.env`), then from the
    JSON overrides file. Only keys in `MODIFIABLE_SETTINGS` may be overridden or
    persisted; the overrides file is the only thing the console ever writes.
    """

    def __init__(self, overrides_path: Path = default_settings.OVERRIDES_JSON_PATH) -> None:
        for key in dir(default_settings):
            if key.isupper():
                setattr(self, key, getattr(default_settings, key))
        self.OVERRIDES_JSON_PATH = Path(overrides_path)
        self._apply_overrides(self._read_overrides())

    #* --- Overrides file ---
    def _read_overrides(self) -> Dict[str, Any]:
        if not self.OVERRIDES_JSON_PATH.exists():
            return {}
        try:
            with self.OVERRIDES_JSON_PATH.open('r') as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            log.error(f"Ignoring unreadable overrides file '{self.OVERRIDES_JSON_PATH}': {e}")
            return {}
        if not isinstance(data, dict):
            log.error(f"Ignoring overrides file '{self.OVERRIDES_JSON_PATH}': expected a JSON object.")
            return {}
        return data

    def _apply_overrides(self, overrides: Dict[str, Any]) -> None:
        if overrides:
            log.info(f"Applying {len(overrides)} configuration override(s) from {self.OVERRIDES_JSON_PATH}")
        for key, value in overrides.items():
            if key not in self.MODIFIABLE_SETTINGS:
                log.warning(f"Override '{key}' is not a modifiable setting. Ignoring.")
                continue
            try:
                setattr(self, key, self.coerce(key, value))
            except (ValueError, TypeError) as e:
                log.error(f"Override '{key}' has an invalid value {value!r}: {e}")

    def save_overrides(self, overrides_to_save: Dict[str, Any]) -> None:
        """
        Writes the modifiable subset of `overrides_to_save` to the overrides file.

        :param overrides_to_save: Setting names to values; other keys are dropped.
        """
        payload = {k: v for k, v in overrides_to_save.items() if k in self.MODIFIABLE_SETTINGS}
        if not payload:
            log.warning("No modifiable settings provided to save.")
            return
        try:
            self.OVERRIDES_JSON_PATH.parent.mkdir(parents=True, exist_ok=True)
            with self.OVERRIDES_JSON_PATH.open('w') as f:
                json.dump(payload, f, indent=4, sort_keys=True)
            log.info(f"Configuration overrides saved to {self.OVERRIDES_JSON_PATH}")
        except OSError as e:
            log.error(f"Failed to write overrides file '{self.OVERRIDES_JSON_PATH}': {e}")

    #* --- Runtime changes ---
    def coerce(self, key: str, value: Any) -> Any:
        """
        Converts `value` to the type of the current setting.

        :raises ValueError: If the value does not convert.
        """
        current = getattr(self, key, None)
        if isinstance(current, bool):
            return str(value).strip().lower() in _TRUE_STRINGS
        if isinstance(current, Path):
            return Path(value)
        if current is None:
            return value
        return type(current)(value)

    def update(self, key: str, value: Any) -> Any:
        """
        Changes one modifiable setting in memory and persists all modifiable settings.

        :return: The converted value.
        :raises KeyError: If `key` is not in `MODIFIABLE_SETTINGS`.
        """
        if key not in self.MODIFIABLE_SETTINGS:
            raise KeyError(f"Setting '{key}' is not modifiable.")
        new_value = self.coerce(key, value)
        setattr(self, key, new_value)
        self.save_overrides({k: getattr(self, k) for k in self.MODIFIABLE_SETTINGS})
        return new_value


effective_settings = MergedSettings()
