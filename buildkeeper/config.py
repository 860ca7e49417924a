import json
import shlex
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import buildkeeper.settings as default_settings

log = logging.getLogger(__name__)


def parse_interval(raw: Optional[str], default: int) -> int:
    """
    Sanitizes an externally supplied tick interval.

    A fractional part is dropped ("20.5" becomes 20). Empty, non-numeric and
    non-positive values fall back to the default.

    :param raw: The raw value, usually taken from the environment.
    :param default: The interval to use when the value is unusable.
    :return int: The interval in seconds.
    """
    if raw is None:
        return default
    value = str(raw).strip().split(".", 1)[0]
    try:
        interval = int(value)
    except ValueError:
        if value:
            log.warning(f"Ignoring non-numeric sync interval '{raw}'. Using {default}s.")
        return default
    if interval <= 0:
        log.warning(f"Ignoring non-positive sync interval '{raw}'. Using {default}s.")
        return default
    return interval


class MergedSettings:
    """
    Merges the default settings with JSON overrides.

    This class provides a unified, attribute-based access point for all
    supervisor configuration. It follows a clear precedence:
    1. Base values from `settings.py`.
    2. Overrides from `.env` file (handled by `python-dotenv` in settings.py).
    3. Overrides from `overrides.json` for settings in `MODIFIABLE_SETTINGS`.
    4. Keyword overrides passed to the constructor (used by tests and the CLI).
    """

    def __init__(self, overrides_path: Optional[Path] = None, **values: Any) -> None:
        """
        Initializes the settings object by loading defaults and overrides.

        :param overrides_path: The overrides file to read instead of the default one.
        :param values: Settings to force, bypassing the modifiable whitelist.
        """
        self._load_defaults()
        self.SYNC_INTERVAL = parse_interval(self.SYNC_INTERVAL_RAW, self.DEFAULT_SYNC_INTERVAL)
        if overrides_path is not None:
            self.OVERRIDES_JSON_PATH = Path(overrides_path)
        self._load_overrides()

        for key, value in values.items():
            setattr(self, key, value)
        self.APP_DIR = Path(self.APP_DIR)

    def _load_defaults(self) -> None:
        """
        Loads all uppercase attributes from the settings.py module as defaults.
        """
        for key in dir(default_settings):
            if key.isupper():
                value = getattr(default_settings, key)
                # Lists are copied so per-instance edits never leak into the module.
                setattr(self, key, list(value) if isinstance(value, list) else value)

    def _load_overrides(self) -> None:
        """
        Loads and applies settings from the `overrides.json` file.

        It will only apply overrides for keys that are explicitly listed in
        the `MODIFIABLE_SETTINGS` set in `settings.py`.
        """
        if not self.OVERRIDES_JSON_PATH.exists():
            return

        try:
            with self.OVERRIDES_JSON_PATH.open('r') as f:
                overrides = json.load(f)

            log.info(f"Loading runtime configuration overrides from {self.OVERRIDES_JSON_PATH}")
            for key, value in overrides.items():
                if not hasattr(self, key):
                    log.warning(f"Override setting '{key}' not found in default settings. Ignoring.")
                    continue
                if key not in self.MODIFIABLE_SETTINGS:
                    log.warning(f"Attempted to override non-modifiable setting '{key}'. Ignoring.")
                    continue
                if key == "SYNC_INTERVAL":
                    value = parse_interval(value, self.SYNC_INTERVAL)
                setattr(self, key, value)
                log.debug(f"Overridden setting: {key} = {value}")
        except (json.JSONDecodeError, IOError) as e:
            log.error(
                f"Failed to load or parse overrides file '{self.OVERRIDES_JSON_PATH}': {e}"
            )

    def app_path(self, relative: Union[str, Path]) -> Path:
        """Resolves a path relative to the supervised application directory."""
        return self.APP_DIR / relative

    def split_command(self, key: str) -> List[str]:
        """
        Returns one of the delegated commands as an argument list.

        :param key: The setting holding the command, e.g. 'BUILD_COMMAND'.
        :return list: The command split with shell quoting rules.
        """
        command = getattr(self, key)
        if isinstance(command, (list, tuple)):
            return [str(part) for part in command]
        if key == "START_COMMAND":
            command = command.format(host=self.SERVICE_HOST, port=self.SERVICE_PORT)
        return shlex.split(command)

    def as_dict(self) -> Dict[str, Any]:
        """Returns the effective settings, for status output."""
        return {key: getattr(self, key) for key in dir(self) if key.isupper()}


# Create a singleton instance to be imported by other modules
effective_settings = MergedSettings()
