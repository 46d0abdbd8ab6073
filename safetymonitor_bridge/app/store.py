from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Mapping

from .settings import RuntimeConfig, apply_config_update, changed_keys

_LOGGER = logging.getLogger("safetymonitor.config")


class ConfigStore:
    """Holds the live RuntimeConfig and persists it as JSON."""

    def __init__(self, path: str, defaults: RuntimeConfig | None = None):
        self._path = path
        self._defaults = defaults or RuntimeConfig()
        self._config = self._defaults

    @property
    def path(self) -> str:
        return self._path

    @property
    def config(self) -> RuntimeConfig:
        return self._config

    def read_raw(self) -> dict[str, Any]:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, ValueError):
            # Corrupt file: keep it for inspection and start from defaults.
            try:
                ts = time.strftime("%Y%m%d-%H%M%S")
                os.replace(self._path, f"{self._path}.corrupt.{ts}")
                _LOGGER.warning("Config file %s is corrupt, moved aside", self._path)
            except OSError:
                _LOGGER.warning("Config file %s is corrupt and could not be moved", self._path)
            return {}
        if not isinstance(raw, dict):
            return {}
        return raw

    def write_raw(self, data: Mapping[str, Any]) -> None:
        d = os.path.dirname(self._path)
        if d:
            os.makedirs(d, exist_ok=True)
        tmp = self._path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(dict(data), f, ensure_ascii=False, indent=2)
        os.replace(tmp, self._path)

    def load(self) -> RuntimeConfig:
        """Load the persisted config over the defaults and make sure it is on disk.

        Raises OSError when the config directory or file cannot be written.
        """
        raw = self.read_raw()
        try:
            cfg = apply_config_update(self._defaults, raw, strict=False)
        except ValueError as e:
            _LOGGER.warning("Ignoring invalid persisted config (%s), using defaults", e)
            cfg = self._defaults
        self.write_raw(cfg.to_dict())
        self._config = cfg
        _LOGGER.info("Config loaded from %s", self._path)
        return cfg

    def update(self, payload: Mapping[str, Any]) -> tuple[RuntimeConfig, set[str]]:
        """Validate, persist, then swap in a partial update.

        ValueError for invalid values, OSError if persisting fails. On either
        error the live config is unchanged.
        """
        new = apply_config_update(self._config, payload, strict=True)
        changed = changed_keys(self._config, new)
        if changed:
            self.write_raw(new.to_dict())
            self._config = new
            _LOGGER.info("Config updated: %s", ", ".join(sorted(changed)))
        return new, changed
