"""Settings for podcp.

Stored as JSON in ``~/.podcp/config.json``.  Credentials are never kept
here; cluster access comes from the kubeconfig (or the in-cluster service
account) named by the ``kubeconfig`` and ``context`` keys.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "transfer_chunk_size": 65536,
    "queue_depth": 16,
    "idle_timeout": 60,
    "transfer_timeout": 0,
    "default_namespace": "default",
    "kubeconfig": None,
    "context": None,
    "show_progress": True,
}

# Keys whose values must be positive integers; anything else falls back.
_POSITIVE_INT_KEYS = ("transfer_chunk_size", "queue_depth")

def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Loads and persists podcp settings.

    Writes are atomic (temp file, then rename).  A corrupt file logs a
    warning and is reset to defaults; it never aborts a copy.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self._base = base_dir or Path.home() / ".podcp"
        self._config_path = self._base / "config.json"
        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()

    @property
    def path(self) -> Path:
        return self._config_path

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, data: Any) -> None:
        """Serialise *data* as JSON and replace the config file with it."""
        tmp = self._config_path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(self._config_path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", self._config_path, exc)
            raise

    def _reset(self) -> dict[str, Any]:
        config = dict(DEFAULT_CONFIG)
        self._atomic_write(config)
        return config

    def _load_config(self) -> dict[str, Any]:
        """Read ``config.json``, merging defaults in for missing keys."""
        if not self._config_path.exists():
            logger.debug("No config file; creating defaults at %s", self._config_path)
            return self._reset()

        try:
            loaded = json.loads(self._config_path.read_text(encoding="utf-8"))
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt config.json (%s); resetting to defaults", exc)
            return self._reset()

        merged = dict(DEFAULT_CONFIG)
        merged.update(loaded)
        for key in _POSITIVE_INT_KEYS:
            value = merged[key]
            if not _is_positive_int(value):
                logger.warning("Invalid %s=%r in config; using %r", key, value, DEFAULT_CONFIG[key])
                merged[key] = DEFAULT_CONFIG[key]
        return merged

    # ------------------------------------------------------------------
    # Config access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if missing."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set *key* to *value* and persist the config file.

        Raises:
            KeyError: *key* is not a known setting.
            ValueError: *value* is not usable for *key*.
        """
        if key not in DEFAULT_CONFIG:
            raise KeyError(key)
        if key in _POSITIVE_INT_KEYS and not _is_positive_int(value):
            raise ValueError(f"{key} must be a positive integer, not {value!r}")
        self._config[key] = value
        self._atomic_write(self._config)
        logger.debug("Config updated: %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        """Return a shallow copy of the full config dict."""
        return dict(self._config)

    def resolve(self, key: str, override: Any = None) -> Any:
        """Return *override* when it was given, otherwise the stored value."""
        return self._config.get(key) if override is None else override
