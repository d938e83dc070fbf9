from __future__ import annotations

from typing import Any

from .monitor import DEFAULT_ACTIVITY_TIMEOUT, DEFAULT_STARTUP_TIMEOUT
from .policy import DEFAULT_FALLBACK_MODEL

DEFAULTS: dict[str, Any] = {
    # None = let the CLI pick its default model
    "claude.model": None,
    "claude.fallback_model": DEFAULT_FALLBACK_MODEL,
    "timeouts.startup": DEFAULT_STARTUP_TIMEOUT,
    "timeouts.activity": DEFAULT_ACTIVITY_TIMEOUT,
    "delivery.send_timeout": 120,
}

_NUMERIC_KEYS = frozenset({"timeouts.startup", "timeouts.activity", "delivery.send_timeout"})


def validate_settings(updates: dict[str, Any]) -> str | None:
    """Check keys and value types. Returns an error string or None."""
    invalid = [k for k in updates if k not in DEFAULTS]
    if invalid:
        return f"Unknown settings keys: {invalid}"
    for key, value in updates.items():
        if key in _NUMERIC_KEYS:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                return f"'{key}' must be a positive number"
        elif key == "claude.model":
            if value is not None and (not isinstance(value, str) or not value.strip()):
                return "'claude.model' must be a non-empty string or null"
        elif not isinstance(value, str) or not value.strip():
            return f"'{key}' must be a non-empty string"
    return None


class SettingsStore:
    """Operator settings held in memory for the life of the process.

    Unset keys read as ``DEFAULTS``. Nothing here is written to disk.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = ...) -> Any:
        if key in self._values:
            return self._values[key]
        if default is not ...:
            return default
        return DEFAULTS.get(key)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def get_all(self) -> dict[str, Any]:
        return {**DEFAULTS, **self._values}

    def set_many(self, updates: dict[str, Any]) -> None:
        self._values.update(updates)

    def get_effective(self, cli_overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """Stored settings with CLI overrides on top; None overrides are ignored."""
        result = self.get_all()
        if cli_overrides:
            result.update({k: v for k, v in cli_overrides.items() if v is not None})
        return result
