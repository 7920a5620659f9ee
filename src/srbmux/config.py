"""Sorbet launch configuration, resolved once at the boundary."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from .errors import ConfigError

logger = logging.getLogger(__name__)

SETTINGS_DIR = ".srbmux"
SETTINGS_FILENAME = "settings.json"
SETTINGS_SECTION = "sorbet"

_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off"})

# Host settings use camelCase keys; accept both spellings.
_KEY_ALIASES: dict[str, str] = {
    "commandPath": "command_path",
    "useBundler": "use_bundler",
    "useWatchman": "use_watchman",
    "bundlerPath": "bundler_path",
    "watchFiles": "watch_files",
    "stopTimeout": "stop_timeout",
}

_ENV_VARS: dict[str, str] = {
    "command_path": "SRBMUX_COMMAND_PATH",
    "use_bundler": "SRBMUX_USE_BUNDLER",
    "use_watchman": "SRBMUX_USE_WATCHMAN",
    "bundler_path": "SRBMUX_BUNDLER_PATH",
    "watch_files": "SRBMUX_WATCH_FILES",
    "stop_timeout": "SRBMUX_STOP_TIMEOUT",
}


@dataclass(frozen=True)
class SorbetConfig:
    """Every field carries its documented default."""

    command_path: str = "srb"
    use_bundler: bool = False
    use_watchman: bool = True
    bundler_path: str = "bundle"
    watch_files: bool = True
    stop_timeout: float = 5.0

    def as_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


DEFAULT_CONFIG = SorbetConfig()


def settings_path(workspace: str | Path) -> Path:
    """Path to the persisted settings file for a workspace."""
    return Path(workspace).expanduser() / SETTINGS_DIR / SETTINGS_FILENAME


def _canonical_key(key: str) -> str | None:
    name = key.split(".", 1)[1] if key.startswith(f"{SETTINGS_SECTION}.") else key
    name = _KEY_ALIASES.get(name, name)
    return name if name in _ENV_VARS else None


def _normalize_mapping(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Flatten an optional ``sorbet`` section and map keys to field names."""
    flat: dict[str, Any] = {}
    section = raw.get(SETTINGS_SECTION)
    if isinstance(section, Mapping):
        flat.update(section)
    flat.update({k: v for k, v in raw.items() if k != SETTINGS_SECTION})

    normalized: dict[str, Any] = {}
    for key, value in flat.items():
        if not isinstance(key, str):
            continue
        name = _canonical_key(key)
        if name is None:
            logger.debug("Ignoring unknown setting %r", key)
            continue
        normalized[name] = value
    return normalized


def load_settings_file(workspace: str | Path) -> dict[str, Any]:
    """Load persisted settings; a missing file yields an empty mapping."""
    path = settings_path(workspace)
    if not path.exists():
        return {}

    try:
        payload = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Cannot read settings file {path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError(f"Settings file {path} must contain a JSON object")
    return _normalize_mapping(payload)


def _env_settings() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name, env_var in _ENV_VARS.items():
        raw = os.getenv(env_var)
        if raw is not None and raw.strip():
            values[name] = raw.strip()
    return values


def _coerce_bool(name: str, value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
    logger.warning("Invalid boolean for %s: %r; using default %r", name, value, default)
    return default


def _coerce_path(name: str, value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    logger.warning("Invalid path for %s: %r; using default %r", name, value, default)
    return default


def _coerce_timeout(name: str, value: Any, default: float) -> float:
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid timeout for %s: %r; using default %r", name, value, default)
        return default
    return max(timeout, 0.1)


def _coerce(name: str, value: Any) -> Any:
    default = getattr(DEFAULT_CONFIG, name)
    if isinstance(default, bool):
        return _coerce_bool(name, value, default)
    if isinstance(default, float):
        return _coerce_timeout(name, value, default)
    return _coerce_path(name, value, default)


def load_config(
    workspace: str | Path | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> SorbetConfig:
    """Resolve configuration with precedence: overrides -> settings file -> env -> default."""
    layers = [_env_settings()]
    if workspace is not None:
        layers.append(load_settings_file(workspace))
    if overrides:
        layers.append(_normalize_mapping(overrides))

    merged: dict[str, Any] = {}
    for layer in layers:
        # Unset host values (None) keep the lower-precedence value.
        merged.update({name: value for name, value in layer.items() if value is not None})

    resolved = {name: _coerce(name, value) for name, value in merged.items()}
    return replace(DEFAULT_CONFIG, **resolved)
