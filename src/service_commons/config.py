"""
YAML configuration loading with zero defaults.

Services describe their configuration as pydantic models; the loader reads
the YAML file once, validates it, and caches the result until cleared.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import yaml
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

if TYPE_CHECKING:
    from collections.abc import Callable

REDACTION_MARKER = "***REDACTED***"
_SENSITIVE_KEY_PARTS: tuple[str, ...] = ("secret", "password", "token", "private_key")

SettingsT = TypeVar("SettingsT", bound=BaseModel)


class ConfigurationError(Exception):
    """Raised when the configuration file is missing or invalid."""


def get_config_path(env_var_name: str, default_filename: str) -> Path:
    """
    Resolve the configuration file path.

    The environment variable wins; otherwise the default filename is looked
    up relative to the current working directory.
    """
    override = os.environ.get(env_var_name)
    if override:
        return Path(override)
    return Path.cwd() / default_filename


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Read a YAML mapping from disk."""
    if not path.exists():
        msg = f"Configuration file not found: {path}"
        raise ConfigurationError(msg)
    try:
        raw = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        msg = f"Configuration file is not valid YAML: {path}"
        raise ConfigurationError(msg) from exc
    if not isinstance(raw, dict):
        msg = f"Configuration file must contain a mapping: {path}"
        raise ConfigurationError(msg)
    return raw


def create_settings_loader(
    settings_model: type[SettingsT],
    path_getter: Callable[[], Path],
) -> tuple[Callable[[], SettingsT], Callable[[], None]]:
    """
    Build a cached ``get_settings`` function and its cache-clearing companion.

    Returns:
        (get_settings, clear_settings_cache)
    """

    @lru_cache(maxsize=1)
    def get_settings() -> SettingsT:
        path = path_getter()
        raw = load_yaml_config(path)
        try:
            return settings_model(**raw)
        except PydanticValidationError as exc:
            msg = f"Invalid configuration in {path}: {exc}"
            raise ConfigurationError(msg) from exc

    def clear_settings_cache() -> None:
        get_settings.cache_clear()

    return get_settings, clear_settings_cache


def _redact(value: Any, marker: str) -> Any:
    if isinstance(value, dict):
        return {
            key: marker
            if any(part in key.lower() for part in _SENSITIVE_KEY_PARTS)
            else _redact(item, marker)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item, marker) for item in value]
    return value


def get_safe_model_config(settings: BaseModel, marker: str) -> dict[str, Any]:
    """Dump settings with secret-looking keys replaced by the marker."""
    redacted: dict[str, Any] = _redact(settings.model_dump(), marker)
    return redacted
