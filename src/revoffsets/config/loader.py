"""YAML configuration loader with env var interpolation."""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import ValidationError

from revoffsets.config.defaults import CONFIG_FILE_NAMES, CONFIG_SEARCH_PATHS
from revoffsets.config.models import OffsetsConfig
from revoffsets.errors import ConfigError
from revoffsets.utils.logging import get_logger

log = get_logger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)(?::([^}]*))?\}")


def _interpolate_env(value: str) -> str:
    """Replace ${VAR} or ${VAR:default} with environment variable values."""

    def _replace(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2)
        return os.environ.get(var_name, default if default is not None else "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _walk_and_interpolate(obj: object) -> object:
    if isinstance(obj, str):
        return _interpolate_env(obj)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item) for item in obj]
    return obj


def find_config_file(explicit_path: str | Path | None = None) -> Path | None:
    """Locate a revoffsets config file, returning the first found or None."""
    if explicit_path is not None:
        p = Path(explicit_path)
        return p if p.is_file() else None

    for search_dir in CONFIG_SEARCH_PATHS:
        for name in CONFIG_FILE_NAMES:
            candidate = search_dir / name
            if candidate.is_file():
                return candidate
    return None


def load_config(path: str | Path | None = None) -> OffsetsConfig:
    """Load and validate configuration.

    Without ``path`` the search locations are tried and defaults apply when
    none holds a config file. An explicit ``path`` must exist. Every failure
    raises ConfigError.
    """
    config_path = find_config_file(path)
    if config_path is None:
        if path is not None:
            raise ConfigError(f"config file not found: {path}")
        return OffsetsConfig()

    try:
        raw = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"{config_path}: invalid YAML ({exc})") from exc
    interpolated = _walk_and_interpolate(raw)
    try:
        config = OffsetsConfig.model_validate(interpolated)
    except ValidationError as exc:
        raise ConfigError(f"{config_path}: {exc}") from exc
    log.debug("config_loaded", path=str(config_path))
    return config
