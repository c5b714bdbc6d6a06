"""config.yaml loading with ${ENV_VAR} substitution and defaults."""

from __future__ import annotations

import copy
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from surveyquota.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_DB_PATH = "data/quota.db"

DEFAULTS: Dict[str, Any] = {
    "database": {"path": DEFAULT_DB_PATH, "busy_timeout_ms": 5000},
    "vendor": {
        "type": "none",
        "timeout": 10,
        "retry_attempts": 3,
        "token_separator": "_BR_",
        "redirect_urls": {},
    },
    "logging": {"level": "INFO"},
}

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def _resolve_env(value: Any) -> Any:
    """Replace ${ENV_VAR} in strings, recursively. Unset variables become ''."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _resolve_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env(v) for v in value]
    return value


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load config.yaml merged over the defaults.

    A missing file yields the defaults, so the CLI works without one.
    """
    config_path = Path(path or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        if path:
            raise ConfigurationError(f"Config file not found: {config_path}")
        logger.debug("No %s, using defaults", config_path)
        return copy.deepcopy(DEFAULTS)

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping")
    return _merge(DEFAULTS, _resolve_env(raw))


def load_quota_file(path: str) -> Dict[str, Any]:
    """Read a YAML quota definition document."""
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a quota definition mapping")
    return data
