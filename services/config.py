"""
Casework — Environment Config Loader

Three-tier configuration loading:
  1. Base YAML file (config/casework.yaml)
  2. Per-environment overlay files (config/{MDT_ENV}.yaml merged over base)
  3. Environment variable overrides (MDT_ prefixed)

Usage:
    from services.config import load_config, get_config_value

    cfg = load_config(base_path="config/casework.yaml", env="prod")
    interval = get_config_value("sweep.interval_seconds", cfg, default=300)

Environment variables:
    MDT_ENV          — active profile (dev, staging, prod)
    MDT_CONFIG_DIR   — directory for overlay files (default: config/)
    MDT_*            — nested overrides, double underscore separates levels
                       (e.g. MDT_SWEEP__INTERVAL_SECONDS=60)
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("casework.config")

_META_VARS = {"MDT_ENV", "MDT_CONFIG_DIR", "MDT_VERSION"}


def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


def _load_overlay_file(base_path: str, env: str = "", config_dir: str = "") -> dict[str, Any]:
    """
    Load the per-environment overlay file.
    Returns empty dict if no environment is active or no file is found.
    """
    env = env or os.environ.get("MDT_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("MDT_CONFIG_DIR", "config")
    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path) or ".") / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            with open(path) as f:
                overlay = yaml.safe_load(f) or {}
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


def _load_env_overrides(prefix: str = "MDT_") -> dict[str, Any]:
    """
    Load MDT_ prefixed environment variables as config overrides.

    MDT_SECTION__KEY=value → {"section": {"key": value}}

    Values go through yaml.safe_load so numbers and booleans keep
    their types.
    """
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in _META_VARS:
            continue
        path = [p for p in key[len(prefix):].lower().split("__") if p]
        if not path:
            continue
        try:
            parsed = yaml.safe_load(value)
        except yaml.YAMLError:
            parsed = value
        _set_nested(overrides, path, parsed)

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


def load_config(
    base_path: str = "config/casework.yaml",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (MDT_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file

    Returns:
        Merged configuration dict
    """
    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("MDT_ENV", "default")
    config["_config_source"] = base_path
    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("sweep.interval_seconds", cfg, 300)
    """
    if config is None:
        config = load_config()

    current: Any = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current
