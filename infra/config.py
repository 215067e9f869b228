"""
Ephemera — Layered Config Loader

Three-tier configuration loading:
  1. Base YAML file (ephemera.yaml)
  2. Per-environment overlay files (config/{EPH_ENV}.yaml merged over base)
  3. Environment variable overrides (EPH_ prefixed)

Usage:
    from infra.config import load_config, get_config_value

    cfg = load_config(base_path="ephemera.yaml", env="prod")
    hours = get_config_value("sweeper.inactivity_threshold_hours", cfg, 24)

Environment variables:
    EPHEMERA_CONFIG_PATH   — explicit base config path
    EPH_ENV                — active profile (dev, staging, prod)
    EPH_CONFIG_DIR         — directory for overlay files (default: config/)
    EPH_*                  — leaf overrides (EPH_SWEEPER_INTERVAL_SECONDS=60)
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("ephemera.config")

DEFAULT_CONFIG_NAME = "ephemera.yaml"


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

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


def find_config_path() -> str | None:
    """Find ephemera.yaml (explicit env var, CWD, then project root)."""
    candidates = [
        os.environ.get("EPHEMERA_CONFIG_PATH", ""),
        DEFAULT_CONFIG_NAME,
        os.path.join(
            os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
            DEFAULT_CONFIG_NAME,
        ),
    ]
    for c in candidates:
        if c and os.path.isfile(c):
            return c
    return None


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for {config_dir}/{env}.yaml, then config/{env}.yaml next to
    the base file. Returns empty dict if not found.
    """
    env = env or os.environ.get("EPH_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("EPH_CONFIG_DIR", "config")

    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path)) / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            with open(path) as f:
                overlay = yaml.safe_load(f) or {}
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _set_nested(d: dict, keys: list[str], value: Any):
    for key in keys[:-1]:
        existing = d.get(key)
        if not isinstance(existing, dict):
            existing = {}
            d[key] = existing
        d = existing
    d[keys[-1]] = value


def _resolve_env_path(parts: list[str], reference: dict[str, Any]) -> list[str]:
    """
    Map EPH_ variable segments onto existing config keys.

    Config keys contain underscores themselves (interval_seconds), so
    segments are greedily joined until they match a key present in the
    reference config. Unknown tails fall back to one key per segment.
    """
    path: list[str] = []
    node: Any = reference
    i = 0
    while i < len(parts):
        matched = False
        if isinstance(node, dict):
            for j in range(len(parts), i, -1):
                candidate = "_".join(parts[i:j])
                if candidate in node:
                    path.append(candidate)
                    node = node[candidate]
                    i = j
                    matched = True
                    break
        if not matched:
            if i == len(parts) - 1 or not isinstance(node, dict):
                path.append("_".join(parts[i:]))
                break
            path.append(parts[i])
            node = None
            i += 1
    return path


def _load_env_overrides(
    reference: dict[str, Any],
    prefix: str = "EPH_",
) -> dict[str, Any]:
    """
    Load EPH_ prefixed environment variables as config overrides.

    Naming convention:
      EPH_SECTION_KEY=value → {"section": {"key": value}}
      EPH_SWEEPER_INTERVAL_SECONDS=60 → {"sweeper": {"interval_seconds": 60}}

    Values are parsed as YAML scalars (numbers, booleans, lists).
    """
    excluded = {"EPH_ENV", "EPH_CONFIG_DIR", "EPH_VERSION"}
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in excluded:
            continue

        parts = key[len(prefix):].lower().split("_")
        path = _resolve_env_path(parts, reference)

        try:
            parsed = yaml.safe_load(value)
        except yaml.YAMLError:
            parsed = value

        _set_nested(overrides, path, parsed)

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str | None = None,
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (EPH_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (ephemera.yaml)

    Returns:
        Merged configuration dict
    """
    base_path = base_path or find_config_path() or DEFAULT_CONFIG_NAME

    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides(config)
        if env_overrides:
            config = deep_merge(config, env_overrides)

    # Stamp active profile for observability
    config["_active_env"] = env or os.environ.get("EPH_ENV", "default")
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
        get_config_value("dispatcher.max_workers", cfg, 8)
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
