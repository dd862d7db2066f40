"""
Quote Commander — Environment Config Loader

Three-tier configuration loading:
  1. Base file (commander_config.yaml at the repo root or cwd)
  2. Per-environment overlay files (config/{QC_ENV}.yaml merged over base)
  3. Environment variable overrides (QC_ prefixed)

Usage:
    from engine.config import Settings, load_config, get_config_value

    cfg = load_config(env="prod")
    timeout = get_config_value("llm.turn_timeout_seconds", cfg, 4.0)

    settings = Settings.from_config(cfg)

Environment variables:
    QC_ENV         — active profile (dev, staging, prod)
    QC_CONFIG_DIR  — directory for overlay files (default: config/)
    REDIS_URL      — Redis DSN for the state store and the event queue
    QC_*           — nested overrides (e.g., QC_CALL__TTL_SECONDS=1800)
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("quote_commander.config")

_DEFAULT_BASE = Path(__file__).parent.parent / "commander_config.yaml"


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


def _set_nested(d: dict, keys: list[str], value: Any):
    """Set a nested dict value from a list of keys."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


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
    Looks for {config_dir}/{env}.yaml, then config/{env}.yaml beside the base.
    """
    env = env or os.environ.get("QC_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("QC_CONFIG_DIR", "config")
    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path)) / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            try:
                with open(path) as f:
                    overlay = yaml.safe_load(f) or {}
                logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
                return overlay
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to load overlay %s: %s", path, e)

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = "QC_") -> dict[str, Any]:
    """
    Load QC_ prefixed environment variables as config overrides.

    Naming convention (double underscore separates levels, so keys may
    keep their own underscores):
      QC_SECTION__KEY=value → {"section": {"key": value}}

    Values are parsed as YAML scalars (numbers, booleans).
    """
    excluded = {"QC_ENV", "QC_CONFIG_DIR", "QC_VERSION", "QC_COMMANDER_PARTITION"}
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in excluded:
            continue
        path = key[len(prefix):].lower().split("__")
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
    base_path: str | Path = _DEFAULT_BASE,
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (QC_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (commander_config.yaml)
    """
    base_path = str(base_path)
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

    config["_active_env"] = env or os.environ.get("QC_ENV", "default")
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
        get_config_value("negotiation.max_attempts", cfg, 2)
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


# ═══════════════════════════════════════════════════════════════════
# Typed Settings
# ═══════════════════════════════════════════════════════════════════

def _as_bool(raw: Any) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    return bool(raw)


# Settings field → dotted config path
_SETTINGS_PATHS: dict[str, str] = {
    "redis_url": "redis.url",
    "store_backend": "store.backend",
    "event_backend": "events.backend",
    "call_ttl_seconds": "call.ttl_seconds",
    "call_retention_seconds": "call.retention_seconds",
    "call_lock_ttl_ms": "call.lock_ttl_ms",
    "call_lock_wait_seconds": "call.lock_wait_seconds",
    "commander_ttl_seconds": "commander.ttl_seconds",
    "directive_ttl_seconds": "commander.directive_ttl_seconds",
    "commander_init_retries": "commander.init_retries",
    "commander_init_retry_delay_seconds": "commander.init_retry_delay_seconds",
    "commander_partitions": "commander.partitions",
    "turn_llm_timeout_seconds": "llm.turn_timeout_seconds",
    "commander_llm_timeout_seconds": "llm.commander_timeout_seconds",
    "turn_model": "llm.turn_model",
    "commander_model": "llm.commander_model",
    "overseer_model": "llm.overseer_model",
    "overseer_llm_timeout_seconds": "llm.overseer_timeout_seconds",
    "overseer_enabled": "overseer.enabled",
    "nudge_ttl_seconds": "overseer.nudge_ttl_seconds",
    "max_negotiation_attempts": "negotiation.max_attempts",
    "negotiation_threshold": "negotiation.threshold",
    "target_price_ratio": "negotiation.target_price_ratio",
    "bot_screening_max_attempts": "negotiation.bot_screening_max_attempts",
    "max_clarification_attempts": "negotiation.max_clarification_attempts",
}


@dataclass
class Settings:
    """Resolved runtime settings shared by the API, the turn handler and the Commander."""
    redis_url: str = "redis://localhost:6379"
    store_backend: str = "memory"          # memory | redis
    event_backend: str = "inline"          # inline | arq
    call_ttl_seconds: int = 3600
    call_retention_seconds: int = 600
    call_lock_ttl_ms: int = 15000
    call_lock_wait_seconds: float = 2.0
    commander_ttl_seconds: int = 7200
    directive_ttl_seconds: int = 300
    commander_init_retries: int = 1
    commander_init_retry_delay_seconds: float = 0.5
    commander_partitions: int = 4
    turn_llm_timeout_seconds: float = 4.0
    commander_llm_timeout_seconds: float = 15.0
    turn_model: str = "fast"
    commander_model: str = "standard"
    overseer_model: str = "fast"
    overseer_llm_timeout_seconds: float = 6.0
    overseer_enabled: bool = True
    nudge_ttl_seconds: int = 120
    max_negotiation_attempts: int = 2
    negotiation_threshold: float = 0.20
    target_price_ratio: float = 0.85
    bot_screening_max_attempts: int = 3
    max_clarification_attempts: int = 2

    @staticmethod
    def from_config(config: dict[str, Any] | None = None) -> Settings:
        """Build Settings from a merged config dict; REDIS_URL wins for the DSN."""
        if config is None:
            config = load_config()
        values: dict[str, Any] = {}
        for f in fields(Settings):
            raw = get_config_value(_SETTINGS_PATHS[f.name], config, None)
            if raw is None:
                continue
            default = getattr(Settings, f.name)
            if isinstance(default, bool):
                values[f.name] = _as_bool(raw)
                continue
            try:
                values[f.name] = type(default)(raw)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid setting %s=%r", f.name, raw)
        env_redis = os.environ.get("REDIS_URL", "").strip()
        if env_redis:
            values["redis_url"] = env_redis
        return Settings(**values)
