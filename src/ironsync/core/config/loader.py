"""
Configuration loading with multi-layer merging.

Implements the configuration precedence chain:
    defaults < user config < project config < env vars
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from .models import IronsyncConfig

logger = logging.getLogger(__name__)

# Global cache to avoid reloading config multiple times per session
_config_cache: IronsyncConfig | None = None

_FALSE_VALUES = ("false", "0", "no", "off", "")


def get_xdg_config_home() -> Path:
    """
    Get XDG config home directory.

    Returns:
        Path to config directory (defaults to ~/.config)
    """
    if xdg_home := os.environ.get("XDG_CONFIG_HOME"):
        return Path(xdg_home)
    return Path.home() / ".config"


def get_xdg_cache_home() -> Path:
    if xdg_cache := os.environ.get("XDG_CACHE_HOME"):
        return Path(xdg_cache)
    return Path.home() / ".cache"


def get_user_config_path() -> Path:
    """
    Get path to user configuration file.

    Returns:
        Path to ~/.config/ironsync/config.json (or XDG equivalent)
    """
    return get_xdg_config_home() / "ironsync" / "config.json"


def get_project_config_path(cwd: Path | None = None) -> Path:
    """
    Get path to project configuration file.

    Args:
        cwd: Working directory to search from (defaults to current directory)

    Returns:
        Path to .ironsync.json in the project root
    """
    if cwd is None:
        cwd = Path.cwd()
    return cwd / ".ironsync.json"


def get_default_snapshot_path() -> Path:
    """Default snapshot location: ~/.cache/ironsync/snapshot.json (or XDG equivalent)."""
    return get_xdg_cache_home() / "ironsync" / "snapshot.json"


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Values in `override` take precedence over values in `base`.
    This is a recursive merge - nested dicts are merged, not replaced.

    Args:
        base: Base dictionary (lower priority)
        override: Override dictionary (higher priority)

    Returns:
        Merged dictionary with override values taking precedence

    Example:
        >>> base = {"cache": {"ttl_seconds": 900}, "sync": {"group": ["a"]}}
        >>> override = {"cache": {"reference_ttl_seconds": 3600}}
        >>> deep_merge(base, override)
        {'cache': {'ttl_seconds': 900, 'reference_ttl_seconds': 3600}, 'sync': {'group': ['a']}}
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_json_file(path: Path) -> dict[str, Any] | None:
    """
    Load a JSON file, returning None if it doesn't exist or is invalid.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON as dict, or None if file doesn't exist or can't be parsed
    """
    if not path.exists():
        return None

    try:
        with path.open() as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            return None
    except (json.JSONDecodeError, OSError) as e:
        # Config loading stays resilient: a broken file is skipped
        logger.warning(f"Failed to parse config at {path}: {e}")
        return None


def _section(result: dict[str, Any], name: str) -> dict[str, Any]:
    section = result.get(name)
    if not isinstance(section, dict):
        section = {}
    else:
        section = section.copy()
    result[name] = section
    return section


def _positive_float(name: str) -> float | None:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {name} value '{raw}', ignoring")
        return None
    if value <= 0:
        logger.warning(f"{name} must be > 0, got {value}, ignoring")
        return None
    return value


def apply_env_overrides(config_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Env vars have the highest precedence and override all config files.

    Supported env vars:
        IRONSYNC_API_URL - overrides primary.api_url
        IRONSYNC_GROUP - overrides sync.group (comma-separated)
        IRONSYNC_CACHE_TTL - overrides cache.ttl_seconds
        IRONSYNC_SYNC_INTERVAL - overrides sync.interval_seconds
        IRONSYNC_SECONDARY_ENABLED - overrides secondary.enabled

    The auth token (IRONSYNC_AUTH_TOKEN by default) is read separately by
    ``get_auth_token`` and never copied into the config.

    Args:
        config_dict: Configuration dictionary to override

    Returns:
        Configuration dictionary with env var overrides applied
    """
    result = config_dict.copy()

    if api_url := os.environ.get("IRONSYNC_API_URL"):
        _section(result, "primary")["api_url"] = api_url

    if group := os.environ.get("IRONSYNC_GROUP"):
        _section(result, "sync")["group"] = [
            name.strip() for name in group.split(",") if name.strip()
        ]

    if (ttl := _positive_float("IRONSYNC_CACHE_TTL")) is not None:
        _section(result, "cache")["ttl_seconds"] = ttl

    if (interval := _positive_float("IRONSYNC_SYNC_INTERVAL")) is not None:
        _section(result, "sync")["interval_seconds"] = interval

    if (enabled_str := os.environ.get("IRONSYNC_SECONDARY_ENABLED")) is not None:
        _section(result, "secondary")["enabled"] = enabled_str.lower() not in _FALSE_VALUES

    return result


def get_default_config() -> dict[str, Any]:
    """
    Get hardcoded default configuration.

    Returns:
        Dictionary with default configuration values
    """
    return {
        "cache": {"ttl_seconds": 900.0},
        "sync": {"group": [], "interval_seconds": 300.0, "max_retries": 2},
        "snapshot": {"enabled": False},
    }


def load_config(project_dir: Path | None = None, use_cache: bool = True) -> IronsyncConfig:
    """
    Load configuration with multi-layer merging.

    Configuration precedence (highest to lowest):
        1. Environment variables (IRONSYNC_*)
        2. Project config (.ironsync.json)
        3. User config (~/.config/ironsync/config.json)
        4. Hardcoded defaults

    Args:
        project_dir: Project directory to load .ironsync.json from (defaults to cwd)
        use_cache: If True, return cached config from previous load

    Returns:
        Validated IronsyncConfig instance

    Raises:
        ValidationError: If the merged config fails Pydantic validation

    Example:
        >>> config = load_config()
        >>> config.cache.ttl_seconds
        900.0
    """
    global _config_cache

    if use_cache and _config_cache is not None:
        return _config_cache

    merged = get_default_config()

    if user_config := load_json_file(get_user_config_path()):
        merged = deep_merge(merged, user_config)

    # Project config has higher priority than user config
    if project_config := load_json_file(get_project_config_path(project_dir)):
        merged = deep_merge(merged, project_config)

    merged = apply_env_overrides(merged)

    config = IronsyncConfig(**merged)
    _config_cache = config

    return config


def get_auth_token(config: IronsyncConfig) -> str:
    """Bearer token for the plugin feed, or '' if none is set."""
    return os.environ.get(config.primary.auth_token_env, "")


def get_wom_api_key(config: IronsyncConfig) -> str:
    return os.environ.get(config.secondary.api_key_env, "")


def clear_cache() -> None:
    """
    Clear the cached configuration.

    Useful for testing or when config files change during execution.
    """
    global _config_cache
    _config_cache = None
