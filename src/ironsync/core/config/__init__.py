"""
Configuration models and loading.

This module provides Pydantic models for ironsync configuration
with multi-layer merging: defaults < user < project < env vars.
"""

from .env import load_layered_env
from .loader import (
    clear_cache,
    get_auth_token,
    get_default_snapshot_path,
    get_project_config_path,
    get_user_config_path,
    get_wom_api_key,
    get_xdg_config_home,
    load_config,
)
from .models import (
    CacheConfig,
    IronsyncConfig,
    PrimarySourceConfig,
    ReferenceSourceConfig,
    SecondarySourceConfig,
    SnapshotConfig,
    SyncConfig,
)

__all__ = [
    # Models
    "CacheConfig",
    "IronsyncConfig",
    "PrimarySourceConfig",
    "ReferenceSourceConfig",
    "SecondarySourceConfig",
    "SnapshotConfig",
    "SyncConfig",
    # Loader functions
    "clear_cache",
    "get_auth_token",
    "get_default_snapshot_path",
    "get_project_config_path",
    "get_user_config_path",
    "get_wom_api_key",
    "get_xdg_config_home",
    "load_config",
    "load_layered_env",
]
