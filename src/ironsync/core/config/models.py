"""
Configuration data models for ironsync.

These models define the structure of .ironsync.json and
~/.config/ironsync/config.json files, with validation and type safety via
Pydantic.
"""

from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PrimarySourceConfig(BaseModel):
    """
    Live plugin feed (PRIMARY source).

    The auth token is never stored in config files; it is read from the
    environment variable named by ``auth_token_env``.
    """
    enabled: bool = Field(
        default=True,
        description="Consult the plugin feed at all"
    )
    api_url: Optional[str] = Field(
        default=None,
        description="Plugin API root, e.g. 'https://dink.example.com/api'"
    )
    auth_token_env: str = Field(
        default="IRONSYNC_AUTH_TOKEN",
        description="Environment variable holding the bearer token"
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Overall deadline per call, retries included"
    )


class SecondarySourceConfig(BaseModel):
    """Wise Old Man statistics API (SECONDARY source)."""
    enabled: bool = Field(
        default=True,
        description="Consult Wise Old Man at all"
    )
    api_url: str = Field(
        default="https://api.wiseoldman.net/v2",
        description="Wise Old Man API root"
    )
    user_agent: str = Field(
        default="ironsync",
        description="User-Agent sent to the API"
    )
    api_key_env: str = Field(
        default="IRONSYNC_WOM_API_KEY",
        description="Environment variable holding an optional API key"
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Overall deadline per call, retries included"
    )


class ReferenceSourceConfig(BaseModel):
    """OSRS Wiki lookups (REFERENCE source)."""
    enabled: bool = Field(
        default=True,
        description="Consult the wiki at all"
    )
    api_url: str = Field(
        default="https://oldschool.runescape.wiki/api.php",
        description="MediaWiki api.php endpoint"
    )
    user_agent: str = Field(
        default="ironsync",
        description="User-Agent sent to the wiki"
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Overall deadline per call, retries included"
    )


class CacheConfig(BaseModel):
    """Lifetimes of cached adapter records and merged views."""
    ttl_seconds: float = Field(
        default=900.0,
        gt=0,
        description="TTL for adapter caches and merged views (15 minutes)"
    )
    reference_ttl_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Separate TTL for wiki lookups (defaults to ttl_seconds)"
    )


class SyncConfig(BaseModel):
    """
    Group sync behavior.

    ``group`` lists the members synced by ``ironsync sync`` when no names are
    given; a comma-separated string is accepted.
    """
    group: list[str] = Field(
        default_factory=list,
        description="Members of the tracked group"
    )
    interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Period of the background refresh"
    )
    max_retries: int = Field(
        default=2,
        ge=0,
        description="Retries for transient source failures"
    )

    @field_validator('group', mode='before')
    @classmethod
    def split_group(cls, v: Union[str, list[str]]) -> list[str]:
        """Accept 'a, b, c' as well as a list."""
        if isinstance(v, str):
            return [name.strip() for name in v.split(",") if name.strip()]
        return v


class SnapshotConfig(BaseModel):
    """Optional on-disk snapshot of adapter caches used as cold-start seed."""
    enabled: bool = Field(
        default=False,
        description="Load the snapshot at startup and save it after syncs"
    )
    path: Optional[Path] = Field(
        default=None,
        description="Snapshot file (defaults to the XDG cache directory)"
    )


class IronsyncConfig(BaseModel):
    """
    Top-level ironsync configuration.

    Loaded from defaults, user config, project config, and env vars.

    Example:
        >>> config = IronsyncConfig(
        ...     primary=PrimarySourceConfig(api_url="https://dink.example.com/api"),
        ...     sync=SyncConfig(group="Zezima, Lynx Titan"),
        ... )
        >>> config.sync.group
        ['Zezima', 'Lynx Titan']
    """
    primary: PrimarySourceConfig = Field(
        default_factory=PrimarySourceConfig,
        description="Plugin feed settings"
    )
    secondary: SecondarySourceConfig = Field(
        default_factory=SecondarySourceConfig,
        description="Wise Old Man settings"
    )
    reference: ReferenceSourceConfig = Field(
        default_factory=ReferenceSourceConfig,
        description="Wiki settings"
    )
    cache: CacheConfig = Field(
        default_factory=CacheConfig,
        description="Cache lifetimes"
    )
    sync: SyncConfig = Field(
        default_factory=SyncConfig,
        description="Group sync behavior"
    )
    snapshot: SnapshotConfig = Field(
        default_factory=SnapshotConfig,
        description="Cold-start snapshot"
    )

    model_config = ConfigDict(
        extra="allow",  # Allow extra fields for forward compatibility
        validate_assignment=True,
    )
