"""
Source adapters.

One adapter per SourceKind:
    PluginSource     PRIMARY    tracking plugin REST API
    WiseOldManSource SECONDARY  Wise Old Man statistics API
    WikiSource       REFERENCE  OSRS Wiki MediaWiki API

``build_adapters`` constructs all three from an IronsyncConfig.
"""

import logging
import time
from collections.abc import Callable
from typing import NamedTuple

import httpx

from ironsync.core.config import IronsyncConfig, get_auth_token, get_wom_api_key
from ironsync.core.reconcile.http import RetryConfig
from ironsync.core.reconcile.sources.base import (
    BaseSourceAdapter,
    SourceAdapter,
    StatusListener,
    require_mapping,
)
from ironsync.core.reconcile.sources.plugin import PluginSource
from ironsync.core.reconcile.sources.wiki import WikiSource
from ironsync.core.reconcile.sources.wiseoldman import WiseOldManSource

logger = logging.getLogger(__name__)


class Adapters(NamedTuple):
    primary: PluginSource
    secondary: WiseOldManSource
    reference: WikiSource


def build_adapters(
    config: IronsyncConfig,
    *,
    client: httpx.AsyncClient | None = None,
    clock: Callable[[], float] = time.time,
) -> Adapters:
    """
    Construct the three adapters from configuration.

    The plugin source is disabled when no API URL is configured.

    Args:
        config: Loaded configuration
        client: Shared HTTP client (each adapter creates its own if omitted)
        clock: Time source for every adapter cache
    """
    retry = RetryConfig(max_retries=config.sync.max_retries)
    ttl = config.cache.ttl_seconds

    api_url = config.primary.api_url
    if config.primary.enabled and not api_url:
        logger.warning("No plugin API URL configured; primary source disabled")
    primary = PluginSource(
        api_url or "",
        auth_token=get_auth_token(config),
        client=client,
        timeout=config.primary.timeout_seconds,
        cache_ttl_seconds=ttl,
        retry=retry,
        enabled=config.primary.enabled and bool(api_url),
        clock=clock,
    )
    secondary = WiseOldManSource(
        config.secondary.api_url,
        user_agent=config.secondary.user_agent,
        api_key=get_wom_api_key(config),
        client=client,
        timeout=config.secondary.timeout_seconds,
        cache_ttl_seconds=ttl,
        retry=retry,
        enabled=config.secondary.enabled,
        clock=clock,
    )
    reference = WikiSource(
        config.reference.api_url,
        user_agent=config.reference.user_agent,
        client=client,
        timeout=config.reference.timeout_seconds,
        cache_ttl_seconds=config.cache.reference_ttl_seconds or ttl,
        retry=retry,
        enabled=config.reference.enabled,
        clock=clock,
    )
    return Adapters(primary, secondary, reference)


__all__ = [
    "Adapters",
    "BaseSourceAdapter",
    "PluginSource",
    "SourceAdapter",
    "StatusListener",
    "WikiSource",
    "WiseOldManSource",
    "build_adapters",
    "require_mapping",
]
