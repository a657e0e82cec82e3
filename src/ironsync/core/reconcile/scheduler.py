"""
Caller-owned periodic group sync.

The engine has no timers of its own. PeriodicSync runs ``sync_group`` on a
fixed interval from an asyncio task that the caller starts and stops, so
its lifetime is always explicit.

Example:
    >>> scheduler = PeriodicSync(engine, lambda: config.sync.group, interval_seconds=300)
    >>> scheduler.start()
    >>> ...
    >>> await scheduler.stop()
"""

import asyncio
import logging
from collections.abc import Callable, Sequence

from ironsync.core.reconcile.engine import ReconciliationEngine
from ironsync.core.reconcile.exceptions import SyncInProgressError
from ironsync.core.reconcile.models import MergedView

logger = logging.getLogger(__name__)


class PeriodicSync:
    """
    Runs a group sync every ``interval_seconds``.

    Attributes:
        engine: Engine to drive
        identities_provider: Returns the members to sync on each tick
        interval_seconds: Delay between the end of one tick and the next
        force_refresh: Bypass the merged cache on every tick
        runs: Number of ticks that completed a sync
        skipped: Number of ticks skipped because a sync was in progress
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        identities_provider: Callable[[], Sequence[str]],
        interval_seconds: float,
        *,
        force_refresh: bool = False,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.engine = engine
        self.identities_provider = identities_provider
        self.interval_seconds = interval_seconds
        self.force_refresh = force_refresh
        self.runs = 0
        self.skipped = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> list[MergedView] | None:
        """
        Run a single tick.

        Returns:
            The synced views, or None if the tick was skipped or failed
        """
        identities = list(self.identities_provider())
        if not identities:
            logger.debug("Periodic sync: no members to sync")
            return None
        try:
            views = await self.engine.sync_group(identities, force_refresh=self.force_refresh)
        except SyncInProgressError:
            self.skipped += 1
            logger.info("Periodic sync skipped: a sync is already in progress")
            return None
        except Exception:
            logger.exception("Periodic sync failed")
            return None
        self.runs += 1
        return views

    async def _loop(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        """Start ticking on the running event loop. No-op if already running."""
        if self.running:
            return
        logger.info(f"Starting periodic sync every {self.interval_seconds:g}s")
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Periodic sync stopped")


__all__ = ["PeriodicSync"]
