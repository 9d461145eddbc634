"""Background sweep of expired identity records.

Sessions, password reset tokens and MFA challenges are kept after they
expire so revocation and audit lookups keep working for a while. This
worker deletes them once they are older than the retention window.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Dict, Optional

from iamcore.clock import Clock, utc_now
from iamcore.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60 * 60
DEFAULT_RETENTION_DAYS = 30
MAX_BACKOFF_SECONDS = 3600


class ExpirySweeper:
    """Periodically calls ``store.sweep_expired`` on its own schedule.

    Each pass is independent and idempotent; no lock is held between passes.
    """

    def __init__(
        self,
        store,
        *,
        interval: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.interval = interval
        self.retention = timedelta(days=retention_days)
        self._clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("expiry_sweeper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("expiry_sweeper_started", interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("expiry_sweeper_stopped")

    async def sweep_once(self) -> Dict[str, int]:
        cutoff = self._clock() - self.retention
        counts = await asyncio.to_thread(self.store.sweep_expired, cutoff)
        if any(counts.values()):
            logger.info("expiry_sweep_completed", cutoff=cutoff.isoformat(), **counts)
        return counts

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.sweep_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "expiry_sweeper_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS, self.interval * (2 ** (consecutive_errors - 3))
                    )
                    logger.warning(
                        "expiry_sweeper_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue
            await asyncio.sleep(self.interval)
