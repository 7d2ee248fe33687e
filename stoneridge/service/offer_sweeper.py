"""Background worker that expires stale offers.

Every ``interval`` seconds the worker asks the negotiation engine to turn
PENDING offers whose ``expires_at`` has passed into REJECTED. The sweep is
idempotent, so the worker can be stopped and restarted at any point.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from stoneridge.logging import get_logger
from stoneridge.service.clock import Clock
from stoneridge.service.negotiation import NegotiationEngine

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60 * 60
MAX_BACKOFF_SECONDS = 15 * 60


class OfferExpiryWorker:
    def __init__(
        self,
        engine: NegotiationEngine,
        clock: Clock,
        *,
        interval: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.engine = engine
        self.clock = clock
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("offer_sweeper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("offer_sweeper_started", interval_seconds=self.interval)

    async def stop(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("offer_sweeper_stopped")

    async def run_once(self) -> int:
        """Run one sweep at the clock's current time and return the rows expired."""
        now = self.clock.now()
        # Store calls block; keep them off the event loop
        return await asyncio.to_thread(self.engine.sweep_expired, now)

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "offer_sweeper_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Exponential backoff on repeated errors
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS, self.interval * (2 ** (consecutive_errors - 3))
                    )
                    logger.warning(
                        "offer_sweeper_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.interval)
