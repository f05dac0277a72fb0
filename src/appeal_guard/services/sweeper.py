"""Periodic eviction of expired bans and idle counters."""

from __future__ import annotations

import asyncio
import logging

from appeal_guard.services.reputation import ReputationStore, SweepResult

logger = logging.getLogger(__name__)


class ReputationSweeper:
    """Runs ``store.sweep()`` on a fixed interval in a background task."""

    def __init__(self, store: ReputationStore, interval_seconds: float = 300.0) -> None:
        self.store = store
        self.interval_seconds = max(0.1, float(interval_seconds))
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the sweep loop if it is not already running."""
        if not self.running:
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Signal the loop to finish and wait for it."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def sweep_once(self) -> SweepResult:
        result = await self.store.sweep()
        if result.bans or result.counters or result.signatures:
            logger.info(
                "Sweep evicted %d bans, %d counters, %d signatures",
                result.bans,
                result.counters,
                result.signatures,
            )
        return result

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
            else:
                return
            try:
                await self.sweep_once()
            except (ValueError, TypeError, KeyError) as exc:
                logger.error("Reputation sweep failed: %s", exc, exc_info=True)
