"""
Sync Worker - Periodic cycle loop with graceful shutdown.

Runs one sync cycle every ``interval_seconds``. A failing cycle is logged
and the loop carries on. Shutdown signals the running cycle to stop before
its next chunk, gives it a bounded grace period, then seals the state
store so nothing is committed after the window closes.
"""

from __future__ import annotations

import asyncio
from typing import Callable

from tally_sync.core.engine import CycleStats, SyncEngine
from tally_sync.utils.logger import get_logger

logger = get_logger(__name__)

CycleCallback = Callable[[CycleStats], None]


class SyncWorker:
    """
    Background loop driving a SyncEngine.

    Example:
        worker = SyncWorker(engine, interval_seconds=900)
        worker.start()
        ...
        await worker.shutdown()
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval_seconds: float,
        shutdown_grace_seconds: float = 30.0,
        on_cycle: CycleCallback | None = None,
    ) -> None:
        """
        Initialize worker.

        Args:
            engine: Engine whose cycles are run
            interval_seconds: Pause between the end of one cycle and the next
            shutdown_grace_seconds: How long shutdown waits for a running cycle
            on_cycle: Called with the stats of every finished cycle
        """
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.on_cycle = on_cycle
        self.cycles_run = 0
        self.last_stats: CycleStats | None = None

        self._stopping = asyncio.Event()
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the loop task is alive."""
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        """Start the loop in a background task."""
        if self.running:
            raise RuntimeError("Worker already running")
        self._task = asyncio.create_task(self._run(), name="tally-sync-worker")
        return self._task

    async def wait(self) -> None:
        """Wait for the loop task to end."""
        if self._task is not None:
            await self._task

    def trigger(self) -> bool:
        """
        Ask for a cycle now instead of at the next interval.

        Returns:
            False if a cycle is already running (the request is dropped)
        """
        if self.engine.busy:
            logger.warning("Sync already in progress, trigger ignored")
            return False
        self._wake.set()
        return True

    async def _run(self) -> None:
        logger.info("Sync worker started (every %.0fs)", self.interval_seconds)
        while not self._stopping.is_set():
            try:
                stats = await self.engine.run_cycle(self._stopping)
                self.cycles_run += 1
                self.last_stats = stats
                if self.on_cycle:
                    self.on_cycle(stats)
            except Exception:
                logger.exception("Sync cycle crashed")

            await self._pause()
        logger.info("Sync worker stopped")

    async def _pause(self) -> None:
        """Sleep until the interval elapses, a trigger, or shutdown."""
        waiters = [
            asyncio.create_task(self._stopping.wait()),
            asyncio.create_task(self._wake.wait()),
        ]
        try:
            await asyncio.wait(
                waiters,
                timeout=self.interval_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                waiter.cancel()
            self._wake.clear()

    async def shutdown(self, grace_seconds: float | None = None) -> None:
        """
        Stop the loop.

        Signals cancellation, waits up to the grace period for a running
        cycle, seals the engine so no later commit can land, then cancels
        whatever is still running and closes the engine's clients.

        Args:
            grace_seconds: Overrides ``shutdown_grace_seconds``
        """
        grace = self.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self._stopping.set()

        task = self._task
        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=grace)
            if not done:
                logger.warning(
                    "Sync cycle still running after %.0fs grace, cancelling", grace
                )

        self.engine.seal()

        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self.engine.close()
