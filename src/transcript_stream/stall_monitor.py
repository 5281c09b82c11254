"""
Stall Monitor

Background asyncio task that warns when the provider has not delivered a
chunk for longer than the stall threshold. It only observes; the stream is
never cancelled because of a stall.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from .metrics import IngestionMetrics

logger = logging.getLogger(__name__)


class StallMonitor:
    """Periodic check of the time elapsed since the last received chunk"""

    def __init__(
        self,
        stall_threshold_ms: int,
        check_interval_ms: Optional[int] = None,
        on_stall: Optional[Callable[[int], None]] = None,
        entity_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.stall_threshold_ms = stall_threshold_ms
        self.check_interval_ms = check_interval_ms or stall_threshold_ms
        self.on_stall = on_stall
        self.entity_id = entity_id
        self.stall_count = 0
        self._clock = clock
        self._last_chunk_at = clock()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def mark_chunk(self):
        """Record chunk arrival (called from the ingestion task)"""
        self._last_chunk_at = self._clock()

    def check(self) -> Optional[int]:
        """
        Compare now against the last chunk timestamp

        Returns:
            Elapsed milliseconds when stalled, otherwise None
        """
        elapsed_ms = int((self._clock() - self._last_chunk_at) * 1000)
        if elapsed_ms <= self.stall_threshold_ms:
            return None

        self.stall_count += 1
        IngestionMetrics.record_stall()
        logger.warning(
            f"[{self.entity_id}] Stream stalled: no chunk for {elapsed_ms}ms "
            f"(threshold={self.stall_threshold_ms}ms)"
        )

        if self.on_stall is not None:
            try:
                self.on_stall(elapsed_ms)
            except Exception as e:
                logger.error(f"[{self.entity_id}] Stall callback failed: {e}")

        return elapsed_ms

    def start(self):
        """Start ticking; the stall clock starts now"""
        if self.running:
            return
        self._last_chunk_at = self._clock()
        self._task = asyncio.create_task(self._run(), name=f"stall-monitor-{self.entity_id}")

    async def stop(self):
        """Stop ticking. Safe to call more than once."""
        task, self._task = self._task, None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self):
        interval = self.check_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self.check()

    async def __aenter__(self) -> "StallMonitor":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
        return False
