"""Periodic batch delivery for one device session."""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class BatchScheduler:
    """
    Fires every `interval` seconds and hands the drained pending lines to
    `deliver`. The scheduler task is the only caller of `drain` while it runs;
    flush() may drain once more only after stop() has completed.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        drain: Callable[[], list[str]],
        deliver: Callable[[list[str]], None],
    ):
        self.name = name
        self.interval = interval
        self._drain = drain
        self._deliver = deliver
        self._task: Optional[asyncio.Task] = None
        self.batches_sent = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"batch-{self.name}")

    async def stop(self) -> None:
        """Cancel the timer and wait for it to finish. Idempotent."""
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        # wait() never raises the task's own CancelledError, only ours
        await asyncio.wait({task})

    def flush(self) -> int:
        """Deliver whatever is pending right now; returns the line count."""
        if self.running:
            raise RuntimeError(f"flush() while scheduler {self.name} is running")
        return self._tick()

    def _tick(self) -> int:
        batch = self._drain()
        if not batch:
            return 0
        self._deliver(batch)
        self.batches_sent += 1
        return len(batch)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self._tick()
            except Exception:
                # A failed delivery must not stop future batches
                logger.exception(f"Batch delivery failed for {self.name}")
