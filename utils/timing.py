"""
[TIMING] logging for the relay's slow paths: log tool spawn, session
teardown and waits on the per-device registry lock.

Everything is logged at DEBUG unless it took longer than the caller's
`slow_ms`, in which case it is promoted to WARNING. Filter with:
    grep "\\[TIMING\\]" relay.log
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncGenerator, Generator, Optional


def log_timing(
    logger: logging.Logger, operation: str, elapsed_ms: float, slow_ms: Optional[float] = None
) -> None:
    """Log one measurement, e.g. ``[TIMING] teardown dev-1: 4.2ms``."""
    if slow_ms is not None and elapsed_ms > slow_ms:
        logger.warning(f"[TIMING] {operation}: {elapsed_ms:.1f}ms (slow, limit {slow_ms:.0f}ms)")
    else:
        logger.debug(f"[TIMING] {operation}: {elapsed_ms:.1f}ms")


@contextmanager
def timed_operation(
    logger: logging.Logger, operation: str, slow_ms: Optional[float] = None
) -> Generator[None, None, None]:
    """
    Time the enclosed block. A block left by an exception is logged as
    FAILED and the exception propagates unchanged.

        with timed_operation(logger, "spawn dev-1", slow_ms=500):
            ...
    """
    start = time.perf_counter()
    failed = False
    try:
        yield
    except BaseException:
        failed = True
        raise
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000
        log_timing(logger, f"{operation} FAILED" if failed else operation, elapsed_ms, slow_ms)


@asynccontextmanager
async def timed_lock_acquire(
    lock: asyncio.Lock, logger: logging.Logger, name: str, slow_ms: Optional[float] = None
) -> AsyncGenerator[None, None]:
    """
    Hold `lock` for the enclosed block, logging only the time spent waiting
    for it (``[TIMING] registry:dev-1 lock wait: 0.1ms``).
    """
    start = time.perf_counter()
    await lock.acquire()
    try:
        log_timing(logger, f"{name} lock wait", (time.perf_counter() - start) * 1000, slow_ms)
        yield
    finally:
        lock.release()
