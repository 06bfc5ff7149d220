"""Small helpers shared by the relay core."""

from .timing import log_timing, timed_lock_acquire, timed_operation

__all__ = ["log_timing", "timed_lock_acquire", "timed_operation"]
