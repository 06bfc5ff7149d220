"""
Fixed-capacity, overwrite-oldest store.

Used per device for recent log lines and by the service log handler
(log_buffer.py). Pushes may come from any thread, so access is guarded
by a lock; snapshots are copies and never change after they are returned.
"""

import threading
from collections import deque
from typing import Generic, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """Thread-safe FIFO ring: O(1) push, O(n) chronological snapshot."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"RingBuffer capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._items: deque[T] = deque(maxlen=capacity)
        self._total = 0
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def total_pushed(self) -> int:
        """Number of items ever pushed, including evicted ones."""
        with self._lock:
            return self._total

    def push(self, item: T) -> None:
        """Append an item, evicting the oldest one when full."""
        with self._lock:
            self._items.append(item)
            self._total += 1

    def snapshot(self) -> list[T]:
        """Return all held items, oldest first."""
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
