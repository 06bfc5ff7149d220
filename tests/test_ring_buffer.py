"""Tests for RingBuffer."""
import threading

import pytest

from relay import RingBuffer


class TestRingBuffer:
    def test_snapshot_in_push_order(self):
        ring = RingBuffer(5)
        for item in ('a', 'b', 'c'):
            ring.push(item)
        assert ring.snapshot() == ['a', 'b', 'c']
        assert len(ring) == 3

    @pytest.mark.parametrize('capacity,pushes', [(1, 5), (3, 4), (10, 1000)])
    def test_overflow_keeps_last_capacity_items(self, capacity, pushes):
        ring = RingBuffer(capacity)
        for i in range(pushes):
            ring.push(i)
        assert ring.snapshot() == list(range(pushes - capacity, pushes))
        assert len(ring) == capacity

    def test_exactly_full_evicts_nothing(self):
        ring = RingBuffer(3)
        for i in range(3):
            ring.push(i)
        assert ring.snapshot() == [0, 1, 2]

    def test_snapshot_is_a_copy(self):
        ring = RingBuffer(3)
        ring.push('x')
        snap = ring.snapshot()
        ring.push('y')
        snap.append('mutated')
        assert snap == ['x', 'mutated']
        assert ring.snapshot() == ['x', 'y']

    def test_total_pushed_counts_evicted_items(self):
        ring = RingBuffer(2)
        for i in range(7):
            ring.push(i)
        assert ring.total_pushed == 7
        assert len(ring) == 2

    def test_capacity_is_fixed(self):
        ring = RingBuffer(4)
        assert ring.capacity == 4

    @pytest.mark.parametrize('capacity', [0, -1])
    def test_invalid_capacity_rejected(self, capacity):
        with pytest.raises(ValueError):
            RingBuffer(capacity)

    def test_concurrent_pushes_are_all_counted(self):
        ring = RingBuffer(100)

        def worker():
            for i in range(500):
                ring.push(i)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert ring.total_pushed == 2000
        assert len(ring) == 100
