"""Tests for Consumer and fan_out (per-consumer backpressure)."""
import asyncio
import json

import pytest

from conftest import Sink, wait_until
from relay import Consumer, ConsumerBackpressure, fan_out


def _batch(*lines):
    return json.dumps({'type': 'batch', 'lines': list(lines), 'is_backlog': False})


class TestConsumerDelivery:
    def test_delivers_in_order_and_tracks_watermark(self):
        async def scenario():
            sink = Sink()
            consumer = Consumer('dev-1', sink.send)
            consumer.offer(_batch('a'), lines=1)
            consumer.offer(_batch('b', 'c'), lines=2)
            assert consumer.queued_messages == 2
            assert consumer.queued_bytes > 0

            task = asyncio.create_task(consumer.run())
            await wait_until(lambda: len(sink.raw) == 2)
            assert consumer.queued_bytes == 0
            assert consumer.lines_delivered == 3
            consumer.close()
            await task
            return sink

        sink = asyncio.run(scenario())
        assert sink.lines == ['a', 'b', 'c']

    def test_finish_delivers_terminal_message_and_ends(self):
        async def scenario():
            sink = Sink()
            consumer = Consumer('dev-1', sink.send)
            task = asyncio.create_task(consumer.run())
            consumer.offer(_batch('x'), lines=1)
            consumer.finish(json.dumps({'type': 'stopped', 'reason': 'exited'}))
            consumer.offer(_batch('late'), lines=1)
            await asyncio.wait_for(task, timeout=5)
            return sink, consumer

        sink, consumer = asyncio.run(scenario())
        assert [m['type'] for m in sink.messages] == ['batch', 'stopped']
        assert consumer.finished
        assert consumer.closed

    def test_send_failure_closes_only_this_consumer(self):
        async def failing_send(text):
            raise ConnectionResetError('peer gone')

        async def scenario():
            consumer = Consumer('dev-1', failing_send)
            consumer.offer(_batch('a'))
            await asyncio.wait_for(consumer.run(), timeout=5)
            return consumer

        consumer = asyncio.run(scenario())
        assert consumer.closed

    def test_reset_view_clears_line_count(self):
        async def scenario():
            sink = Sink()
            consumer = Consumer('dev-1', sink.send)
            consumer.offer(_batch('a', 'b'), lines=2)
            task = asyncio.create_task(consumer.run())
            await wait_until(lambda: consumer.lines_delivered == 2)
            consumer.reset_view()
            consumer.close()
            await task
            return consumer

        assert asyncio.run(scenario()).lines_delivered == 0


class TestConsumerBackpressure:
    def test_byte_threshold_drops_delivery(self):
        async def scenario():
            consumer = Consumer('dev-1', Sink().send, max_buffered_bytes=100)
            consumer.offer('x' * 80)
            with pytest.raises(ConsumerBackpressure):
                consumer.offer('y' * 30)
            return consumer

        consumer = asyncio.run(scenario())
        assert consumer.dropped_batches == 1
        assert consumer.queued_messages == 1
        assert consumer.queued_bytes == 80

    def test_message_threshold_drops_delivery(self):
        async def scenario():
            consumer = Consumer('dev-1', Sink().send, max_queued_messages=2)
            consumer.offer(_batch('a'))
            consumer.offer(_batch('b'))
            with pytest.raises(ConsumerBackpressure):
                consumer.offer(_batch('c'))
            return consumer

        consumer = asyncio.run(scenario())
        assert consumer.dropped_batches == 1
        assert consumer.drop_streak == 1

    def test_force_bypasses_thresholds(self):
        async def scenario():
            consumer = Consumer('dev-1', Sink().send, max_buffered_bytes=10)
            consumer.offer('z' * 50, force=True)
            return consumer

        assert asyncio.run(scenario()).queued_bytes == 50

    def test_dropped_notice_precedes_next_delivery(self):
        async def scenario():
            sink = Sink()
            consumer = Consumer('dev-1', sink.send, max_queued_messages=1)
            consumer.offer(_batch('kept'), lines=1)
            for _ in range(3):
                with pytest.raises(ConsumerBackpressure):
                    consumer.offer(_batch('lost'), lines=1)
            task = asyncio.create_task(consumer.run())
            await wait_until(lambda: len(sink.raw) == 1)
            consumer.offer(_batch('after'), lines=1)
            await wait_until(lambda: len(sink.raw) == 3)
            consumer.close()
            await task
            return sink

        sink = asyncio.run(scenario())
        assert [m['type'] for m in sink.messages] == ['batch', 'dropped', 'batch']
        assert sink.messages[1]['count'] == 3
        assert sink.lines == ['kept', 'after']

    def test_accepted_offer_resets_drop_streak(self):
        async def scenario():
            consumer = Consumer('dev-1', Sink().send, max_queued_messages=1)
            consumer.offer('a')
            with pytest.raises(ConsumerBackpressure):
                consumer.offer('b')
            # Simulate the sender taking the queued message
            consumer._queue.get_nowait()
            consumer.offer('c')
            return consumer

        consumer = asyncio.run(scenario())
        assert consumer.drop_streak == 0
        assert consumer.dropped_batches == 1


class TestFanOut:
    def test_slow_consumer_does_not_affect_fast_one(self):
        async def scenario():
            stuck = asyncio.Event()
            slow_sink, fast_sink = Sink(block=stuck), Sink()
            slow = Consumer('dev-1', slow_sink.send, max_queued_messages=1)
            fast = Consumer('dev-1', fast_sink.send)
            tasks = [asyncio.create_task(c.run()) for c in (slow, fast)]

            accepted = []
            for i in range(5):
                accepted.append(fan_out([slow, fast], _batch(f'line {i}'), lines=1))
                await asyncio.sleep(0.01)

            await wait_until(lambda: len(fast_sink.raw) == 5)
            for c in (slow, fast):
                c.close()
            stuck.set()
            await asyncio.gather(*tasks)
            return slow, fast_sink, accepted

        slow, fast_sink, accepted = asyncio.run(scenario())
        assert fast_sink.lines == [f'line {i}' for i in range(5)]
        assert slow.dropped_batches >= 3
        assert accepted[0] == 2
        assert min(accepted) == 1

    def test_returns_zero_for_no_consumers(self):
        assert fan_out([], _batch('a')) == 0
