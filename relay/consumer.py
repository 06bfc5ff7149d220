"""
Consumer fan-out: one bounded outbound channel per attached viewer.

The scheduler never waits on a viewer. offer() is synchronous and either
queues the payload or raises ConsumerBackpressure; a per-consumer sender
task (run()) drains the queue into the connection at whatever pace the
connection allows.
"""

import asyncio
import logging
import time
import uuid
from typing import Awaitable, Callable, Iterable, Optional

from config import CONSUMER_MAX_BUFFERED_BYTES, CONSUMER_MAX_QUEUED_MESSAGES
from diagnostics.session_diagnostics import record_consumer_saturated
from models import DroppedMessage
from relay.errors import ConsumerBackpressure

logger = logging.getLogger(__name__)

# Queue marker that ends the sender loop
_CLOSE = object()


class Consumer:
    """An attached connection with its own bounded outbound queue."""

    def __init__(
        self,
        device_id: str,
        send: Callable[[str], Awaitable[None]],
        max_buffered_bytes: int = CONSUMER_MAX_BUFFERED_BYTES,
        max_queued_messages: int = CONSUMER_MAX_QUEUED_MESSAGES,
        consumer_id: Optional[str] = None,
    ):
        self.consumer_id = consumer_id or uuid.uuid4().hex[:12]
        self.device_id = device_id
        self.connected_since = time.time()
        self.max_buffered_bytes = max_buffered_bytes
        self.max_queued_messages = max_queued_messages

        self._send = send
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued_bytes = 0
        self._finished = False
        self._closed = False

        self.lines_delivered = 0
        self.messages_sent = 0
        self.dropped_batches = 0
        self._drop_streak = 0
        self._unreported_drops = 0
        # Leading lines of the next live batch already sent in the backlog
        self._backlog_overlap = 0

    def __repr__(self) -> str:
        return f"Consumer({self.consumer_id!r}, device_id={self.device_id!r})"

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def queued_bytes(self) -> int:
        """Bytes handed to this consumer but not yet sent."""
        return self._queued_bytes

    @property
    def queued_messages(self) -> int:
        return self._queue.qsize()

    @property
    def drop_streak(self) -> int:
        """Consecutive drops since the last accepted delivery."""
        return self._drop_streak

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def closed(self) -> bool:
        return self._closed

    def set_backlog_overlap(self, lines: int) -> None:
        self._backlog_overlap = lines

    def take_backlog_overlap(self) -> int:
        """How many leading lines of this live batch to skip (once)."""
        overlap, self._backlog_overlap = self._backlog_overlap, 0
        return overlap

    def reset_view(self) -> None:
        """Reset view-side state after a clear request."""
        self.lines_delivered = 0

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def offer(self, payload: str, lines: int = 0, force: bool = False) -> None:
        """
        Queue a serialized message for delivery without blocking.

        Args:
            payload: serialized message
            lines: number of log lines carried by the payload
            force: skip the thresholds (used for the attach backlog)

        Raises:
            ConsumerBackpressure: the delivery would cross the byte or message
                threshold and was dropped for this consumer.
        """
        if self._finished or self._closed:
            return

        size = len(payload.encode("utf-8"))
        if not force and (
            self._queued_bytes + size > self.max_buffered_bytes
            or self._queue.qsize() >= self.max_queued_messages
        ):
            self.dropped_batches += 1
            self._drop_streak += 1
            self._unreported_drops += 1
            raise ConsumerBackpressure(self.consumer_id, self._queued_bytes, self._queue.qsize())

        self._drop_streak = 0
        self._enqueue(payload, size, lines)

    def finish(self, payload: Optional[str] = None) -> None:
        """
        Queue a final message (always delivered, regardless of thresholds)
        and end the sender after it. Later offers are ignored.
        """
        if self._finished:
            return
        self._finished = True
        if payload is not None:
            self._enqueue(payload, len(payload.encode("utf-8")), 0)
        self._queue.put_nowait(_CLOSE)

    def _enqueue(self, payload: str, size: int, lines: int) -> None:
        # Drops since the previous accepted message are reported just ahead of this one
        drops_before, self._unreported_drops = self._unreported_drops, 0
        self._queued_bytes += size
        self._queue.put_nowait((payload, size, lines, drops_before))

    def close(self) -> None:
        """Stop the sender without a final message (connection went away)."""
        self._closed = True
        self._queue.put_nowait(_CLOSE)

    # ------------------------------------------------------------------
    # Sender task
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Deliver queued messages in order until finished, closed, or send fails."""
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSE or self._closed:
                    break
                payload, size, lines, drops_before = item
                if drops_before:
                    await self._send(DroppedMessage(count=drops_before).model_dump_json())
                await self._send(payload)
                self._queued_bytes -= size
                self.messages_sent += 1
                self.lines_delivered += lines
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Send to consumer {self.consumer_id} ({self.device_id}) failed: {e!r}")
        finally:
            self._closed = True


def fan_out(consumers: Iterable[Consumer], payload: str, lines: int = 0) -> int:
    """
    Offer one payload to every consumer. A saturated consumer loses this
    delivery; nobody else is affected. Returns the number of consumers that
    accepted it.
    """
    accepted = 0
    for consumer in consumers:
        try:
            consumer.offer(payload, lines=lines)
            accepted += 1
        except ConsumerBackpressure as e:
            if consumer.drop_streak == 1:
                logger.warning(f"Dropping batches for slow consumer: {e}")
                record_consumer_saturated(consumer.device_id, consumer.consumer_id, e.queued_bytes)
            else:
                logger.debug(f"Dropped batch #{consumer.dropped_batches} for {consumer.consumer_id}")
    return accepted
