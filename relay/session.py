"""
Device session: the runtime unit behind one device id.

Holds the upstream process, the ring of recent lines, the pending batch,
the attached consumers and the batch scheduler. A session lives until its
last consumer detaches or its log tool exits, whichever happens first.
"""

import asyncio
import hashlib
import logging
import os
import re
import time
from typing import IO, Callable, Optional

from diagnostics.session_diagnostics import (
    record_session_end, record_spawn_attempt, record_spawn_failure, record_spawn_success,
)
from models import BatchMessage, ErrorMessage, SessionInfo, ConsumerInfo, StoppedMessage
from relay.consumer import Consumer, fan_out
from relay.errors import SpawnFailed, UnknownDevice, UpstreamError, UpstreamExited
from relay.ring_buffer import RingBuffer
from relay.scheduler import BatchScheduler
from relay.settings import RelaySettings
from relay.upstream import UpstreamSession
from utils.timing import timed_operation

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def mirror_path(mirror_dir: str, device_id: str) -> str:
    """
    Mirror file location for a device id: the id with unsafe characters
    replaced, plus a short hash of the raw id so that ids differing only in
    replaced characters ("dev/1", "dev_1") never share a file.
    """
    digest = hashlib.sha1(device_id.encode("utf-8")).hexdigest()[:8]
    return os.path.join(mirror_dir, f"{_UNSAFE_FILENAME_CHARS.sub('_', device_id)}-{digest}.log")


class DeviceSession:
    """Buffering and broadcast state for one device id."""

    def __init__(
        self,
        device_id: str,
        settings: RelaySettings,
        on_closed: Optional[Callable[["DeviceSession"], None]] = None,
    ):
        self.device_id = device_id
        self.settings = settings
        self.started_at = time.time()
        self.ring: RingBuffer[str] = RingBuffer(settings.ring_capacity)

        self._pending: list[str] = []
        self._consumers: dict[str, Consumer] = {}
        self._lock = asyncio.Lock()
        self._on_closed = on_closed
        self._mirror: Optional[IO[str]] = None
        self._terminated = False

        self.upstream = UpstreamSession(
            device_id,
            settings.command,
            on_line=self._handle_line,
            on_error=self._handle_error,
            on_exit=self._handle_exit,
            max_line_bytes=settings.max_line_bytes,
        )
        self.scheduler = BatchScheduler(
            device_id,
            settings.batch_interval,
            drain=self._take_pending,
            deliver=self._broadcast_batch,
        )

    def __repr__(self) -> str:
        return f"DeviceSession({self.device_id!r}, consumers={len(self._consumers)})"

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def consumer_count(self) -> int:
        return len(self._consumers)

    @property
    def consumers(self) -> list[Consumer]:
        return list(self._consumers.values())

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def info(self) -> SessionInfo:
        return SessionInfo(
            device_id=self.device_id,
            pid=self.upstream.pid,
            started_at=self.started_at,
            buffered_lines=len(self.ring),
            pending_lines=len(self._pending),
            total_lines=self.ring.total_pushed,
            consumers=[
                ConsumerInfo(
                    consumer_id=c.consumer_id,
                    connected_since=c.connected_since,
                    lines_delivered=c.lines_delivered,
                    dropped_batches=c.dropped_batches,
                    queued_bytes=c.queued_bytes,
                )
                for c in self._consumers.values()
            ],
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Open the mirror, spawn the log tool and start batching.

        Raises:
            SpawnFailed: the log tool could not be launched. Nothing is left
                running and the mirror is closed again.
        """
        record_spawn_attempt(self.device_id, self.upstream.argv)
        self._open_mirror()
        try:
            await self.upstream.start()
        except SpawnFailed as e:
            record_spawn_failure(self.device_id, str(e))
            self._terminated = True
            self._close_mirror()
            raise
        record_spawn_success(self.device_id, self.upstream.pid)
        self.scheduler.start()

    async def stop(self) -> None:
        """Tear down because nobody is watching any more. Idempotent."""
        await self._teardown(reason="detached")

    async def close(self, exited: Optional[UpstreamExited] = None) -> None:
        """Tear down; with `exited`, consumers first receive the last batch and `stopped`."""
        await self._teardown(reason=exited.reason if exited else "closed", exited=exited)

    async def _teardown(self, reason: str, exited: Optional[UpstreamExited] = None) -> None:
        if self._terminated:
            logger.debug(f"Session {self.device_id} already stopped ({reason} ignored)")
            return
        self._terminated = True

        slow_ms = self.settings.stop_timeout * 1000
        with timed_operation(logger, f"teardown {self.device_id}", slow_ms=slow_ms):
            await self.scheduler.stop()

            if exited is not None:
                self.scheduler.flush()
                stopped = StoppedMessage(
                    reason=exited.reason, returncode=exited.returncode
                ).model_dump_json()
                async with self._lock:
                    for consumer in self._consumers.values():
                        consumer.finish(stopped)

            await self.upstream.stop(timeout=self.settings.stop_timeout)
            self._close_mirror()

        record_session_end(
            self.device_id,
            reason=reason,
            returncode=self.upstream.returncode,
            total_lines=self.ring.total_pushed,
            duration_s=time.time() - self.started_at,
        )
        if self._on_closed is not None:
            self._on_closed(self)

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    async def add_consumer(self, consumer: Consumer) -> int:
        """
        Register a consumer and queue the full ring snapshot as its backlog,
        ahead of any live batch. Returns the consumer count.

        Lines still pending are in the snapshot too; the consumer skips them
        at the head of its next live batch so nothing arrives twice.

        Raises:
            UnknownDevice: the session was torn down in the meantime
        """
        async with self._lock:
            if self._terminated:
                raise UnknownDevice(self.device_id)
            self._consumers[consumer.consumer_id] = consumer
            backlog = self.ring.snapshot()
            if backlog:
                payload = BatchMessage(lines=backlog, is_backlog=True).model_dump_json()
                consumer.offer(payload, lines=len(backlog), force=True)
                consumer.set_backlog_overlap(len(self._pending))
            return len(self._consumers)

    async def remove_consumer(self, consumer: Consumer) -> int:
        """Unregister a consumer; returns how many remain."""
        async with self._lock:
            self._consumers.pop(consumer.consumer_id, None)
            return len(self._consumers)

    def has_consumer(self, consumer: Consumer) -> bool:
        return consumer.consumer_id in self._consumers

    # ------------------------------------------------------------------
    # Upstream callbacks
    # ------------------------------------------------------------------

    def _handle_line(self, line: str) -> None:
        self.ring.push(line)
        self._pending.append(line)
        if self._mirror is not None:
            try:
                self._mirror.write(line + "\n")
            except OSError as e:
                logger.error(f"Mirror write failed for {self.device_id}, disabling mirror: {e}")
                self._close_mirror()

    def _handle_error(self, error: UpstreamError) -> None:
        payload = ErrorMessage(message=error.message).model_dump_json()
        fan_out(list(self._consumers.values()), payload)

    async def _handle_exit(self, returncode: Optional[int]) -> None:
        await self.close(UpstreamExited(self.device_id, returncode))

    # ------------------------------------------------------------------
    # Batching
    # ------------------------------------------------------------------

    def _take_pending(self) -> list[str]:
        batch, self._pending = self._pending, []
        return batch

    def _broadcast_batch(self, lines: list[str]) -> None:
        payload = BatchMessage(lines=lines).model_dump_json()
        everyone = []
        for consumer in self._consumers.values():
            overlap = consumer.take_backlog_overlap()
            if not overlap:
                everyone.append(consumer)
                continue
            rest = lines[overlap:]
            if rest:
                fan_out([consumer], BatchMessage(lines=rest).model_dump_json(), lines=len(rest))
        fan_out(everyone, payload, lines=len(lines))
        self._flush_mirror()

    # ------------------------------------------------------------------
    # Mirror file
    # ------------------------------------------------------------------

    def _open_mirror(self) -> None:
        if not self.settings.mirror_dir:
            return
        path = mirror_path(self.settings.mirror_dir, self.device_id)
        try:
            os.makedirs(self.settings.mirror_dir, exist_ok=True)
            self._mirror = open(path, "a", encoding="utf-8")
            logger.info(f"Mirroring {self.device_id} to {path}")
        except OSError as e:
            logger.error(f"Cannot open mirror {path}: {e}")
            self._mirror = None

    def _flush_mirror(self) -> None:
        # Writes are block-buffered; each delivered batch pushes them to disk
        if self._mirror is None:
            return
        try:
            self._mirror.flush()
        except OSError as e:
            logger.error(f"Mirror flush failed for {self.device_id}, disabling mirror: {e}")
            self._close_mirror()

    def _close_mirror(self) -> None:

        if self._mirror is None:
            return
        mirror, self._mirror = self._mirror, None
        try:
            mirror.close()
        except OSError as e:
            logger.warning(f"Error closing mirror for {self.device_id}: {e}")
