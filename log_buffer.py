"""
In-memory ring of the relay's own log records, exposed via a logging.Handler.

Separate from the per-device rings: this one holds what the service itself
logged (spawns, attaches, drops, teardowns). The /logs endpoint reads it
with cursor-based pagination so a dashboard can poll incrementally without
duplicates or missed entries.
"""

import logging
import os
from dataclasses import asdict, dataclass
from typing import Any

from config import SERVICE_LOG_BUFFER_SIZE
from relay.ring_buffer import RingBuffer


@dataclass
class LogEntry:
    timestamp: float
    level: str
    logger_name: str
    message: str
    pid: int
    sequence: int


class LogBuffer(logging.Handler):
    """Captures log records into a RingBuffer."""

    def __init__(self, maxlen: int = SERVICE_LOG_BUFFER_SIZE, level: int = logging.DEBUG) -> None:
        super().__init__(level)
        self._ring: RingBuffer[LogEntry] = RingBuffer(maxlen)
        self._pid = os.getpid()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
        except Exception:
            msg = record.getMessage()

        # Handler.acquire() serializes emit(), so total_pushed + 1 is this entry's sequence
        self._ring.push(LogEntry(
            timestamp=record.created,
            level=record.levelname,
            logger_name=record.name,
            message=msg,
            pid=self._pid,
            sequence=self._ring.total_pushed + 1,
        ))

    @property
    def latest_sequence(self) -> int:
        return self._ring.total_pushed

    def get_entries(
        self, since_sequence: int = 0, limit: int = 200
    ) -> tuple[list[dict[str, Any]], int]:
        """Return entries with sequence > since_sequence.

        `latest_sequence` is taken from the same snapshot as the entries, so
        polling again with it never repeats or skips a record.

        Returns:
            (entries_as_dicts, latest_sequence)
        """
        held = self._ring.snapshot()
        latest = held[-1].sequence if held else 0
        entries = [asdict(e) for e in held if e.sequence > since_sequence]
        # Keep only the most recent entries when the result exceeds the limit.
        if len(entries) > limit:
            entries = entries[-limit:]
        return entries, latest


# One per process; logging handlers are process-wide anyway
log_buffer = LogBuffer()
