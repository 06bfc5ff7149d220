"""Runtime settings handed to the session registry."""

import shlex
from dataclasses import dataclass, field
from typing import Optional

import config


@dataclass
class RelaySettings:
    """Values the relay core reads. Defaults come from config.py."""
    command: list[str] = field(default_factory=lambda: shlex.split(config.LOG_TOOL_COMMAND))
    ring_capacity: int = config.RING_BUFFER_CAPACITY
    batch_interval_ms: int = config.BATCH_INTERVAL_MS
    max_buffered_bytes: int = config.CONSUMER_MAX_BUFFERED_BYTES
    max_queued_messages: int = config.CONSUMER_MAX_QUEUED_MESSAGES
    stop_timeout: float = config.UPSTREAM_STOP_TIMEOUT
    max_line_bytes: int = config.MAX_LINE_BYTES
    mirror_dir: Optional[str] = config.LOG_MIRROR_DIR

    def __post_init__(self) -> None:
        if not self.command:
            raise ValueError("Log tool command must not be empty")
        if self.ring_capacity < 1:
            raise ValueError(f"ring_capacity must be >= 1, got {self.ring_capacity}")
        if self.batch_interval_ms <= 0:
            raise ValueError(f"batch_interval_ms must be > 0, got {self.batch_interval_ms}")
        if self.max_line_bytes < 1:
            raise ValueError(f"max_line_bytes must be >= 1, got {self.max_line_bytes}")

    @property
    def batch_interval(self) -> float:
        """Batch interval in seconds."""
        return self.batch_interval_ms / 1000.0
