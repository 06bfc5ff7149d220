from typing import Optional
from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""
    success: bool = Field(description="Whether the relay is healthy")
    active_sessions: int = Field(description="Number of devices with a running log tool")
    consumers: int = Field(description="Total attached viewers across all devices")
    worker_rss_mb: Optional[float] = Field(default=None, description="Resident memory of this process")


class ConsumerInfo(BaseModel):
    consumer_id: str
    connected_since: float = Field(description="Unix timestamp of attach")
    lines_delivered: int
    dropped_batches: int
    queued_bytes: int


class SessionInfo(BaseModel):
    """State of one device session."""
    device_id: str
    pid: Optional[int] = Field(default=None, description="Log tool process id")
    started_at: float = Field(description="Unix timestamp of session start")
    buffered_lines: int = Field(description="Lines currently held in the ring buffer")
    pending_lines: int = Field(description="Lines waiting for the next batch")
    total_lines: int = Field(description="Lines received since the session started")
    consumers: list[ConsumerInfo] = Field(default_factory=list)


class SessionsResponse(BaseModel):
    sessions: list[SessionInfo]
