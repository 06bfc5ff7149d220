from typing import Literal, Optional
from pydantic import BaseModel, Field


class BatchMessage(BaseModel):
    """A group of log lines, in arrival order."""
    type: Literal["batch"] = "batch"
    lines: list[str] = Field(description="Log lines, oldest first")
    is_backlog: bool = Field(default=False, description="True for the catch-up snapshot sent on attach")


class ErrorMessage(BaseModel):
    """Out-of-band error from the log tool or the relay."""
    type: Literal["error"] = "error"
    message: str = Field(description="Error text")


class StoppedMessage(BaseModel):
    """The log tool ended; no further batches follow."""
    type: Literal["stopped"] = "stopped"
    reason: Literal["exited", "signaled"] = Field(description="How the log tool ended")
    returncode: Optional[int] = Field(default=None, description="Process return code (negative = signal)")


class ClearedMessage(BaseModel):
    """Acknowledgment of a clear request."""
    type: Literal["cleared"] = "cleared"


class DroppedMessage(BaseModel):
    """Batches were skipped because this consumer fell behind."""
    type: Literal["dropped"] = "dropped"
    count: int = Field(description="Number of batches dropped since the last delivery")


class ControlRequest(BaseModel):
    """Inbound control message from a viewer."""
    type: Literal["clear", "detach"] = Field(description="Requested action")
