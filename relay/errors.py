"""Exception hierarchy for the relay core."""

from typing import Optional


class RelayError(Exception):
    """Base class for every error raised by the relay core."""
    pass


class SpawnFailed(RelayError):
    """The upstream log tool could not be launched."""

    def __init__(self, device_id: str, reason: str):
        super().__init__(f"Failed to start log tool for {device_id}: {reason}")
        self.device_id = device_id
        self.reason = reason


class AlreadyRunning(RelayError):
    """A session (or process) for this device id is already running."""

    def __init__(self, device_id: str):
        super().__init__(f"Session already running for {device_id}")
        self.device_id = device_id


class UpstreamError(RelayError):
    """Error-stream output or an I/O failure while reading the upstream tool.

    Not fatal to the session.
    """

    def __init__(self, device_id: str, message: str):
        super().__init__(message)
        self.device_id = device_id
        self.message = message


class UpstreamExited(RelayError):
    """The upstream tool terminated. Terminal for its session."""

    def __init__(self, device_id: str, returncode: Optional[int]):
        self.device_id = device_id
        self.returncode = returncode
        super().__init__(f"Log tool for {device_id} {self.reason} (code={returncode})")

    @property
    def reason(self) -> str:
        # Negative return codes are signal numbers (asyncio subprocess convention)
        if self.returncode is not None and self.returncode < 0:
            return "signaled"
        return "exited"


class ConsumerBackpressure(RelayError):
    """A consumer's outbound queue is saturated; the delivery was dropped."""

    def __init__(self, consumer_id: str, queued_bytes: int, queued_messages: int):
        super().__init__(
            f"Consumer {consumer_id} saturated "
            f"({queued_bytes} bytes / {queued_messages} messages queued)"
        )
        self.consumer_id = consumer_id
        self.queued_bytes = queued_bytes
        self.queued_messages = queued_messages


class UnknownDevice(RelayError):
    """No session exists for the device id."""

    def __init__(self, device_id: str):
        super().__init__(f"No session for {device_id}")
        self.device_id = device_id
