"""Device log relay core.

Usage::

    from relay import SessionRegistry, ControlSurface, Consumer, RelaySettings

    registry = SessionRegistry(RelaySettings())
    control = ControlSurface(registry)
    await control.on_connect("dev-1", Consumer("dev-1", websocket.send_text))
"""

from relay.consumer import Consumer, fan_out
from relay.control import ControlSurface
from relay.errors import (
    AlreadyRunning, ConsumerBackpressure, RelayError, SpawnFailed,
    UnknownDevice, UpstreamError, UpstreamExited,
)
from relay.line_splitter import LineSplitter
from relay.registry import SessionRegistry
from relay.ring_buffer import RingBuffer
from relay.scheduler import BatchScheduler
from relay.session import DeviceSession
from relay.settings import RelaySettings
from relay.upstream import UpstreamSession


__all__ = [
    "AlreadyRunning",
    "BatchScheduler",
    "Consumer",
    "ConsumerBackpressure",
    "ControlSurface",
    "DeviceSession",
    "LineSplitter",
    "RelayError",
    "RelaySettings",
    "RingBuffer",
    "SessionRegistry",
    "SpawnFailed",
    "UnknownDevice",
    "UpstreamError",
    "UpstreamExited",
    "UpstreamSession",
    "fan_out",
]
