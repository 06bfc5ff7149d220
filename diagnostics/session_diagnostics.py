"""
Session lifecycle diagnostics.

Every spawn, attach, detach, consumer stall and session end is kept in a
bounded in-memory deque and echoed to the log with a [DIAG] prefix, so a
device whose log tool keeps dying, or a viewer that keeps stalling, can be
looked at after the fact via GET /diagnostics/sessions.
"""

import json
import logging
import os
import time
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Any, Optional

from config import DIAGNOSTIC_EVENT_LIMIT

logger = logging.getLogger(__name__)

_events: deque[dict[str, Any]] = deque(maxlen=DIAGNOSTIC_EVENT_LIMIT)
_started = time.monotonic()


def record_event(event_type: str, device_id: Optional[str] = None, **details: Any) -> None:
    """Append one event and log it."""
    event = {
        "time": datetime.now(timezone.utc).isoformat(),
        "uptime_s": round(time.monotonic() - _started, 2),
        "event": event_type,
        "device_id": device_id,
        **details,
    }
    _events.append(event)
    target = f" [{device_id}]" if device_id else ""
    logger.info(f"[DIAG] {event_type}{target}: {json.dumps(details, default=str)}")


def record_spawn_attempt(device_id: str, argv: list[str]) -> None:
    record_event("spawn_attempt", device_id, argv=argv)


def record_spawn_success(device_id: str, pid: Optional[int]) -> None:
    record_event("spawn_success", device_id, pid=pid)


def record_spawn_failure(device_id: str, error: str) -> None:
    record_event("spawn_failure", device_id, error=error)


def record_consumer_attached(device_id: str, consumer_id: str, consumers: int) -> None:
    record_event("consumer_attached", device_id, consumer_id=consumer_id, consumers=consumers)


def record_consumer_detached(device_id: str, consumer_id: str, consumers: int) -> None:
    record_event("consumer_detached", device_id, consumer_id=consumer_id, consumers=consumers)


def record_consumer_saturated(device_id: str, consumer_id: str, queued_bytes: int) -> None:
    """Called on the first dropped batch of a streak, not on every drop."""
    record_event("consumer_saturated", device_id, consumer_id=consumer_id, queued_bytes=queued_bytes)


def record_session_end(
    device_id: str, reason: str, returncode: Optional[int], total_lines: int, duration_s: float
) -> None:
    record_event(
        "session_end",
        device_id,
        reason=reason,
        returncode=returncode,
        total_lines=total_lines,
        duration_s=round(duration_s, 2),
    )


def get_diagnostic_report(device_id: Optional[str] = None) -> dict[str, Any]:
    """
    Events (oldest first) plus per-device summaries. With `device_id`, only
    that device's events are included.
    """
    events = [e for e in _events if device_id is None or e["device_id"] == device_id]
    return {
        "pid": os.getpid(),
        "uptime_s": round(time.monotonic() - _started, 2),
        "total_events": len(events),
        "event_counts": dict(Counter(e["event"] for e in events)),
        "devices": _summarize_devices(events),
        "events": events,
    }


def _summarize_devices(events: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    devices: dict[str, dict[str, Any]] = {}
    for event in events:
        if event["device_id"] is None:
            continue
        summary = devices.setdefault(event["device_id"], {
            "spawns": 0,
            "spawn_failures": 0,
            "saturations": 0,
            "last_error": None,
            "last_end": None,
        })
        kind = event["event"]
        if kind == "spawn_success":
            summary["spawns"] += 1
        elif kind == "spawn_failure":
            summary["spawn_failures"] += 1
            summary["last_error"] = event["error"]
        elif kind == "consumer_saturated":
            summary["saturations"] += 1
        elif kind == "session_end":
            summary["last_end"] = {k: event[k] for k in ("time", "reason", "returncode", "total_lines")}
    return devices
