"""Diagnostics router – session lifecycle events and the relay's own logs."""

import os
from typing import Optional

from fastapi import APIRouter, Depends

import main
from config import SERVICE_LOG_MAX_LIMIT
from diagnostics.session_diagnostics import get_diagnostic_report
from log_buffer import log_buffer

router = APIRouter()


@router.get("/diagnostics/sessions")
async def diagnostics_sessions(device_id: Optional[str] = None, _: None = Depends(main.verify_api_key)):
    """Recent spawns, attaches, stalls and teardowns, optionally for one device."""
    return get_diagnostic_report(device_id)


@router.get("/logs")
async def get_logs(
    since: int = 0,
    limit: int = 200,
    _: None = Depends(main.verify_api_key),
):
    """
    Relay service log records newer than the `since` cursor, at most `limit`
    (capped at 1000). Poll again with the returned latest_sequence.
    """
    limit = min(max(limit, 1), SERVICE_LOG_MAX_LIMIT)
    entries, latest_sequence = log_buffer.get_entries(since_sequence=since, limit=limit)
    return {"entries": entries, "latest_sequence": latest_sequence, "pid": os.getpid()}
