"""Core router – health and session state."""

import logging
import os
from typing import Optional

import psutil
from fastapi import APIRouter, Depends, HTTPException, Request

import main
from models import HealthResponse, SessionInfo, SessionsResponse
from relay import SessionRegistry, UnknownDevice

logger = logging.getLogger(__name__)

router = APIRouter()


def _worker_rss_mb() -> Optional[float]:
    try:
        return round(psutil.Process(os.getpid()).memory_info().rss / 1024 / 1024, 1)
    except psutil.Error as e:
        logger.debug(f"RSS lookup failed: {e}")
        return None


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Health check endpoint. Never touches the log tools themselves."""
    registry: SessionRegistry = request.app.state.registry
    sessions = registry.sessions()
    return HealthResponse(
        success=True,
        active_sessions=len(sessions),
        consumers=sum(s.consumer_count for s in sessions),
        worker_rss_mb=_worker_rss_mb(),
    )


@router.get("/sessions", response_model=SessionsResponse)
async def list_sessions(request: Request, _: None = Depends(main.verify_api_key)) -> SessionsResponse:
    """List active device sessions with their consumers."""
    registry: SessionRegistry = request.app.state.registry
    return SessionsResponse(sessions=[s.info() for s in registry.sessions()])


@router.get("/sessions/{device_id}", response_model=SessionInfo)
async def get_session(device_id: str, request: Request, _: None = Depends(main.verify_api_key)) -> SessionInfo:
    """State of one device session; 404 when no log tool runs for it."""
    registry: SessionRegistry = request.app.state.registry
    try:
        return registry.require(device_id).info()
    except UnknownDevice as e:
        raise HTTPException(status_code=404, detail=str(e))
