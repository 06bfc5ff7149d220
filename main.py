"""
Device Log Relay

FastAPI service that runs one device log tool (idevicesyslog by default) per
device id and relays its output to any number of WebSocket viewers in
batches. The tool starts when the first viewer for a device connects and is
stopped when the last one leaves.

Sessions live in this process's memory, so the relay runs as a single
uvicorn worker: a second worker would start a second log tool for the same
device.

Examples:
  python main.py                                 # listens on 0.0.0.0:3000
  LOG_TOOL_COMMAND="adb -s {device_id} logcat" python main.py
  python -m uvicorn main:app --port 3000

Viewers connect to ws://<host>:3000/ws?device_id=<id>.
"""

import sys
# When run as `python main.py`, this module's __name__ is "__main__", not "main".
# Router modules do `import main` to reach the auth dependencies. Without this
# alias, Python would re-import main.py as a *separate* "main" module and build
# a second application.
sys.modules.setdefault("main", sys.modules[__name__])

import logging
import os
import shlex
from contextlib import asynccontextmanager
from typing import Optional

import psutil
from fastapi import FastAPI, HTTPException, Header, Query, WebSocketException, status
from fastapi.middleware.cors import CORSMiddleware

from config import DEFAULT_PORT, DEFAULT_HOST, LOG_TOOL_COMMAND, RELAY_API_KEY
from log_buffer import log_buffer
from relay import ControlSurface, RelaySettings, SessionRegistry
from diagnostics.session_diagnostics import record_event
from utils.timing import timed_operation

# Configure logging
logging.basicConfig(level=logging.INFO)
logging.getLogger().addHandler(log_buffer)
# Uvicorn sets propagate=False on its loggers, so they never reach the root
# logger (and thus never reach log_buffer). Attach log_buffer directly so
# /logs shows access logs and server lifecycle messages too.
for _uv_name in ("uvicorn.error", "uvicorn.access"):
    logging.getLogger(_uv_name).addHandler(log_buffer)
logger = logging.getLogger(__name__)


# =============================================================================
# Authentication
# =============================================================================


async def verify_api_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")):
    """Verify API key if configured."""
    if RELAY_API_KEY is not None:
        if x_api_key != RELAY_API_KEY:
            raise HTTPException(status_code=401, detail="Invalid API key")


async def verify_ws_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    api_key: Optional[str] = Query(None),
):
    """WebSocket variant: browsers cannot set headers, so ?api_key= is accepted too."""
    if RELAY_API_KEY is not None:
        if RELAY_API_KEY not in (x_api_key, api_key):
            raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid API key")


# =============================================================================
# Application Setup
# =============================================================================


def create_app(settings: Optional[RelaySettings] = None) -> FastAPI:
    """Build the relay application. The registry is created per application at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        relay_settings = settings or RelaySettings()
        registry = SessionRegistry(relay_settings)
        app.state.registry = registry
        app.state.control = ControlSurface(registry)

        logger.info(
            f"Starting device log relay (tool={relay_settings.command}, "
            f"capacity={relay_settings.ring_capacity}, interval={relay_settings.batch_interval_ms}ms)"
        )
        record_event(
            "relay_startup",
            command=relay_settings.command,
            ring_capacity=relay_settings.ring_capacity,
            batch_interval_ms=relay_settings.batch_interval_ms,
            max_buffered_bytes=relay_settings.max_buffered_bytes,
            mirror_dir=relay_settings.mirror_dir,
        )

        yield

        # Shutdown: stop every log tool we started
        try:
            await registry.shutdown()
        except Exception as e:
            logger.warning(f"Error stopping sessions: {e}")
        logger.info("Device log relay stopped.")

    app = FastAPI(
        title="Device Log Relay",
        description="Streams device log tool output to WebSocket viewers in batches",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS middleware (viewers are served from other origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Deferred: router modules `import main` for the auth dependencies above.
    from routers import register_routers
    register_routers(app)
    return app


app = create_app()


# =============================================================================
# Utilities
# =============================================================================


def _find_orphaned_log_tools(tool_name: str) -> list:
    """Processes named like the log tool whose parent is gone (re-parented to init)."""
    orphans = []
    for proc in psutil.process_iter(["pid", "name", "ppid"]):
        name = (proc.info["name"] or "").lower()
        if name == tool_name and proc.info["ppid"] in (0, 1):
            orphans.append(proc)
    return orphans


def _kill_orphaned_log_tools(command: list[str], timeout: float = 5.0) -> int:
    """
    Terminate log tool processes left behind by a relay that crashed before
    it could stop them; anything still alive after `timeout` is killed.
    Tools started by other parents are not touched. Returns how many
    orphans were found.
    """
    tool_name = os.path.basename(command[0]).lower()
    orphans = _find_orphaned_log_tools(tool_name)
    if not orphans:
        return 0

    logger.warning(f"Terminating {len(orphans)} orphaned {tool_name}: {[p.pid for p in orphans]}")
    for proc in orphans:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as e:
            logger.warning(f"No permission to stop orphan {proc.pid}: {e}")

    _, survivors = psutil.wait_procs(orphans, timeout=timeout)
    for proc in survivors:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as e:
            logger.warning(f"No permission to kill orphan {proc.pid}: {e}")

    logger.info(f"Orphan cleanup done ({len(orphans)} found, {len(survivors)} needed SIGKILL)")
    return len(orphans)


if __name__ == "__main__":
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="Device Log Relay")
    parser.add_argument(
        "--skip-orphan-cleanup", action="store_true",
        help="Do not terminate log tool processes left over from a previous run",
    )
    args = parser.parse_args()

    port = int(os.getenv("PORT", str(DEFAULT_PORT)))
    host = os.getenv("HOST", DEFAULT_HOST)
    dev_mode = os.getenv("DEV_MODE", "false").lower() == "true"

    if not args.skip_orphan_cleanup:
        with timed_operation(logger, "orphan cleanup"):
            _kill_orphaned_log_tools(shlex.split(LOG_TOOL_COMMAND))

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        workers=1,
        reload=dev_mode,
        log_level="info",
    )
