"""
Device Log Relay Configuration

Centralized constants for the relay service, read once from the environment.
"""

import os

# =============================================================================
# Server configuration
# =============================================================================

# Default server configuration
DEFAULT_PORT = 3000
DEFAULT_HOST = "0.0.0.0"

# API key for authentication (optional)
RELAY_API_KEY = os.getenv("RELAY_API_KEY", None)

# Error messages
MISSING_DEVICE_ERROR = "Missing device_id parameter"
INVALID_CONTROL_ERROR = "Invalid control message"

# =============================================================================
# Upstream log tool
# =============================================================================

# Command run once per device. Every token has {device_id} substituted.
LOG_TOOL_COMMAND = os.getenv("LOG_TOOL_COMMAND", "idevicesyslog -u {device_id}")

# Seconds to wait after SIGTERM before escalating to SIGKILL
UPSTREAM_STOP_TIMEOUT = float(os.getenv("UPSTREAM_STOP_TIMEOUT", "3.0"))

# Bytes requested per stdout read
UPSTREAM_READ_CHUNK = 64 * 1024

# Longest stdout line kept whole; longer lines are truncated to this size
MAX_LINE_BYTES = int(os.getenv("MAX_LINE_BYTES", str(1024 * 1024)))

# Spawns slower than this are logged as warnings
SLOW_SPAWN_MS = 500

# Optional append-only mirror of every line, one file per device
LOG_MIRROR_DIR = os.getenv("LOG_MIRROR_DIR") or None

# =============================================================================
# Buffering and fan-out
# =============================================================================

RING_BUFFER_CAPACITY = int(os.getenv("RING_BUFFER_CAPACITY", "1000"))
BATCH_INTERVAL_MS = int(os.getenv("BATCH_INTERVAL_MS", "100"))

# Per-consumer outbound thresholds. A delivery that would cross either one
# is dropped for that consumer.
CONSUMER_MAX_BUFFERED_BYTES = int(os.getenv("CONSUMER_MAX_BUFFERED_BYTES", "5000000"))
CONSUMER_MAX_QUEUED_MESSAGES = int(os.getenv("CONSUMER_MAX_QUEUED_MESSAGES", "1000"))

# =============================================================================
# Service log buffer
# =============================================================================

SERVICE_LOG_BUFFER_SIZE = 2000
SERVICE_LOG_MAX_LIMIT = 1000

# Lifecycle diagnostics kept in memory
DIAGNOSTIC_EVENT_LIMIT = 200
