"""
Upstream session: the single log tool process behind one device id.

The process handle never leaves this class. The rest of the relay sees only
start()/stop() and three callbacks:

    on_line(line)          every complete, non-empty stdout line
    on_error(error)        every non-empty stderr line, or a stdout read failure
    on_exit(returncode)    awaited exactly once, after both streams hit EOF
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from config import MAX_LINE_BYTES, SLOW_SPAWN_MS, UPSTREAM_READ_CHUNK
from relay.errors import AlreadyRunning, SpawnFailed, UpstreamError
from relay.line_splitter import LineSplitter
from utils.timing import timed_operation

logger = logging.getLogger(__name__)


def build_argv(command: list[str], device_id: str) -> list[str]:
    """Substitute the device id into every token of the command template."""
    return [token.replace("{device_id}", device_id) for token in command]


class UpstreamSession:
    """Owns exactly one external line-producing process."""

    def __init__(
        self,
        device_id: str,
        command: list[str],
        on_line: Callable[[str], None],
        on_error: Callable[[UpstreamError], None],
        on_exit: Callable[[Optional[int]], Awaitable[None]],
        read_chunk: int = UPSTREAM_READ_CHUNK,
        max_line_bytes: int = MAX_LINE_BYTES,
    ):
        self.device_id = device_id
        self.argv = build_argv(command, device_id)
        self._on_line = on_line
        self._on_error = on_error
        self._on_exit = on_exit
        self._read_chunk = read_chunk
        self._max_line_bytes = max_line_bytes

        self._proc: Optional[asyncio.subprocess.Process] = None
        self._tasks: list[asyncio.Task] = []
        self._stop_requested = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Spawn the log tool and start the reader tasks.

        Raises:
            AlreadyRunning: start() was already called on this instance
            SpawnFailed: the executable could not be launched
        """
        if self._proc is not None:
            raise AlreadyRunning(self.device_id)

        with timed_operation(logger, f"spawn {self.device_id}", slow_ms=SLOW_SPAWN_MS):
            try:
                self._proc = await asyncio.create_subprocess_exec(
                    *self.argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except (OSError, ValueError) as e:
                raise SpawnFailed(self.device_id, str(e)) from e

        logger.info(f"Started log tool for {self.device_id} (pid={self._proc.pid}): {self.argv}")
        stdout_task = asyncio.create_task(
            self._pump_stdout(), name=f"upstream-stdout-{self.device_id}"
        )
        stderr_task = asyncio.create_task(
            self._pump_stderr(), name=f"upstream-stderr-{self.device_id}"
        )
        watcher = asyncio.create_task(
            self._watch(stdout_task, stderr_task), name=f"upstream-watch-{self.device_id}"
        )
        self._tasks = [stdout_task, stderr_task, watcher]

    async def stop(self, timeout: float = 3.0) -> None:
        """
        Ask the process to terminate (SIGTERM), escalating to SIGKILL after
        `timeout` seconds. Safe to call any number of times.
        """
        proc = self._proc
        if proc is None or self._stop_requested or proc.returncode is not None:
            self._stop_requested = True
            return
        self._stop_requested = True

        logger.info(f"Stopping log tool for {self.device_id} (pid={proc.pid})")
        try:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Log tool for {self.device_id} ignored SIGTERM for {timeout}s, killing"
                )
                proc.kill()
                await proc.wait()
        except ProcessLookupError:
            # Exited between the returncode check and the signal
            pass

    # ------------------------------------------------------------------
    # Reader tasks
    # ------------------------------------------------------------------

    async def _pump_stdout(self) -> None:
        splitter = LineSplitter(max_line_bytes=self._max_line_bytes)
        stream = self._proc.stdout
        while True:
            try:
                chunk = await stream.read(self._read_chunk)
            except OSError as e:
                logger.error(f"Read error on log tool stdout for {self.device_id}: {e}")
                self._on_error(UpstreamError(self.device_id, f"Read error: {e}"))
                return
            if not chunk:
                break
            truncated = splitter.truncated
            for line in splitter.feed(chunk):
                self._on_line(line)
            if splitter.truncated > truncated:
                message = f"Line longer than {self._max_line_bytes} bytes truncated"
                logger.warning(f"[{self.device_id}] {message}")
                self._on_error(UpstreamError(self.device_id, message))

        if splitter.pending:
            logger.debug(
                f"Discarding {len(splitter.pending)} trailing bytes without newline "
                f"from {self.device_id}"
            )

    async def _pump_stderr(self) -> None:
        stream = self._proc.stderr
        while True:
            try:
                raw = await stream.readline()
            except (OSError, ValueError) as e:
                # ValueError: a single stderr line exceeded the stream limit
                self._on_error(UpstreamError(self.device_id, f"stderr read error: {e}"))
                return
            if not raw:
                return
            message = raw.decode("utf-8", errors="replace").strip()
            if message:
                logger.warning(f"[{self.device_id}] stderr: {message}")
                self._on_error(UpstreamError(self.device_id, message))

    async def _watch(self, stdout_task: asyncio.Task, stderr_task: asyncio.Task) -> None:
        """Wait for both streams and the process, then report the exit once."""
        results = await asyncio.gather(stdout_task, stderr_task, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Reader task for {self.device_id} failed: {result!r}")
        returncode = await self._proc.wait()
        logger.info(f"Log tool for {self.device_id} exited with code {returncode}")
        await self._on_exit(returncode)
