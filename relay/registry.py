"""
Session registry: device id -> DeviceSession.

Guarantees at most one session (and so one log tool process) per device id.
Every create-or-lookup, attach and detach for a given id runs under that
id's lock; different ids never wait on each other.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from diagnostics.session_diagnostics import record_consumer_attached, record_consumer_detached
from relay.consumer import Consumer
from relay.errors import AlreadyRunning, UnknownDevice
from relay.session import DeviceSession
from relay.settings import RelaySettings
from utils.timing import timed_lock_acquire

logger = logging.getLogger(__name__)


class _KeyedLocks:
    """One asyncio.Lock per key, dropped again once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncGenerator[None, None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with timed_lock_acquire(lock, logger, name=f"registry:{key}"):
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class SessionRegistry:
    """Owns every DeviceSession of the service. Construct one per application."""

    def __init__(self, settings: Optional[RelaySettings] = None):
        self.settings = settings or RelaySettings()
        self._sessions: dict[str, DeviceSession] = {}
        self._locks = _KeyedLocks()

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, device_id: str) -> Optional[DeviceSession]:
        return self._sessions.get(device_id)

    def require(self, device_id: str) -> DeviceSession:
        """Like get(), but raises UnknownDevice for ids without a session."""
        session = self._sessions.get(device_id)
        if session is None:
            raise UnknownDevice(device_id)
        return session

    def active_devices(self) -> list[str]:
        return sorted(self._sessions)

    def sessions(self) -> list[DeviceSession]:
        return [self._sessions[device_id] for device_id in self.active_devices()]

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_session(self, device_id: str) -> DeviceSession:
        """
        Create and start a session for an id that has none.

        Raises:
            AlreadyRunning: a live session exists for device_id
            SpawnFailed: the log tool could not be launched (nothing registered)
        """
        async with self._locks.hold(device_id):
            return await self._start_locked(device_id)

    async def _start_locked(self, device_id: str) -> DeviceSession:
        existing = self._sessions.get(device_id)
        if existing is not None and not existing.terminated:
            raise AlreadyRunning(device_id)

        session = DeviceSession(device_id, self.settings, on_closed=self._forget)
        await session.start()
        self._sessions[device_id] = session
        logger.info(f"Session started for {device_id} ({len(self._sessions)} active)")
        return session

    def _forget(self, session: DeviceSession) -> None:
        # Identity check: a replacement session may already own the id
        if self._sessions.get(session.device_id) is session:
            del self._sessions[session.device_id]
            logger.info(f"Session removed for {session.device_id} ({len(self._sessions)} active)")

    async def shutdown(self) -> None:
        """Stop every session (service shutdown)."""
        sessions = list(self._sessions.values())
        if sessions:
            logger.info(f"Stopping {len(sessions)} session(s)")
        await asyncio.gather(*(session.close() for session in sessions), return_exceptions=True)
        self._sessions.clear()

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    async def attach(self, device_id: str, consumer: Consumer) -> DeviceSession:
        """
        Attach a consumer, starting the device's session if needed.

        The consumer's first message is the backlog when the session already
        has history.

        Raises:
            SpawnFailed: no session existed and the log tool could not start
        """
        async with self._locks.hold(device_id):
            session = self._sessions.get(device_id)
            if session is None or session.terminated:
                session = await self._start_locked(device_id)
            count = await session.add_consumer(consumer)

        logger.info(f"Consumer {consumer.consumer_id} attached to {device_id} ({count} total)")
        record_consumer_attached(device_id, consumer.consumer_id, count)
        return session

    async def detach(self, device_id: str, consumer: Consumer) -> None:
        """
        Detach a consumer; the last one out stops the session.

        Unknown device ids and consumers are ignored, so this is safe to call
        while the session is already being torn down.
        """
        async with self._locks.hold(device_id):
            session = self._sessions.get(device_id)
            if session is None or not session.has_consumer(consumer):
                logger.debug(f"Detach of {consumer.consumer_id} from {device_id}: no such attachment")
                return

            remaining = await session.remove_consumer(consumer)
            logger.info(f"Consumer {consumer.consumer_id} detached from {device_id} ({remaining} remaining)")
            record_consumer_detached(device_id, consumer.consumer_id, remaining)

            if remaining == 0:
                self._forget(session)
                await session.stop()
