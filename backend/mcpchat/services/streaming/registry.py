"""
Subscriber Registry.

Tracks live downstream connections per conversation and the in-memory
StreamSession that goes with them. Broadcast never raises: a sink that
fails to accept an event is pruned on the spot.
"""
import asyncio
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol

from mcpchat.config import settings

from .types import StreamEvent

logger = logging.getLogger(__name__)


class SinkClosed(Exception):
    """Raised by a sink that can no longer deliver events."""


class Sink(Protocol):
    """Send-capable downstream endpoint. send() must not block."""

    def send(self, event: StreamEvent) -> None: ...


@dataclass
class StreamSession:
    """
    In-memory state for one conversation. Never persisted.

    Attributes:
        subscribers: Live sinks keyed by handle
        lock: Held for the whole of a generation cycle
        pending: Generations holding or waiting for the lock
        last_activity: Monotonic time of the last add/remove/generation
    """

    conversation_id: int
    subscribers: dict[int, Sink] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    pending: int = 0
    last_activity: float = field(default_factory=time.monotonic)
    subscriber_joined: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def generating(self) -> bool:
        return self.lock.locked()

    @property
    def idle(self) -> bool:
        return not self.subscribers and self.pending == 0

    def touch(self) -> None:
        self.last_activity = time.monotonic()


class SubscriberRegistry:
    """Per-conversation subscriber sets with dead-sink pruning."""

    def __init__(self, idle_ttl: float = 300.0):
        self.idle_ttl = idle_ttl
        self._sessions: dict[int, StreamSession] = {}
        self._handles = itertools.count(1)
        self._mutex = threading.Lock()
        self._reaper: Optional[asyncio.Task] = None

    def session(self, conversation_id: int) -> StreamSession:
        """Get or create the session for a conversation."""
        with self._mutex:
            session = self._sessions.get(conversation_id)
            if session is None:
                session = StreamSession(conversation_id=conversation_id)
                self._sessions[conversation_id] = session
            return session

    def get_session(self, conversation_id: int) -> Optional[StreamSession]:
        with self._mutex:
            return self._sessions.get(conversation_id)

    def add(self, conversation_id: int, sink: Sink) -> int:
        """Register a sink and return its handle."""
        session = self.session(conversation_id)
        with self._mutex:
            handle = next(self._handles)
            session.subscribers[handle] = sink
            session.touch()
            total = len(session.subscribers)
        session.subscriber_joined.set()
        logger.info("Subscriber %d joined conversation %s. Total: %d", handle, conversation_id, total)
        return handle

    def remove(self, conversation_id: int, handle: int) -> None:
        """Unregister a sink. No-op when already removed."""
        with self._mutex:
            session = self._sessions.get(conversation_id)
            if session is None or session.subscribers.pop(handle, None) is None:
                return
            session.touch()
            total = len(session.subscribers)
        logger.info("Subscriber %d left conversation %s. Remaining: %d", handle, conversation_id, total)

    def count(self, conversation_id: int) -> int:
        with self._mutex:
            session = self._sessions.get(conversation_id)
            return len(session.subscribers) if session else 0

    def broadcast(self, conversation_id: int, event: StreamEvent) -> int:
        """
        Send event to every live sink of the conversation.

        Returns the number of sinks that accepted it.
        """
        with self._mutex:
            session = self._sessions.get(conversation_id)
            if session is None:
                return 0
            targets = list(session.subscribers.items())

        delivered = 0
        dead: list[int] = []
        for handle, sink in targets:
            try:
                sink.send(event)
                delivered += 1
            except Exception as e:
                logger.warning(
                    "Dropping subscriber %d of conversation %s: %s",
                    handle,
                    conversation_id,
                    e,
                )
                dead.append(handle)

        for handle in dead:
            self.remove(conversation_id, handle)

        if event.is_terminal or not targets:
            logger.debug(
                "Broadcast %s to %d/%d subscribers of conversation %s",
                event.type,
                delivered,
                len(targets),
                conversation_id,
            )
        return delivered

    async def wait_for_subscriber(self, conversation_id: int, timeout: float) -> bool:
        """Wait up to timeout seconds for at least one subscriber."""
        session = self.session(conversation_id)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.count(conversation_id) == 0:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            session.subscriber_joined.clear()
            try:
                await asyncio.wait_for(session.subscriber_joined.wait(), remaining)
            except asyncio.TimeoutError:
                return self.count(conversation_id) > 0
        return True

    # ==================== Idle cleanup ====================

    def reap_idle(self, now: Optional[float] = None) -> int:
        """Drop sessions with no subscribers and no generation that have been idle past the TTL."""
        now = time.monotonic() if now is None else now
        with self._mutex:
            expired = [
                conversation_id
                for conversation_id, session in self._sessions.items()
                if session.idle and now - session.last_activity >= self.idle_ttl
            ]
            for conversation_id in expired:
                del self._sessions[conversation_id]
        if expired:
            logger.debug("Reaped %d idle stream sessions", len(expired))
        return len(expired)

    async def _reap_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.reap_idle()

    def start_reaper(self, interval: float) -> None:
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(self._reap_forever(interval), name="stream-session-reaper")

    async def stop_reaper(self) -> None:
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None

    @property
    def session_count(self) -> int:
        with self._mutex:
            return len(self._sessions)


# Singleton instance
registry = SubscriberRegistry(idle_ttl=settings.session_idle_ttl)
