"""
Transport Adapter.

Bridges the registry to live client connections.
Each subscriber gets a bounded queue: the coordinator's broadcast only
enqueues, and the connection drains the queue at its own pace. A queue
that fills up marks its subscriber dead.

Wire framing:
- SSE: one "data: {json}" event per message, ": heartbeat" comments as keepalive
- WebSocket: one JSON text frame per message; keepalive is protocol-level ping
"""
import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from fastapi import WebSocket, WebSocketDisconnect

from mcpchat.config import settings
from mcpchat.errors import NotFound
from mcpchat.services.auth import extract_bearer, verify_token
from mcpchat.services.store import ChatStore, store

from .registry import SinkClosed, SubscriberRegistry, registry
from .types import StreamEvent

logger = logging.getLogger(__name__)

SSE_PREAMBLE = ": stream established\n\n"
SSE_KEEPALIVE = ": heartbeat\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(event: StreamEvent) -> str:
    return f"data: {json.dumps(event.to_dict())}\n\n"


class QueueSink:
    """Non-blocking sink backed by a bounded asyncio queue."""

    def __init__(self, maxsize: int = 1000):
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def send(self, event: StreamEvent) -> None:
        if self.closed:
            raise SinkClosed("connection closed")
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.closed = True
            raise SinkClosed("subscriber is not keeping up")

    def close(self) -> None:
        self.closed = True

    async def next_event(self, timeout: Optional[float] = None) -> Optional[StreamEvent]:
        """Next queued event, or None when timeout elapses first."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> list[StreamEvent]:
        """Drain and return everything queued so far."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events


class Subscription:
    """One live client connection registered for a conversation."""

    def __init__(
        self,
        registry: SubscriberRegistry,
        conversation_id: int,
        sink: QueueSink,
        keepalive_interval: float,
    ):
        self._registry = registry
        self.conversation_id = conversation_id
        self.sink = sink
        self.keepalive_interval = keepalive_interval
        self.handle: Optional[int] = None
        self._closed = False

    def open(self) -> None:
        """Register with the registry. No-op once open or closed."""
        if self.handle is None and not self._closed:
            self.handle = self._registry.add(self.conversation_id, self.sink)

    def close(self) -> None:
        """Unregister from the registry. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.sink.close()
        if self.handle is not None:
            self._registry.remove(self.conversation_id, self.handle)

    async def sse(self, is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None) -> AsyncIterator[str]:
        """
        Framed SSE body. Ends when the client goes away.

        Registration happens on the first read, so a response whose body
        never starts leaves nothing behind in the registry.
        """
        try:
            self.open()
            yield SSE_PREAMBLE
            while not self.sink.closed:
                event = await self.sink.next_event(self.keepalive_interval)
                if event is None:
                    if is_disconnected is not None and await is_disconnected():
                        break
                    yield SSE_KEEPALIVE
                    continue
                yield format_sse(event)
        finally:
            logger.info("SSE connection closed for conversation %s", self.conversation_id)
            self.close()

    async def pump_websocket(self, websocket: WebSocket) -> None:
        """Forward events to an accepted WebSocket until either side closes."""
        self.open()

        async def forward() -> None:
            while not self.sink.closed:
                event = await self.sink.next_event(self.keepalive_interval)
                if event is not None:
                    await websocket.send_json(event.to_dict())

        async def drain() -> None:
            # Inbound frames carry nothing; reading detects the disconnect
            while True:
                await websocket.receive_text()

        tasks = [asyncio.create_task(forward()), asyncio.create_task(drain())]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, (WebSocketDisconnect, RuntimeError)):
                    logger.warning("WebSocket for conversation %s failed: %s", self.conversation_id, exc)
        finally:
            # Unregister before awaiting, so a cancelled pump still leaves the registry
            self.close()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("WebSocket closed for conversation %s", self.conversation_id)


class TransportAdapter:
    """Validates subscribe requests and opens subscriptions."""

    def __init__(
        self,
        store: ChatStore,
        registry: SubscriberRegistry,
        keepalive_interval: Optional[float] = None,
        queue_size: Optional[int] = None,
    ):
        self._store = store
        self._registry = registry
        self.keepalive_interval = keepalive_interval or settings.keepalive_interval
        self.queue_size = queue_size or settings.subscriber_queue_size

    async def authorize(
        self,
        conversation_id: int,
        authorization: Optional[str] = None,
        token: Optional[str] = None,
    ) -> dict:
        """
        Check the bearer credential and conversation ownership.

        The token may come from the Authorization header or, for clients
        such as EventSource that cannot set headers, the query string.

        Raises:
            Unauthenticated: missing or invalid token
            NotFound: conversation missing or owned by someone else
        """
        claims = verify_token(extract_bearer(authorization) or token)
        conversation = await self._store.get_conversation(conversation_id, user_id=claims["id"])
        if conversation is None:
            raise NotFound("Conversation not found")
        return claims

    def subscribe(self, conversation_id: int) -> Subscription:
        """
        Create a subscriber whose first event is always 'connected'.

        It joins the registry when its SSE body or WebSocket pump starts.
        """
        sink = QueueSink(maxsize=self.queue_size)
        sink.send(StreamEvent.connected())
        subscription = Subscription(self._registry, conversation_id, sink, self.keepalive_interval)
        logger.info("Stream subscription opened for conversation %s", conversation_id)
        return subscription


# Singleton instance
transport = TransportAdapter(store, registry)
