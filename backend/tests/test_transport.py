"""
Tests for the transport adapter: sinks, SSE framing and subscribe checks.
"""
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))


def make_transport(store, **kwargs):
    from mcpchat.services.streaming.registry import SubscriberRegistry
    from mcpchat.services.streaming.transport import TransportAdapter

    kwargs.setdefault("keepalive_interval", 0.01)
    return TransportAdapter(store, SubscriberRegistry(), **kwargs)


def parse_sse(frame: str) -> dict:
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


class TestQueueSink:
    def test_full_queue_closes_sink(self):
        from mcpchat.services.streaming.registry import SinkClosed
        from mcpchat.services.streaming.transport import QueueSink
        from mcpchat.services.streaming.types import StreamEvent

        sink = QueueSink(maxsize=2)
        sink.send(StreamEvent.chunk(1, "a"))
        sink.send(StreamEvent.chunk(1, "b"))

        with pytest.raises(SinkClosed):
            sink.send(StreamEvent.chunk(1, "c"))
        assert sink.closed is True
        assert [e.content for e in sink.pending()] == ["a", "b"]

    def test_closed_sink_rejects_events(self):
        from mcpchat.services.streaming.registry import SinkClosed
        from mcpchat.services.streaming.transport import QueueSink
        from mcpchat.services.streaming.types import StreamEvent

        sink = QueueSink()
        sink.close()

        with pytest.raises(SinkClosed):
            sink.send(StreamEvent.chunk(1, "a"))

    def test_slow_subscriber_is_pruned_on_broadcast(self):
        from mcpchat.services.streaming.registry import SubscriberRegistry
        from mcpchat.services.streaming.transport import QueueSink
        from mcpchat.services.streaming.types import StreamEvent

        registry = SubscriberRegistry()
        registry.add(1, QueueSink(maxsize=1))

        registry.broadcast(1, StreamEvent.chunk(1, "a"))
        registry.broadcast(1, StreamEvent.chunk(1, "b"))

        assert registry.count(1) == 0


class TestSSEFraming:
    def test_event_wire_forms(self):
        from mcpchat.services.streaming.transport import format_sse
        from mcpchat.services.streaming.types import StreamEvent

        assert parse_sse(format_sse(StreamEvent.connected())) == {"type": "connected"}
        assert parse_sse(format_sse(StreamEvent.chunk(4, "Hi"))) == {
            "type": "chunk",
            "content": "Hi",
            "conversation_id": 4,
        }
        assert parse_sse(format_sse(StreamEvent.error(4, "Sorry"))) == {
            "type": "error",
            "content": "Sorry",
            "conversation_id": 4,
        }


class TestSubscription:
    """Tests for Subscription lifecycle."""

    @pytest.mark.asyncio
    async def test_connected_first_then_broadcast_events(self, store, conversation):
        from mcpchat.services.streaming.transport import SSE_PREAMBLE
        from mcpchat.services.streaming.types import StreamEvent

        transport = make_transport(store)
        subscription = transport.subscribe(conversation.id)
        subscription.open()
        transport._registry.broadcast(conversation.id, StreamEvent.chunk(conversation.id, "Hi"))
        transport._registry.broadcast(conversation.id, StreamEvent.complete(conversation.id, 12))

        body = subscription.sse()
        frames = [await anext(body) for _ in range(4)]
        await body.aclose()

        assert frames[0] == SSE_PREAMBLE
        assert [parse_sse(f)["type"] for f in frames[1:]] == ["connected", "chunk", "complete"]
        assert parse_sse(frames[3])["message_id"] == 12

    @pytest.mark.asyncio
    async def test_keepalive_when_idle(self, store, conversation):
        from mcpchat.services.streaming.transport import SSE_KEEPALIVE

        transport = make_transport(store)
        subscription = transport.subscribe(conversation.id)
        body = subscription.sse()

        await anext(body)  # preamble
        await anext(body)  # connected
        assert await anext(body) == SSE_KEEPALIVE
        await body.aclose()

    @pytest.mark.asyncio
    async def test_disconnect_ends_stream_and_unregisters(self, store, conversation):
        transport = make_transport(store)
        subscription = transport.subscribe(conversation.id)
        subscription.open()
        assert transport._registry.count(conversation.id) == 1

        async def gone():
            return True

        frames = [frame async for frame in subscription.sse(gone)]

        assert len(frames) == 2
        assert transport._registry.count(conversation.id) == 0

    @pytest.mark.asyncio
    async def test_close_unregisters_once(self, store, conversation):
        transport = make_transport(store)
        first = transport.subscribe(conversation.id)
        second = transport.subscribe(conversation.id)
        first.open()
        second.open()

        first.close()
        first.close()

        assert transport._registry.count(conversation.id) == 1
        second.close()
        assert transport._registry.count(conversation.id) == 0

    @pytest.mark.asyncio
    async def test_registers_on_first_read(self, store, conversation):
        from mcpchat.services.streaming.types import StreamEvent

        transport = make_transport(store)
        subscription = transport.subscribe(conversation.id)

        assert transport._registry.count(conversation.id) == 0
        assert transport._registry.broadcast(conversation.id, StreamEvent.chunk(conversation.id, "a")) == 0

        body = subscription.sse()
        await anext(body)
        assert transport._registry.count(conversation.id) == 1

        await body.aclose()
        assert transport._registry.count(conversation.id) == 0

    @pytest.mark.asyncio
    async def test_body_never_started_leaves_nothing_behind(self, store, conversation):
        transport = make_transport(store)
        subscription = transport.subscribe(conversation.id)

        subscription.close()
        subscription.open()

        assert transport._registry.count(conversation.id) == 0


class TestAuthorize:
    """Tests for subscribe-time checks."""

    @pytest.mark.asyncio
    async def test_header_and_query_token(self, store, conversation):
        from mcpchat.services.auth import create_token

        token = create_token(conversation.user_id, "admin", "admin")
        transport = make_transport(store)

        by_header = await transport.authorize(conversation.id, authorization=f"Bearer {token}")
        by_query = await transport.authorize(conversation.id, token=token)

        assert by_header["id"] == by_query["id"] == conversation.user_id

    @pytest.mark.asyncio
    async def test_missing_and_invalid_token(self, store, conversation):
        from mcpchat.errors import Unauthenticated

        transport = make_transport(store)

        with pytest.raises(Unauthenticated) as missing:
            await transport.authorize(conversation.id)
        with pytest.raises(Unauthenticated) as invalid:
            await transport.authorize(conversation.id, token="not-a-jwt")

        assert missing.value.message == "Token required"
        assert invalid.value.message == "Invalid token"

    @pytest.mark.asyncio
    async def test_other_users_conversation(self, store, conversation):
        from mcpchat.errors import NotFound
        from mcpchat.services.auth import create_token
        from mcpchat.services.database import hash_password

        intruder = await store.create_user("mallory", hash_password("pw"))
        transport = make_transport(store)

        with pytest.raises(NotFound):
            await transport.authorize(conversation.id, token=create_token(intruder.id, "mallory", "user"))
        with pytest.raises(NotFound):
            await transport.authorize(9999, token=create_token(intruder.id, "mallory", "user"))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
