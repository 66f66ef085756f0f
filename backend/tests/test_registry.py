"""
Tests for the subscriber registry.
"""
import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))


class RecordingSink:
    def __init__(self):
        self.events = []

    def send(self, event):
        self.events.append(event)


class BrokenSink:
    def send(self, event):
        raise ConnectionResetError("peer went away")


class TestSubscriberRegistry:
    """Tests for SubscriberRegistry."""

    @pytest.fixture
    def registry(self):
        from mcpchat.services.streaming.registry import SubscriberRegistry

        return SubscriberRegistry(idle_ttl=10)

    def test_add_and_remove(self, registry):
        first = registry.add(1, RecordingSink())
        second = registry.add(1, RecordingSink())

        assert first != second
        assert registry.count(1) == 2

        registry.remove(1, first)
        registry.remove(1, first)
        registry.remove(99, second)

        assert registry.count(1) == 1

    def test_broadcast_reaches_only_that_conversation(self, registry):
        from mcpchat.services.streaming.types import StreamEvent

        a, b, other = RecordingSink(), RecordingSink(), RecordingSink()
        registry.add(1, a)
        registry.add(1, b)
        registry.add(2, other)

        delivered = registry.broadcast(1, StreamEvent.chunk(1, "hi"))

        assert delivered == 2
        assert [e.content for e in a.events] == ["hi"]
        assert [e.content for e in b.events] == ["hi"]
        assert other.events == []

    def test_broadcast_without_subscribers(self, registry):
        from mcpchat.services.streaming.types import StreamEvent

        assert registry.broadcast(5, StreamEvent.chunk(5, "nobody")) == 0

    def test_failing_sink_is_pruned(self, registry):
        from mcpchat.services.streaming.types import StreamEvent

        healthy = RecordingSink()
        registry.add(1, BrokenSink())
        registry.add(1, healthy)

        delivered = registry.broadcast(1, StreamEvent.chunk(1, "a"))
        registry.broadcast(1, StreamEvent.chunk(1, "b"))

        assert delivered == 1
        assert registry.count(1) == 1
        assert [e.content for e in healthy.events] == ["a", "b"]

    def test_events_arrive_in_broadcast_order(self, registry):
        from mcpchat.services.streaming.types import StreamEvent

        sink = RecordingSink()
        registry.add(3, sink)
        for part in ("1", "2", "3", "4"):
            registry.broadcast(3, StreamEvent.chunk(3, part))
        registry.broadcast(3, StreamEvent.complete(3, 10))

        assert [e.content for e in sink.events[:-1]] == ["1", "2", "3", "4"]
        assert sink.events[-1].is_terminal

    @pytest.mark.asyncio
    async def test_wait_for_subscriber_wakes_on_join(self, registry):
        async def join_later():
            await asyncio.sleep(0.01)
            registry.add(7, RecordingSink())

        joiner = asyncio.create_task(join_later())
        joined = await registry.wait_for_subscriber(7, timeout=1.0)
        await joiner

        assert joined is True

    @pytest.mark.asyncio
    async def test_wait_for_subscriber_times_out(self, registry):
        assert await registry.wait_for_subscriber(8, timeout=0.01) is False

    @pytest.mark.asyncio
    async def test_wait_returns_immediately_when_present(self, registry):
        registry.add(9, RecordingSink())

        assert await registry.wait_for_subscriber(9, timeout=0) is True

    def test_reap_idle_sessions(self, registry):
        handle = registry.add(1, RecordingSink())
        registry.add(2, RecordingSink())
        registry.remove(1, handle)
        busy = registry.session(3)
        busy.pending = 1

        reaped = registry.reap_idle(now=busy.last_activity + 60)

        assert reaped == 1
        assert registry.get_session(1) is None
        assert registry.get_session(2) is not None
        assert registry.get_session(3) is not None

    def test_recent_sessions_survive_reaping(self, registry):
        session = registry.session(4)

        assert registry.reap_idle(now=session.last_activity + 1) == 0
        assert registry.session_count == 1

    @pytest.mark.asyncio
    async def test_reaper_task(self, registry):
        registry.idle_ttl = 0
        registry.session(1)

        registry.start_reaper(0.01)
        await asyncio.sleep(0.05)
        await registry.stop_reaper()

        assert registry.session_count == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
