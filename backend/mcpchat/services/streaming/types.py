"""
Streaming Types.

Data structures for the streaming core.
Requests and events are immutable dataclasses; StreamState is the one
mutable record, owned by a single generation task.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Optional


EVENT_CONNECTED = "connected"
EVENT_CHUNK = "chunk"
EVENT_COMPLETE = "complete"
EVENT_ERROR = "error"

TERMINAL_EVENTS = (EVENT_COMPLETE, EVENT_ERROR)


@dataclass(frozen=True)
class GenerationRequest:
    """
    Immutable request for one generation cycle.

    Created by the send-message handler after the user message is
    persisted.
    """

    conversation_id: int
    user_message_id: Optional[int] = None
    ai_connection_id: Optional[int] = None
    model: Optional[str] = None


@dataclass(frozen=True)
class StreamEvent:
    """
    Downstream event.

    Wire form is a small JSON object with a "type" discriminator;
    fields that do not apply to the event type are omitted.
    """

    type: str
    conversation_id: Optional[int] = None
    content: Optional[str] = None
    message_id: Optional[int] = None

    @classmethod
    def connected(cls) -> "StreamEvent":
        return cls(type=EVENT_CONNECTED)

    @classmethod
    def chunk(cls, conversation_id: int, content: str) -> "StreamEvent":
        return cls(type=EVENT_CHUNK, conversation_id=conversation_id, content=content)

    @classmethod
    def complete(cls, conversation_id: int, message_id: int) -> "StreamEvent":
        return cls(type=EVENT_COMPLETE, conversation_id=conversation_id, message_id=message_id)

    @classmethod
    def error(cls, conversation_id: int, content: str) -> "StreamEvent":
        return cls(type=EVENT_ERROR, conversation_id=conversation_id, content=content)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type}
        if self.type in (EVENT_CHUNK, EVENT_ERROR):
            data["content"] = self.content
        if self.conversation_id is not None:
            data["conversation_id"] = self.conversation_id
        if self.type == EVENT_COMPLETE:
            data["message_id"] = self.message_id
        return data


@dataclass(frozen=True)
class StreamResult:
    """
    Final result of a generation cycle, as persisted.

    Attributes:
        message_id: ID of the stored assistant message
        content: Stored content (full text, partial text or error text)
        succeeded: False when the stored message is an error or truncated
    """

    message_id: Optional[int]
    content: str
    succeeded: bool


@dataclass
class StreamState:
    """
    Mutable state of an active generation.

    Tracks accumulated content during streaming.
    """

    conversation_id: int
    provider: str = ""
    model: str = ""
    accumulated_content: str = ""
    chunk_count: int = 0
    started_at: float = field(default_factory=time.monotonic)
    message_id: Optional[int] = None

    def append(self, delta: str) -> StreamEvent:
        """Append delta and return the chunk event to broadcast."""
        self.accumulated_content += delta
        self.chunk_count += 1
        return StreamEvent.chunk(self.conversation_id, delta)

    @property
    def has_content(self) -> bool:
        return bool(self.accumulated_content)

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)

    def metadata(self, **extra: Any) -> dict[str, Any]:
        """Metadata stored alongside the assistant message."""
        data: dict[str, Any] = {
            "provider": self.provider,
            "model": self.model,
            "chunk_count": self.chunk_count,
            "duration_ms": self.duration_ms,
        }
        data.update(extra)
        return data
