"""
Streaming Services Module.

Relays AI provider output to live client connections.

Architecture:
- ChunkDecoder: Turns raw upstream bytes into text fragments
- ProviderStreamClient: Opens provider streams with endpoint failover
- SubscriberRegistry: Tracks live connections per conversation
- StreamCoordinator: Runs one generation cycle per user message
- TransportAdapter: Serves the SSE and WebSocket subscribe routes

Usage:
    from mcpchat.services.streaming import coordinator, GenerationRequest

    coordinator.submit(GenerationRequest(conversation_id=42))
"""

from .types import (
    GenerationRequest,
    StreamEvent,
    StreamResult,
    StreamState,
)
from .decoders import ChunkDecoder, DecodeResult, NDJSONDecoder, SSEDeltaDecoder
from .providers import ProviderStream, ProviderStreamClient, get_provider, provider_client
from .registry import SinkClosed, StreamSession, SubscriberRegistry, registry
from .coordinator import ERROR_PREFIX, GenerationMachine, StreamCoordinator, coordinator
from .transport import SSE_HEADERS, QueueSink, Subscription, TransportAdapter, transport

__all__ = [
    # Types
    "GenerationRequest",
    "StreamEvent",
    "StreamResult",
    "StreamState",
    # Decoders
    "ChunkDecoder",
    "DecodeResult",
    "NDJSONDecoder",
    "SSEDeltaDecoder",
    # Services
    "ProviderStream",
    "ProviderStreamClient",
    "get_provider",
    "SinkClosed",
    "StreamSession",
    "SubscriberRegistry",
    "GenerationMachine",
    "StreamCoordinator",
    "ERROR_PREFIX",
    "QueueSink",
    "Subscription",
    "TransportAdapter",
    "SSE_HEADERS",
    # Singletons
    "provider_client",
    "registry",
    "coordinator",
    "transport",
]
