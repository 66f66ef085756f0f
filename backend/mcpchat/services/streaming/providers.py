"""
Provider Stream Client.

Talks to AI chat-completion providers over HTTP.
Single Responsibility: request shaping, transport and decoding; it knows
nothing about subscribers or persistence.

Streaming calls bound the time to first byte, never the total duration.
Non-streaming calls are bounded by a fixed request timeout.
"""
import asyncio
import json
import logging
import re
from typing import Any, AsyncIterator, Callable, Optional, Sequence

import httpx

from mcpchat.config import settings
from mcpchat.errors import (
    StreamingError,
    Timeout,
    Unauthenticated,
    UpstreamProtocolError,
    UpstreamUnreachable,
)
from mcpchat.services.store import ConnectionData

from .decoders import ChunkDecoder, NDJSONDecoder, SSEDeltaDecoder

logger = logging.getLogger(__name__)

History = Sequence[dict[str, str]]

_LOOPBACK = re.compile(r"localhost|127\.0\.0\.1")
# Equivalent addresses for a loopback endpoint when running inside a container
_LOOPBACK_ALTERNATIVES = ("host.docker.internal", "ollama", "172.17.0.1", "192.168.65.1")


def candidate_endpoints(base_endpoint: str) -> list[str]:
    """
    Ordered, de-duplicated list of endpoints equivalent to base_endpoint.

    A loopback endpoint also yields the Docker host and service-name variants.
    """
    endpoints = [base_endpoint]
    if _LOOPBACK.search(base_endpoint):
        for host in _LOOPBACK_ALTERNATIVES:
            endpoints.append(_LOOPBACK.sub(host, base_endpoint, count=1))
    return list(dict.fromkeys(endpoints))


def _join(endpoint: str, path: str) -> str:
    base = endpoint.rstrip("/")
    if base.endswith(path):
        return base
    return f"{base}{path}"


def _strip_suffix(endpoint: str, *suffixes: str) -> str:
    base = endpoint.rstrip("/")
    for suffix in suffixes:
        if base.endswith(suffix):
            return base[: -len(suffix)]
    return base


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error)
        if error:
            return str(error)
        if data.get("message"):
            return str(data["message"])
    return response.text[:500] or response.reason_phrase


def _messages(history: History) -> list[dict[str, str]]:
    return [{"role": m["role"], "content": m["content"]} for m in history]


class Provider:
    """Request shaping for one provider family."""

    name = "base"
    label = "AI provider"
    default_model = "default"
    default_endpoint: Optional[str] = None
    supports_streaming = True
    decoder_class: type[ChunkDecoder] = SSEDeltaDecoder
    failover = False

    def resolve_model(self, config: dict, override: Optional[str] = None) -> str:
        return override or config.get("model") or self.default_model

    def base_endpoint(self, config: dict) -> str:
        endpoint = config.get("endpoint") or self.default_endpoint
        if not endpoint:
            raise UpstreamProtocolError(f"{self.label} connection has no endpoint configured", 400)
        return endpoint

    def endpoints(self, config: dict) -> list[str]:
        base = self.base_endpoint(config)
        return candidate_endpoints(base) if self.failover else [base]

    def check_credentials(self, config: dict) -> None:
        pass

    def headers(self, config: dict) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def chat_url(self, endpoint: str) -> str:
        raise NotImplementedError

    def models_url(self, endpoint: str) -> str:
        raise NotImplementedError

    def build_body(self, config: dict, history: History, model: str, stream: bool) -> dict[str, Any]:
        raise NotImplementedError

    def parse_response(self, data: dict[str, Any]) -> str:
        raise NotImplementedError

    def parse_models(self, data: dict[str, Any]) -> list[str]:
        return [m["id"] for m in data.get("data", []) if isinstance(m, dict) and m.get("id")]


class OpenAIProvider(Provider):
    name = "openai"
    label = "OpenAI"
    default_model = "gpt-3.5-turbo"
    default_endpoint = "https://api.openai.com/v1"

    def check_credentials(self, config: dict) -> None:
        if not config.get("apiKey"):
            raise Unauthenticated(f"{self.label} API key is required")

    def headers(self, config: dict) -> dict[str, str]:
        headers = super().headers(config)
        if config.get("apiKey"):
            headers["Authorization"] = f"Bearer {config['apiKey']}"
        return headers

    def base_endpoint(self, config: dict) -> str:
        return _strip_suffix(super().base_endpoint(config), "/chat/completions")

    def chat_url(self, endpoint: str) -> str:
        return _join(endpoint, "/chat/completions")

    def models_url(self, endpoint: str) -> str:
        return _join(endpoint, "/models")

    def build_body(self, config: dict, history: History, model: str, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "messages": _messages(history),
            "max_tokens": config.get("maxTokens") or 1000,
            "temperature": config.get("temperature", 0.7),
        }
        if stream:
            body["stream"] = True
        return body

    def parse_response(self, data: dict[str, Any]) -> str:
        choices = data.get("choices") or [{}]
        message = choices[0].get("message") or {}
        return message.get("content") or ""


class CustomProvider(OpenAIProvider):
    """Any OpenAI-compatible endpoint; the API key is optional."""

    name = "custom"
    label = "Custom provider"
    default_model = "default"
    default_endpoint = None

    def check_credentials(self, config: dict) -> None:
        pass


class OllamaProvider(Provider):
    name = "ollama"
    label = "Ollama"
    default_model = "llama3.2"
    default_endpoint = "http://localhost:11434"
    decoder_class = NDJSONDecoder
    failover = True

    def base_endpoint(self, config: dict) -> str:
        return _strip_suffix(super().base_endpoint(config), "/api/chat")

    def chat_url(self, endpoint: str) -> str:
        return _join(endpoint, "/api/chat")

    def models_url(self, endpoint: str) -> str:
        return _join(endpoint, "/api/tags")

    def build_body(self, config: dict, history: History, model: str, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "messages": _messages(history),
            "stream": stream,
        }
        options = {}
        if config.get("temperature") is not None:
            options["temperature"] = config["temperature"]
        if config.get("maxTokens"):
            options["num_predict"] = config["maxTokens"]
        if options:
            body["options"] = options
        return body

    def parse_response(self, data: dict[str, Any]) -> str:
        message = data.get("message") or {}
        return message.get("content") or ""

    def parse_models(self, data: dict[str, Any]) -> list[str]:
        return [m["name"] for m in data.get("models", []) if isinstance(m, dict) and m.get("name")]


class AnthropicProvider(Provider):
    """Anthropic Messages API, used without streaming."""

    name = "anthropic"
    label = "Anthropic"
    default_model = "claude-3-5-haiku-latest"
    default_endpoint = "https://api.anthropic.com"
    supports_streaming = False
    api_version = "2023-06-01"

    def check_credentials(self, config: dict) -> None:
        if not config.get("apiKey"):
            raise Unauthenticated(f"{self.label} API key is required")

    def headers(self, config: dict) -> dict[str, str]:
        headers = super().headers(config)
        headers["x-api-key"] = config.get("apiKey", "")
        headers["anthropic-version"] = self.api_version
        return headers

    def base_endpoint(self, config: dict) -> str:
        return _strip_suffix(super().base_endpoint(config), "/v1/messages")

    def chat_url(self, endpoint: str) -> str:
        return _join(endpoint, "/v1/messages")

    def models_url(self, endpoint: str) -> str:
        return _join(endpoint, "/v1/models")

    def build_body(self, config: dict, history: History, model: str, stream: bool) -> dict[str, Any]:
        system = "\n\n".join(m["content"] for m in history if m["role"] == "system")
        body: dict[str, Any] = {
            "model": model,
            "messages": [m for m in _messages(history) if m["role"] != "system"],
            "max_tokens": config.get("maxTokens") or 1024,
            "temperature": config.get("temperature", 0.7),
        }
        if system:
            body["system"] = system
        return body

    def parse_response(self, data: dict[str, Any]) -> str:
        blocks = data.get("content") or []
        return "".join(
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )


PROVIDERS: dict[str, Provider] = {
    provider.name: provider
    for provider in (OpenAIProvider(), OllamaProvider(), AnthropicProvider(), CustomProvider())
}


def get_provider(name: str) -> Provider:
    provider = PROVIDERS.get(name)
    if provider is None:
        raise UpstreamProtocolError(f"Unsupported AI provider: {name}", 400)
    return provider


class ProviderStream:
    """
    Lazy, single-pass sequence of text fragments.

    After exhaustion, final_text is the concatenation of every fragment.
    """

    def __init__(self, source: AsyncIterator[str]):
        self._source = source
        self._fragments: list[str] = []
        self._started = False
        self.exhausted = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._started:
            raise RuntimeError("ProviderStream can only be iterated once")
        self._started = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        async for fragment in self._source:
            self._fragments.append(fragment)
            yield fragment
        self.exhausted = True

    @property
    def final_text(self) -> str:
        return "".join(self._fragments)


class ProviderStreamClient:
    """
    Outbound client for AI providers.

    Usage:
        stream = client.stream(connection, history)
        async for fragment in stream:
            ...
        text = stream.final_text
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        request_timeout: Optional[float] = None,
        first_byte_timeout: Optional[float] = None,
        retry_delay: Optional[float] = None,
    ):
        self._transport = transport
        self.request_timeout = request_timeout if request_timeout is not None else settings.request_timeout
        self.first_byte_timeout = (
            first_byte_timeout if first_byte_timeout is not None else settings.first_byte_timeout
        )
        self.retry_delay = retry_delay if retry_delay is not None else settings.failover_retry_delay

    def _client(self, timeout: httpx.Timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=timeout)

    def supports_streaming(self, connection: ConnectionData) -> bool:
        return get_provider(connection.provider).supports_streaming

    def resolve_model(self, connection: ConnectionData, model_override: Optional[str] = None) -> str:
        return get_provider(connection.provider).resolve_model(connection.config, model_override)

    # ==================== Chat ====================

    def stream(
        self,
        connection: ConnectionData,
        history: History,
        model_override: Optional[str] = None,
    ) -> ProviderStream:
        """Start a streaming chat completion. Nothing is sent until iteration begins."""
        return ProviderStream(self._stream_fragments(connection, history, model_override))

    async def _stream_fragments(
        self,
        connection: ConnectionData,
        history: History,
        model_override: Optional[str],
    ) -> AsyncIterator[str]:
        provider = get_provider(connection.provider)
        config = connection.config
        provider.check_credentials(config)
        model = provider.resolve_model(config, model_override)
        endpoints = provider.endpoints(config)
        body = provider.build_body(config, history, model, stream=True)
        headers = provider.headers(config)

        logger.info(
            "Streaming from %s (connection %s, model %s, %d messages)",
            provider.name,
            connection.id,
            model,
            len(history),
        )

        # Read timeout disabled: total stream duration is unbounded
        timeout = httpx.Timeout(self.first_byte_timeout, read=None)
        async with self._client(timeout) as client:
            response = await self._send_with_failover(
                client,
                provider,
                endpoints,
                lambda endpoint: client.build_request(
                    "POST", provider.chat_url(endpoint), json=body, headers=headers
                ),
                deadline=self.first_byte_timeout,
                stream=True,
            )
            try:
                async for fragment in self._decode_body(provider, response):
                    yield fragment
            finally:
                await response.aclose()

    async def _decode_body(self, provider: Provider, response: httpx.Response) -> AsyncIterator[str]:
        decoder = provider.decoder_class()
        # aiter_bytes undoes any Content-Encoding (gzip from proxies)
        chunks = response.aiter_bytes()
        first = True
        while True:
            try:
                if first:
                    async with asyncio.timeout(self.first_byte_timeout):
                        data = await anext(chunks)
                    first = False
                else:
                    data = await anext(chunks)
            except StopAsyncIteration:
                break
            except TimeoutError as e:
                raise Timeout(
                    f"{provider.label} sent no data within {self.first_byte_timeout:g} seconds"
                ) from e
            except httpx.TransportError as e:
                raise UpstreamProtocolError(f"{provider.label} stream interrupted: {e}") from e

            result = decoder.feed(data)
            for fragment in result.fragments:
                yield fragment
            if result.error:
                raise UpstreamProtocolError(f"{provider.label} API error: {result.error}")
            if result.done:
                return

        result = decoder.flush()
        for fragment in result.fragments:
            yield fragment
        if result.error:
            raise UpstreamProtocolError(f"{provider.label} API error: {result.error}")

    async def generate(
        self,
        connection: ConnectionData,
        history: History,
        model_override: Optional[str] = None,
    ) -> str:
        """Non-streaming chat completion. Returns the full text (may be empty)."""
        provider = get_provider(connection.provider)
        config = connection.config
        provider.check_credentials(config)
        model = provider.resolve_model(config, model_override)
        body = provider.build_body(config, history, model, stream=False)
        headers = provider.headers(config)

        logger.info(
            "Generating from %s (connection %s, model %s, %d messages)",
            provider.name,
            connection.id,
            model,
            len(history),
        )

        async with self._client(httpx.Timeout(self.request_timeout)) as client:
            response = await self._send_with_failover(
                client,
                provider,
                provider.endpoints(config),
                lambda endpoint: client.build_request(
                    "POST", provider.chat_url(endpoint), json=body, headers=headers
                ),
                deadline=self.request_timeout,
            )
            try:
                data = response.json()
            except json.JSONDecodeError as e:
                raise UpstreamProtocolError(f"{provider.label} returned invalid JSON") from e

        text = provider.parse_response(data) if isinstance(data, dict) else ""
        logger.info("%s response received, %d chars", provider.label, len(text))
        return text

    # ==================== Connection checks ====================

    async def list_models(self, connection: ConnectionData) -> list[str]:
        """Model names offered by the connection's provider."""
        provider = get_provider(connection.provider)
        config = connection.config
        if provider.name == "custom" and not config.get("endpoint"):
            return [config.get("model") or provider.default_model]

        headers = provider.headers(config)
        async with self._client(httpx.Timeout(self.request_timeout)) as client:
            response = await self._send_with_failover(
                client,
                provider,
                provider.endpoints(config),
                lambda endpoint: client.build_request("GET", provider.models_url(endpoint), headers=headers),
                deadline=self.request_timeout,
            )
            try:
                data = response.json()
            except json.JSONDecodeError as e:
                raise UpstreamProtocolError(f"{provider.label} returned invalid JSON") from e
        return provider.parse_models(data) if isinstance(data, dict) else []

    async def probe(self, connection: ConnectionData) -> bool:
        """True when the provider answers its model listing."""
        try:
            await self.list_models(connection)
        except StreamingError as e:
            logger.info("Probe of connection %s failed: %s", connection.id, e.message)
            return False
        return True

    # ==================== Transport ====================

    async def _send_with_failover(
        self,
        client: httpx.AsyncClient,
        provider: Provider,
        endpoints: list[str],
        build_request: Callable[[str], httpx.Request],
        deadline: float,
        stream: bool = False,
    ) -> httpx.Response:
        """
        Send to each candidate endpoint in order until one answers.

        Only connection-level failures move on to the next endpoint; an HTTP
        error status is an answer and stops the search.
        """
        if not endpoints:
            raise UpstreamUnreachable(f"No {provider.label} endpoint configured")

        last_error: Optional[StreamingError] = None

        for index, endpoint in enumerate(endpoints):
            logger.info("Trying %s endpoint: %s", provider.label, endpoint)
            try:
                request = build_request(endpoint)
                async with asyncio.timeout(deadline):
                    response = await client.send(request, stream=stream)
            except (TimeoutError, httpx.TimeoutException):
                last_error = Timeout(f"{provider.label} request timeout after {deadline:g} seconds")
            except httpx.InvalidURL as e:
                raise UpstreamProtocolError(f"Invalid {provider.label} endpoint {endpoint}: {e}", 400) from e
            except httpx.TransportError as e:
                last_error = UpstreamUnreachable(
                    f"Cannot connect to {provider.label}. "
                    f"Tried endpoints: {', '.join(endpoints[: index + 1])} ({str(e) or type(e).__name__})"
                )
            else:
                await self._raise_for_status(provider, response)
                return response

            logger.warning("Failed to reach %s at %s: %s", provider.label, endpoint, last_error.message)
            if index < len(endpoints) - 1:
                await asyncio.sleep(self.retry_delay)

        raise last_error

    async def _raise_for_status(self, provider: Provider, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        await response.aread()
        await response.aclose()
        detail = _error_detail(response)
        if response.status_code in (401, 403):
            raise Unauthenticated(f"{provider.label} rejected the credentials: {detail}")
        raise UpstreamProtocolError(f"{provider.label} API error: {response.status_code} - {detail}")


# Singleton instance
provider_client = ProviderStreamClient()
