"""
Tests for the provider stream client, using httpx.MockTransport in place
of real AI services.
"""
import asyncio
import gzip
import json
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))


def connection(provider: str, **config):
    from mcpchat.services.store import ConnectionData

    return ConnectionData(id=1, name=f"{provider} test", provider=provider, config=config)


def ndjson_body(*parts: str) -> bytes:
    lines = [json.dumps({"message": {"content": p}, "done": False}) for p in parts]
    lines.append(json.dumps({"message": {"content": ""}, "done": True}))
    return ("\n".join(lines) + "\n").encode("utf-8")


def make_client(handler, **kwargs):
    from mcpchat.services.streaming.providers import ProviderStreamClient

    kwargs.setdefault("retry_delay", 0)
    return ProviderStreamClient(transport=httpx.MockTransport(handler), **kwargs)


async def collect(stream) -> list[str]:
    return [fragment async for fragment in stream]


class TestCandidateEndpoints:
    def test_loopback_expands_to_container_hosts(self):
        from mcpchat.services.streaming.providers import candidate_endpoints

        endpoints = candidate_endpoints("http://localhost:11434")

        assert endpoints[0] == "http://localhost:11434"
        assert "http://host.docker.internal:11434" in endpoints
        assert "http://ollama:11434" in endpoints
        assert len(endpoints) == len(set(endpoints))

    def test_remote_endpoint_is_not_expanded(self):
        from mcpchat.services.streaming.providers import candidate_endpoints

        assert candidate_endpoints("http://gpu-box:11434") == ["http://gpu-box:11434"]


class TestStreaming:
    """Tests for ProviderStreamClient.stream()."""

    @pytest.mark.asyncio
    async def test_ollama_stream(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=ndjson_body("Hi", " there"))

        client = make_client(handler)
        stream = client.stream(
            connection("ollama", endpoint="http://gpu-box:11434", model="llama3.2"),
            [{"role": "user", "content": "Hello"}],
        )

        assert await collect(stream) == ["Hi", " there"]
        assert stream.final_text == "Hi there"
        assert stream.exhausted is True
        assert seen["url"] == "http://gpu-box:11434/api/chat"
        assert seen["body"]["stream"] is True
        assert seen["body"]["messages"] == [{"role": "user", "content": "Hello"}]

    @pytest.mark.asyncio
    async def test_openai_stream_sends_bearer_and_reads_deltas(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization")
            seen["url"] = str(request.url)
            body = "".join(
                "data: " + json.dumps({"choices": [{"delta": {"content": part}}]}) + "\n\n"
                for part in ("Hel", "lo")
            )
            return httpx.Response(200, content=(body + "data: [DONE]\n\n").encode("utf-8"))

        client = make_client(handler)
        stream = client.stream(connection("openai", apiKey="sk-test"), [{"role": "user", "content": "x"}])

        assert await collect(stream) == ["Hel", "lo"]
        assert seen["auth"] == "Bearer sk-test"
        assert seen["url"] == "https://api.openai.com/v1/chat/completions"

    @pytest.mark.asyncio
    async def test_gzip_encoded_stream(self):
        body = "".join(
            "data: " + json.dumps({"choices": [{"delta": {"content": part}}]}) + "\n\n"
            for part in ("Hi", " there")
        ) + "data: [DONE]\n\n"

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                headers={"content-encoding": "gzip", "content-type": "text/event-stream"},
                content=gzip.compress(body.encode("utf-8")),
            )

        client = make_client(handler)
        stream = client.stream(connection("custom", endpoint="http://llm.internal/v1"), [])

        assert await collect(stream) == ["Hi", " there"]

    @pytest.mark.asyncio
    async def test_stream_in_irregular_chunks(self):
        body = ndjson_body("one", "two", "three")

        async def chunks():
            for i in range(0, len(body), 7):
                yield body[i:i + 7]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=chunks())

        client = make_client(handler)
        stream = client.stream(connection("ollama", endpoint="http://gpu-box:11434"), [])

        assert await collect(stream) == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_stream_is_single_pass(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=ndjson_body("a"))

        client = make_client(handler)
        stream = client.stream(connection("ollama", endpoint="http://gpu-box:11434"), [])
        await collect(stream)

        with pytest.raises(RuntimeError):
            await collect(stream)

    @pytest.mark.asyncio
    async def test_failover_to_container_host(self):
        tried = []

        def handler(request: httpx.Request) -> httpx.Response:
            tried.append(request.url.host)
            if request.url.host == "localhost":
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, content=ndjson_body("ok"))

        client = make_client(handler)
        stream = client.stream(connection("ollama", endpoint="http://localhost:11434"), [])

        assert await collect(stream) == ["ok"]
        assert tried == ["localhost", "host.docker.internal"]

    @pytest.mark.asyncio
    async def test_all_endpoints_unreachable(self):
        from mcpchat.errors import UpstreamUnreachable

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        stream = client.stream(connection("ollama", endpoint="http://localhost:11434"), [])

        with pytest.raises(UpstreamUnreachable) as exc_info:
            await collect(stream)
        assert "Cannot connect to Ollama" in exc_info.value.message
        assert "http://ollama:11434" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_http_error_status_does_not_fail_over(self):
        from mcpchat.errors import UpstreamProtocolError

        tried = []

        def handler(request: httpx.Request) -> httpx.Response:
            tried.append(request.url.host)
            return httpx.Response(404, json={"error": "model 'nope' not found"})

        client = make_client(handler)
        stream = client.stream(connection("ollama", endpoint="http://localhost:11434"), [])

        with pytest.raises(UpstreamProtocolError) as exc_info:
            await collect(stream)
        assert exc_info.value.message == "Ollama API error: 404 - model 'nope' not found"
        assert tried == ["localhost"]

    @pytest.mark.asyncio
    async def test_rejected_key(self):
        from mcpchat.errors import Unauthenticated

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"message": "Incorrect API key"}})

        client = make_client(handler)
        stream = client.stream(connection("openai", apiKey="bad"), [])

        with pytest.raises(Unauthenticated):
            await collect(stream)

    @pytest.mark.asyncio
    async def test_missing_key_fails_before_sending(self):
        from mcpchat.errors import Unauthenticated

        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        client = make_client(handler)

        with pytest.raises(Unauthenticated):
            await collect(client.stream(connection("openai"), []))

    @pytest.mark.asyncio
    async def test_no_first_byte_times_out(self):
        from mcpchat.errors import Timeout

        async def slow():
            await asyncio.sleep(1)
            yield ndjson_body("late")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=slow())

        client = make_client(handler, first_byte_timeout=0.05)
        stream = client.stream(connection("ollama", endpoint="http://gpu-box:11434"), [])

        with pytest.raises(Timeout):
            await collect(stream)

    @pytest.mark.asyncio
    async def test_embedded_error_raises_after_earlier_fragments(self):
        from mcpchat.errors import UpstreamProtocolError

        body = (
            json.dumps({"message": {"content": "partial"}, "done": False})
            + "\n"
            + json.dumps({"error": "out of memory"})
            + "\n"
        ).encode("utf-8")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body)

        client = make_client(handler)
        stream = client.stream(connection("ollama", endpoint="http://gpu-box:11434"), [])
        received = []

        with pytest.raises(UpstreamProtocolError):
            async for fragment in stream:
                received.append(fragment)
        assert received == ["partial"]


class TestGenerate:
    """Tests for non-streaming calls and connection checks."""

    @pytest.mark.asyncio
    async def test_anthropic_generate(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"content": [{"type": "text", "text": "Bonjour"}]})

        client = make_client(handler)
        history = [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Hello"},
        ]

        text = await client.generate(connection("anthropic", apiKey="ak"), history)

        assert text == "Bonjour"
        assert seen["headers"]["x-api-key"] == "ak"
        assert seen["headers"]["anthropic-version"] == "2023-06-01"
        assert seen["body"]["system"] == "Be brief"
        assert seen["body"]["messages"] == [{"role": "user", "content": "Hello"}]

    def test_anthropic_is_not_streamed(self):
        client = make_client(lambda request: httpx.Response(200))

        assert client.supports_streaming(connection("anthropic", apiKey="ak")) is False
        assert client.supports_streaming(connection("ollama")) is True

    def test_model_override(self):
        client = make_client(lambda request: httpx.Response(200))
        conn = connection("ollama", model="mistral")

        assert client.resolve_model(conn) == "mistral"
        assert client.resolve_model(conn, "qwen2") == "qwen2"
        assert client.resolve_model(connection("ollama")) == "llama3.2"

    @pytest.mark.asyncio
    async def test_list_models(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/tags"
            return httpx.Response(200, json={"models": [{"name": "llama3.2"}, {"name": "mistral"}]})

        client = make_client(handler)

        models = await client.list_models(connection("ollama", endpoint="http://gpu-box:11434"))

        assert models == ["llama3.2", "mistral"]

    @pytest.mark.asyncio
    async def test_reachability_check(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="boom")

        client = make_client(handler)

        assert await client.probe(connection("custom", endpoint="http://llm.internal/v1")) is False

    @pytest.mark.asyncio
    async def test_no_endpoints_to_try(self):
        from mcpchat.errors import UpstreamUnreachable
        from mcpchat.services.streaming.providers import get_provider

        client = make_client(lambda request: httpx.Response(200))

        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200))) as http:
            with pytest.raises(UpstreamUnreachable) as exc_info:
                await client._send_with_failover(
                    http,
                    get_provider("ollama"),
                    [],
                    lambda endpoint: http.build_request("GET", endpoint),
                    deadline=1,
                )
        assert exc_info.value.message == "No Ollama endpoint configured"

    @pytest.mark.asyncio
    async def test_unknown_provider(self):
        from mcpchat.errors import UpstreamProtocolError

        client = make_client(lambda request: httpx.Response(200))

        with pytest.raises(UpstreamProtocolError):
            await client.generate(connection("palm"), [])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
