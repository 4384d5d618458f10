"""End-to-end tests for ProxyServer."""

import asyncio
import json
import time

import aiohttp
import pytest
from aioresponses import CallbackResult, aioresponses

from switchback.gateway.clients.llm_client import CircuitState
from switchback.gateway.proxy import ProxyConfig, ProxyServer
from switchback.gateway.transforms.streaming import StreamConverter
from switchback.gateway.transforms.tokens import count_request_tokens
from switchback.gateway.transforms.tool_id_mapper import shorten_tool_id

UPSTREAM_URL = "https://api.test.openai.com/v1/chat/completions"
JSON_HEADERS = {"Content-Type": "application/json", "anthropic-version": "2023-06-01"}


def _parse_sse(text: str) -> list[tuple[str, dict]]:
    events = []
    for frame in text.split("\n\n"):
        if not frame.strip():
            continue
        lines = frame.split("\n")
        name = lines[0].removeprefix("event: ")
        data = json.loads(lines[1].removeprefix("data: "))
        events.append((name, data))
    return events


@pytest.fixture
def proxy_config(tmp_path):
    return ProxyConfig(
        host="127.0.0.1",
        port=0,  # Let OS pick a port
        upstream_base_url="https://api.test.openai.com/v1",
        upstream_api_key="test-key",
        upstream_model="gpt-4o-test",
        max_retries=0,
        debug_dir=str(tmp_path),
    )


@pytest.fixture
async def running_proxy(proxy_config):
    server = ProxyServer(config=proxy_config)
    port = await server.start()

    yield server, f"http://127.0.0.1:{port}"

    await server.stop()


class TestRequestHandling:
    """Tests for inbound request checks."""

    async def test_health_check(self, running_proxy):
        """Health endpoint should return ok status."""
        _, base_url = running_proxy

        async with aiohttp.ClientSession() as session, session.get(f"{base_url}/health") as resp:
            assert resp.status == 200
            assert (await resp.json())["status"] == "ok"

    async def test_health_degraded_when_circuit_open(self, running_proxy):
        """An open circuit should report degraded health."""
        server, base_url = running_proxy
        server._client.circuit.state = CircuitState.OPEN
        server._client.circuit.last_failure_time = time.time()

        async with aiohttp.ClientSession() as session, session.get(f"{base_url}/health") as resp:
            assert resp.status == 503
            data = await resp.json()
            assert data == {"status": "degraded", "upstream": "circuit_open"}

    async def test_content_type_validation(self, running_proxy):
        """Should reject requests without a JSON Content-Type."""
        _, base_url = running_proxy

        async with (
            aiohttp.ClientSession() as session,
            session.post(f"{base_url}/v1/messages", data="not json", headers={"Content-Type": "text/plain"}) as resp,
        ):
            assert resp.status == 400
            data = await resp.json()
            assert data["type"] == "error"
            assert data["error"]["type"] == "invalid_request_error"
            assert "Content-Type" in data["error"]["message"]

    async def test_json_validation(self, running_proxy):
        """Should reject invalid JSON."""
        _, base_url = running_proxy

        async with (
            aiohttp.ClientSession() as session,
            session.post(f"{base_url}/v1/messages", data="{not valid json", headers=JSON_HEADERS) as resp,
        ):
            assert resp.status == 400
            data = await resp.json()
            assert "JSON" in data["error"]["message"]

    async def test_request_validation(self, running_proxy):
        """Should validate the request body."""
        _, base_url = running_proxy

        async with (
            aiohttp.ClientSession() as session,
            session.post(f"{base_url}/v1/messages", json={"max_tokens": 1024}, headers=JSON_HEADERS) as resp,
        ):
            assert resp.status == 400
            data = await resp.json()
            assert data["error"]["type"] == "invalid_request_error"
            assert "messages" in data["error"]["message"]


class TestNonStreaming:
    """Tests for complete responses."""

    async def test_non_streaming_request(self, running_proxy, tmp_path):
        """A complete reply should be translated and the model overridden."""
        _, base_url = running_proxy
        upstream_bodies = []

        def upstream(url, **kwargs):
            upstream_bodies.append(kwargs["json"])
            return CallbackResult(
                payload={
                    "id": "chatcmpl-1",
                    "model": "gpt-4o-test",
                    "choices": [{"message": {"content": "Hello from upstream!"}, "finish_reason": "stop"}],
                    "usage": {"prompt_tokens": 10, "completion_tokens": 5},
                }
            )

        with aioresponses(passthrough=[base_url]) as m:
            m.post(UPSTREAM_URL, callback=upstream)

            async with (
                aiohttp.ClientSession() as session,
                session.post(
                    f"{base_url}/v1/messages",
                    json={
                        "model": "claude-sonnet-4",
                        "system": "Be brief.",
                        "messages": [{"role": "user", "content": "Hello"}],
                        "max_tokens": 100,
                    },
                    headers=JSON_HEADERS,
                ) as resp,
            ):
                assert resp.status == 200
                data = await resp.json()

        assert data["type"] == "message"
        assert data["model"] == "claude-sonnet-4"
        assert data["content"] == [{"type": "text", "text": "Hello from upstream!"}]
        assert data["stop_reason"] == "end_turn"
        assert data["usage"] == {"input_tokens": 10, "output_tokens": 5}

        sent = upstream_bodies[0]
        assert sent["model"] == "gpt-4o-test"
        assert sent["stream"] is False
        assert sent["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hello"},
        ]

        saved = {p.name for p in tmp_path.rglob("*.json")}
        assert saved == {"1_anthropic_request.json", "2_openai_request.json", "3_anthropic_response.json"}

    async def test_tool_round_trip(self, running_proxy):
        """Client tool IDs are shortened upstream and restored on the way back."""
        _, base_url = running_proxy
        short_id = shorten_tool_id("toolu_01A09q90qw90lq917835lq9")
        upstream_bodies = []

        def upstream(url, **kwargs):
            upstream_bodies.append(kwargs["json"])
            return CallbackResult(
                payload={
                    "choices": [
                        {
                            "message": {
                                "content": None,
                                "tool_calls": [
                                    {
                                        "id": short_id,
                                        "type": "function",
                                        "function": {"name": "get_weather", "arguments": '{"location":"NYC"}'},
                                    }
                                ],
                            },
                            "finish_reason": "tool_calls",
                        }
                    ]
                }
            )

        body = {
            "model": "claude-sonnet-4",
            "max_tokens": 100,
            "tools": [{"name": "get_weather", "description": "Get weather", "input_schema": {"type": "object"}}],
            "messages": [
                {"role": "user", "content": "Weather in NYC?"},
                {
                    "role": "assistant",
                    "content": [
                        {
                            "type": "tool_use",
                            "id": "toolu_01A09q90qw90lq917835lq9",
                            "name": "get_weather",
                            "input": {"location": "NYC"},
                        }
                    ],
                },
                {
                    "role": "user",
                    "content": [
                        {"type": "tool_result", "tool_use_id": "toolu_01A09q90qw90lq917835lq9", "content": "Sunny"}
                    ],
                },
            ],
        }

        with aioresponses(passthrough=[base_url]) as m:
            m.post(UPSTREAM_URL, callback=upstream)

            async with (
                aiohttp.ClientSession() as session,
                session.post(f"{base_url}/v1/messages", json=body, headers=JSON_HEADERS) as resp,
            ):
                assert resp.status == 200
                data = await resp.json()

        sent_messages = upstream_bodies[0]["messages"]
        assert sent_messages[1]["tool_calls"][0]["id"] == short_id
        assert sent_messages[2] == {"role": "tool", "tool_call_id": short_id, "content": "Sunny"}

        assert data["stop_reason"] == "tool_use"
        assert data["content"] == [
            {
                "type": "tool_use",
                "id": "toolu_01A09q90qw90lq917835lq9",
                "name": "get_weather",
                "input": {"location": "NYC"},
            }
        ]

    async def test_upstream_error_format(self, running_proxy):
        """Upstream errors should keep their status in the client error shape."""
        _, base_url = running_proxy

        with aioresponses(passthrough=[base_url]) as m:
            m.post(UPSTREAM_URL, status=401, body="Unauthorized")

            async with (
                aiohttp.ClientSession() as session,
                session.post(
                    f"{base_url}/v1/messages",
                    json={"messages": [{"role": "user", "content": "Hello"}], "max_tokens": 10},
                    headers=JSON_HEADERS,
                ) as resp,
            ):
                assert resp.status == 401
                data = await resp.json()

        assert data["type"] == "error"
        assert data["error"]["type"] == "authentication_error"
        assert "Unauthorized" in data["error"]["message"]

    async def test_upstream_unreachable(self, running_proxy):
        """Network failures should surface as an api_error."""
        _, base_url = running_proxy

        with aioresponses(passthrough=[base_url]) as m:
            m.post(UPSTREAM_URL, exception=aiohttp.ClientConnectionError("refused"))

            async with (
                aiohttp.ClientSession() as session,
                session.post(
                    f"{base_url}/v1/messages",
                    json={"messages": [{"role": "user", "content": "Hello"}], "max_tokens": 10},
                    headers=JSON_HEADERS,
                ) as resp,
            ):
                assert resp.status == 502
                data = await resp.json()

        assert data["error"]["type"] == "api_error"

    async def test_upstream_timeout(self, running_proxy):
        """Upstream timeouts should come back as an Anthropic error body."""
        _, base_url = running_proxy

        with aioresponses(passthrough=[base_url]) as m:
            m.post(UPSTREAM_URL, exception=asyncio.TimeoutError())

            async with (
                aiohttp.ClientSession() as session,
                session.post(
                    f"{base_url}/v1/messages",
                    json={"messages": [{"role": "user", "content": "Hello"}], "max_tokens": 10},
                    headers=JSON_HEADERS,
                ) as resp,
            ):
                assert resp.status == 502
                data = await resp.json()

        assert data["type"] == "error"
        assert data["error"]["type"] == "api_error"
        assert "TimeoutError" in data["error"]["message"]

    async def test_upstream_invalid_json(self, running_proxy):
        """A 200 reply that is not JSON should come back as an error body."""
        _, base_url = running_proxy

        with aioresponses(passthrough=[base_url]) as m:
            m.post(UPSTREAM_URL, status=200, body="<html>oops</html>")

            async with (
                aiohttp.ClientSession() as session,
                session.post(
                    f"{base_url}/v1/messages",
                    json={"messages": [{"role": "user", "content": "Hello"}], "max_tokens": 10},
                    headers=JSON_HEADERS,
                ) as resp,
            ):
                assert resp.status == 502
                data = await resp.json()

        assert data["error"]["type"] == "api_error"
        assert "invalid JSON" in data["error"]["message"]


class TestStreaming:
    """Tests for streamed responses."""

    async def test_streaming_request(self, running_proxy, tmp_path):
        """A streamed reply should be converted into Messages API events."""
        _, base_url = running_proxy
        sse = (
            b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
            b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n'
            b'data: {"choices":[{"delta":{"content":"!"}}]}\n\n'
            b'data: {"choices":[{"delta":{},"finish_reason":"stop"}]}\n\n'
            b'data: {"choices":[],"usage":{"prompt_tokens":7,"completion_tokens":2}}\n\n'
            b"data: [DONE]\n\n"
        )
        messages = [{"role": "user", "content": "Say hi"}]

        with aioresponses(passthrough=[base_url]) as m:
            m.post(UPSTREAM_URL, body=sse, headers={"Content-Type": "text/event-stream"})

            async with (
                aiohttp.ClientSession() as session,
                session.post(
                    f"{base_url}/v1/messages",
                    json={"model": "claude-sonnet-4", "messages": messages, "max_tokens": 100, "stream": True},
                    headers=JSON_HEADERS,
                ) as resp,
            ):
                assert resp.status == 200
                assert "text/event-stream" in resp.headers["Content-Type"]
                events = _parse_sse(await resp.text())

        names = [name for name, _ in events]
        assert names == [
            "message_start",
            "content_block_start",
            "content_block_delta",
            "content_block_delta",
            "content_block_stop",
            "message_delta",
            "message_stop",
        ]
        start = events[0][1]["message"]
        assert start["model"] == "claude-sonnet-4"
        assert start["usage"]["input_tokens"] == count_request_tokens(messages)
        assert [data["delta"]["text"] for name, data in events if name == "content_block_delta"] == ["Hi", "!"]
        assert events[5][1]["delta"]["stop_reason"] == "end_turn"
        assert events[5][1]["usage"]["output_tokens"] == 2

        response_file = next(tmp_path.rglob("3_anthropic_response.json"))
        saved = json.loads(response_file.read_text())
        assert saved["content"] == [{"type": "text", "text": "Hi!"}]

    async def test_streaming_tool_call(self, running_proxy):
        """Streamed tool calls should become tool_use blocks."""
        _, base_url = running_proxy
        sse = (
            b'data: {"choices":[{"delta":{"tool_calls":[{"index":0,"id":"call_1","type":"function",'
            b'"function":{"name":"get_weather","arguments":""}}]}}]}\n\n'
            b'data: {"choices":[{"delta":{"tool_calls":[{"index":0,"function":{"arguments":"{\\"loc"}}]}}]}\n\n'
            b'data: {"choices":[{"delta":{"tool_calls":[{"index":0,"function":{"arguments":"\\":\\"NYC\\"}"}}]}}]}\n\n'
            b'data: {"choices":[{"delta":{},"finish_reason":"tool_calls"}]}\n\n'
            b"data: [DONE]\n\n"
        )

        with aioresponses(passthrough=[base_url]) as m:
            m.post(UPSTREAM_URL, body=sse)

            async with (
                aiohttp.ClientSession() as session,
                session.post(
                    f"{base_url}/v1/messages",
                    json={
                        "messages": [{"role": "user", "content": "Weather?"}],
                        "tools": [{"name": "get_weather", "input_schema": {"type": "object"}}],
                        "max_tokens": 100,
                        "stream": True,
                    },
                    headers=JSON_HEADERS,
                ) as resp,
            ):
                events = _parse_sse(await resp.text())

        block_start = events[1][1]["content_block"]
        assert block_start == {"type": "tool_use", "id": "call_1", "name": "get_weather", "input": {}}
        partials = [data["delta"]["partial_json"] for name, data in events if name == "content_block_delta"]
        assert json.loads("".join(partials)) == {"loc": "NYC"}
        assert events[-2][1]["delta"]["stop_reason"] == "tool_use"

    async def test_streaming_upstream_error(self, running_proxy):
        """Upstream failures in streaming mode end with an error event."""
        _, base_url = running_proxy

        with aioresponses(passthrough=[base_url]) as m:
            m.post(UPSTREAM_URL, status=500, body="boom")

            async with (
                aiohttp.ClientSession() as session,
                session.post(
                    f"{base_url}/v1/messages",
                    json={"messages": [{"role": "user", "content": "Hello"}], "max_tokens": 10, "stream": True},
                    headers=JSON_HEADERS,
                ) as resp,
            ):
                assert resp.status == 200
                events = _parse_sse(await resp.text())

        assert len(events) == 1
        name, data = events[0]
        assert name == "error"
        assert data["error"]["type"] == "api_error"
        assert "500" in data["error"]["message"]


class TestCountTokens:
    """Tests for the count_tokens endpoint."""

    async def test_count_tokens(self, running_proxy):
        """The endpoint should return the local input token count."""
        _, base_url = running_proxy
        body = {
            "model": "claude-sonnet-4",
            "system": "Be brief.",
            "messages": [{"role": "user", "content": "Hello there"}],
            "tools": [{"name": "search", "description": "Search", "input_schema": {"type": "object"}}],
        }

        async with (
            aiohttp.ClientSession() as session,
            session.post(f"{base_url}/v1/messages/count_tokens", json=body, headers=JSON_HEADERS) as resp,
        ):
            assert resp.status == 200
            data = await resp.json()

        assert data == {
            "input_tokens": count_request_tokens(body["messages"], system=body["system"], tools=body["tools"])
        }

    async def test_count_tokens_validation(self, running_proxy):
        """Bodies without messages are rejected."""
        _, base_url = running_proxy

        async with (
            aiohttp.ClientSession() as session,
            session.post(f"{base_url}/v1/messages/count_tokens", json={}, headers=JSON_HEADERS) as resp,
        ):
            assert resp.status == 400


class TestStreamingFailures:
    """Tests for streams that cannot be completed."""

    async def test_conversion_failure_ends_with_error_event(self, running_proxy, monkeypatch):
        """An unexpected failure mid-stream still ends the SSE body cleanly."""
        _, base_url = running_proxy

        def explode(self, chunk):
            raise RuntimeError("boom")

        monkeypatch.setattr(StreamConverter, "process_chunk", explode)
        sse = b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\ndata: [DONE]\n\n'

        with aioresponses(passthrough=[base_url]) as m:
            m.post(UPSTREAM_URL, body=sse, headers={"Content-Type": "text/event-stream"})

            async with (
                aiohttp.ClientSession() as session,
                session.post(
                    f"{base_url}/v1/messages",
                    json={"messages": [{"role": "user", "content": "Hello"}], "max_tokens": 10, "stream": True},
                    headers=JSON_HEADERS,
                ) as resp,
            ):
                assert resp.status == 200
                events = _parse_sse(await resp.text())

        assert events[-1][0] == "error"
        assert events[-1][1]["error"]["type"] == "api_error"
        assert "RuntimeError" in events[-1][1]["error"]["message"]

    async def test_malformed_chunk_skipped(self, running_proxy):
        """A well-formed JSON frame with the wrong shape does not cut the stream."""
        _, base_url = running_proxy
        sse = (
            b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n'
            b'data: {"choices":[{"delta":"oops"}]}\n\n'
            b'data: {"choices":[{"delta":{},"finish_reason":"stop"}]}\n\n'
            b"data: [DONE]\n\n"
        )

        with aioresponses(passthrough=[base_url]) as m:
            m.post(UPSTREAM_URL, body=sse, headers={"Content-Type": "text/event-stream"})

            async with (
                aiohttp.ClientSession() as session,
                session.post(
                    f"{base_url}/v1/messages",
                    json={"messages": [{"role": "user", "content": "Hello"}], "max_tokens": 10, "stream": True},
                    headers=JSON_HEADERS,
                ) as resp,
            ):
                events = _parse_sse(await resp.text())

        assert [name for name, _ in events] == [
            "message_start",
            "content_block_start",
            "content_block_delta",
            "content_block_stop",
            "message_delta",
            "message_stop",
        ]


class TestInputTokenCounts:
    """Tests that both endpoints agree on input tokens."""

    async def test_message_start_matches_count_tokens(self, running_proxy):
        """System blocks are counted the same way by both endpoints."""
        _, base_url = running_proxy
        body = {
            "model": "claude-sonnet-4",
            "system": [{"type": "text", "text": "You are terse."}, {"type": "text", "text": "Answer in French."}],
            "messages": [{"role": "user", "content": "Hello"}],
            "tools": [{"name": "search", "description": "Search", "input_schema": {"type": "object"}}],
            "max_tokens": 10,
        }
        sse = b'data: {"choices":[{"delta":{},"finish_reason":"stop"}]}\n\ndata: [DONE]\n\n'

        with aioresponses(passthrough=[base_url]) as m:
            m.post(UPSTREAM_URL, body=sse, headers={"Content-Type": "text/event-stream"})

            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{base_url}/v1/messages", json={**body, "stream": True}, headers=JSON_HEADERS
                ) as resp:
                    events = _parse_sse(await resp.text())
                async with session.post(
                    f"{base_url}/v1/messages/count_tokens", json=body, headers=JSON_HEADERS
                ) as resp:
                    counted = await resp.json()

        assert events[0][1]["message"]["usage"]["input_tokens"] == counted["input_tokens"]
        assert counted["input_tokens"] == count_request_tokens(body["messages"], system=body["system"], tools=body["tools"])
