"""Anthropic-to-OpenAI proxy server.

Exposes the Anthropic Messages API and forwards requests to an
OpenAI-compatible Chat Completions upstream:

1. Accepts Anthropic format requests
2. Translates them to OpenAI format
3. Forwards to the upstream LLM API
4. Translates responses (complete or streamed) back to Anthropic format

Routes:
    POST /v1/messages               - main proxy endpoint
    POST /v1/messages/count_tokens  - local input token count
    GET  /health                    - liveness and circuit state
"""

import asyncio
import contextlib
import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any

from aiohttp import web

from switchback.gateway.clients.llm_client import CircuitState, LLMClient, LLMClientConfig
from switchback.gateway.errors import GatewayError
from switchback.gateway.tracing import (
    CLIENT_REQUEST_FILE,
    CLIENT_RESPONSE_FILE,
    UPSTREAM_REQUEST_FILE,
    RequestTracer,
)
from switchback.gateway.transforms.anthropic import AnthropicTransformer, error_body
from switchback.gateway.transforms.openai import OpenAITransformer
from switchback.gateway.transforms.streaming import StreamConverter, decode_sse_stream
from switchback.gateway.transforms.tokens import count_request_tokens
from switchback.gateway.transforms.tool_id_mapper import ToolIDMapper
from switchback.gateway.transforms.translator import translate_response
from switchback.gateway.transforms.types import ChatResponse, StreamError, TokenUsage
from switchback.gateway.transforms.validation import (
    validate_count_tokens_request,
    validate_request,
)

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


@dataclass
class ProxyConfig:
    """Configuration for the proxy server."""

    host: str = "127.0.0.1"
    port: int = 3456

    # Upstream configuration
    upstream_base_url: str = ""
    upstream_api_key: str = ""
    upstream_model: str = ""  # Empty: forward the client's model name

    # Client configuration
    connect_timeout: float = 10.0
    read_timeout: float = 300.0
    max_retries: int = 3
    supports_stream_usage: bool = True

    # Translation
    native_tools: bool = True
    sanitize_tool_results: bool = False

    # Request limits
    max_body_size: int = 500 * 1024 * 1024  # 500MB

    # Debug: save raw requests/responses to files
    debug_dir: str | None = None  # e.g., "/tmp/switchback-debug"

    def client_config(self) -> LLMClientConfig:
        return LLMClientConfig(
            base_url=self.upstream_base_url,
            api_key=self.upstream_api_key,
            connect_timeout=self.connect_timeout,
            read_timeout=self.read_timeout,
            max_retries=self.max_retries,
            supports_stream_usage=self.supports_stream_usage,
        )


def error_response(error_type: str, message: str, status: int) -> web.Response:
    """Return an Anthropic-format error response."""
    return web.json_response(error_body(error_type, message), status=status)


@dataclass
class ProxyServer:
    """Accepts Anthropic Messages API requests and proxies them to an
    OpenAI-compatible upstream.

    Example:
        >>> config = ProxyConfig(
        ...     upstream_base_url="https://api.openai.com/v1",
        ...     upstream_api_key="sk-...",
        ...     upstream_model="gpt-4o",
        ... )
        >>> server = ProxyServer(config=config)
        >>> await server.serve()
    """

    config: ProxyConfig
    _app: web.Application | None = None
    _runner: web.AppRunner | None = None
    _client: LLMClient | None = None
    _shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    _tracer: RequestTracer = field(init=False)

    def __post_init__(self) -> None:
        self._tracer = RequestTracer(debug_dir=self.config.debug_dir)

    def build_app(self) -> web.Application:
        """Create the aiohttp application with all routes registered."""
        app = web.Application(client_max_size=self.config.max_body_size)
        app.router.add_post("/v1/messages", self._handle_messages)
        app.router.add_post("/v1/messages/count_tokens", self._handle_count_tokens)
        app.router.add_get("/health", self._handle_health)
        return app

    async def start(self) -> int:
        """Connect the upstream client and start listening.

        Returns:
            The bound port (useful when configured with port 0)
        """
        self._client = LLMClient(config=self.config.client_config())
        await self._client.connect()

        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()

        port = self.config.port
        server = site._server
        if server is not None and getattr(server, "sockets", None):
            port = server.sockets[0].getsockname()[1]

        logger.info(
            "Proxy listening on %s:%s -> %s",
            self.config.host,
            port,
            self.config.upstream_base_url,
        )
        return port

    async def serve(self) -> None:
        """Start the proxy server and block until shutdown is requested."""
        await self.start()
        try:
            await self._shutdown_event.wait()
            logger.info("Proxy shutdown requested")
        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def stop(self) -> None:
        """Stop the proxy server."""
        if self._client:
            await self._client.close()
            self._client = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _read_json(self, request: web.Request) -> dict[str, Any] | web.Response:
        content_type = request.headers.get("Content-Type", "")
        if "application/json" not in content_type:
            return error_response(
                "invalid_request_error",
                f"Content-Type must be application/json, got: {content_type}",
                400,
            )

        try:
            body = await request.json()
        except web.HTTPRequestEntityTooLarge:
            return error_response(
                "request_too_large",
                f"Request body exceeds {self.config.max_body_size} bytes",
                413,
            )
        except json.JSONDecodeError as e:
            return error_response("invalid_request_error", f"Invalid JSON: {e}", 400)

        if not isinstance(body, dict):
            return error_response("invalid_request_error", "Request body must be a JSON object", 400)
        return body

    async def _handle_messages(self, request: web.Request) -> web.StreamResponse:
        """Handle POST /v1/messages - main proxy endpoint."""
        body = await self._read_json(request)
        if isinstance(body, web.Response):
            return body

        trace_id = self._tracer.generate_trace_id(body)
        start_time = time.monotonic()
        self._tracer.log_request(
            trace_id,
            request.method,
            request.path,
            request.content_length or 0,
            len(body.get("messages") or []),
        )
        logger.debug(
            "[%s] anthropic-version: %s",
            trace_id,
            request.headers.get("anthropic-version", "unknown"),
        )

        validation_errors = validate_request(body)
        if validation_errors:
            message = "; ".join(validation_errors)
            self._tracer.log_response(trace_id, 400, time.monotonic() - start_time, error=message)
            return error_response("invalid_request_error", message, 400)

        self._tracer.save_debug(trace_id, CLIENT_REQUEST_FILE, body)

        if not self._client:
            return error_response("api_error", "Upstream client not initialized", 503)

        tool_id_mapper = ToolIDMapper()
        chat_request = AnthropicTransformer().to_internal(body)
        requested_model = chat_request.model or self.config.upstream_model
        upstream_model = self.config.upstream_model or chat_request.model
        chat_request = replace(chat_request, model=upstream_model)

        openai_request = OpenAITransformer(
            sanitize_tool_results=self.config.sanitize_tool_results,
            native_tools=self.config.native_tools,
        ).to_upstream(chat_request, tool_id_mapper)

        is_streaming = chat_request.stream is True
        logger.info(
            "[%s] Request: model=%s, messages=%d, stream=%s -> %s (%s)",
            trace_id,
            requested_model,
            len(chat_request.messages),
            is_streaming,
            self.config.upstream_base_url,
            upstream_model,
        )
        self._tracer.save_debug(trace_id, UPSTREAM_REQUEST_FILE, openai_request)

        if is_streaming:
            input_tokens = count_request_tokens(
                body["messages"],
                system=body.get("system"),
                tools=body.get("tools"),
            )
            return await self._handle_streaming(
                request,
                openai_request,
                tool_id_mapper,
                trace_id,
                requested_model,
                input_tokens,
                start_time,
            )
        return await self._handle_non_streaming(
            openai_request,
            tool_id_mapper,
            trace_id,
            requested_model,
            start_time,
        )

    async def _handle_streaming(
        self,
        request: web.Request,
        openai_request: dict[str, Any],
        tool_id_mapper: ToolIDMapper,
        trace_id: str,
        model: str,
        input_tokens: int,
        start_time: float,
    ) -> web.StreamResponse:
        """Handle streaming response."""
        assert self._client is not None

        response = web.StreamResponse(status=200, headers={**SSE_HEADERS, "X-Trace-Id": trace_id})
        await response.prepare(request)

        converter = StreamConverter(model, input_tokens, tool_id_mapper)
        upstream = decode_sse_stream(self._client.stream(openai_request, trace_id))

        try:
            async with contextlib.aclosing(converter.frames(upstream)) as frames:
                async for frame in frames:
                    await response.write(frame.encode("utf-8"))
        except ConnectionResetError:
            logger.info("[%s] Client disconnected during streaming", trace_id)
            return response
        except Exception as e:
            logger.exception("[%s] Stream conversion failed", trace_id)
            converter.error = StreamError(
                message=f"Stream conversion failed: {type(e).__name__}: {e}",
                error_type="api_error",
            )
            await response.write(AnthropicTransformer().event_to_sse(converter.error).encode("utf-8"))

        duration = time.monotonic() - start_time
        if converter.error is not None:
            self._tracer.log_response(trace_id, 200, duration, error=converter.error.message)
        else:
            self._tracer.log_response(
                trace_id, 200, duration, tokens_in=input_tokens, tokens_out=converter.output_tokens
            )

        self._tracer.save_debug(
            trace_id,
            CLIENT_RESPONSE_FILE,
            AnthropicTransformer().from_internal(
                ChatResponse(
                    id=converter.message_id,
                    model=model,
                    content=converter.content,
                    stop_reason=converter.stop_reason,
                    usage=TokenUsage(input_tokens=input_tokens, output_tokens=converter.output_tokens),
                )
            ),
        )

        await response.write_eof()
        return response

    async def _handle_non_streaming(
        self,
        openai_request: dict[str, Any],
        tool_id_mapper: ToolIDMapper,
        trace_id: str,
        model: str,
        start_time: float,
    ) -> web.Response:
        """Handle non-streaming response."""
        assert self._client is not None

        try:
            upstream_response = await self._client.send(openai_request, trace_id)
        except GatewayError as e:
            logger.error("[%s] Upstream request failed: %s", trace_id, e)
            self._tracer.log_response(trace_id, e.status_code, time.monotonic() - start_time, error=str(e))
            return error_response(e.error_type, str(e), e.status_code)

        anthropic_response = translate_response(upstream_response, model, tool_id_mapper)
        self._tracer.save_debug(trace_id, CLIENT_RESPONSE_FILE, anthropic_response)

        usage = anthropic_response["usage"]
        self._tracer.log_response(
            trace_id,
            200,
            time.monotonic() - start_time,
            tokens_in=usage["input_tokens"],
            tokens_out=usage["output_tokens"],
        )
        return web.json_response(anthropic_response)

    async def _handle_count_tokens(self, request: web.Request) -> web.Response:
        """Handle POST /v1/messages/count_tokens."""
        body = await self._read_json(request)
        if isinstance(body, web.Response):
            return body

        validation_errors = validate_count_tokens_request(body)
        if validation_errors:
            return error_response("invalid_request_error", "; ".join(validation_errors), 400)

        input_tokens = count_request_tokens(
            body["messages"],
            system=body.get("system"),
            tools=body.get("tools"),
        )
        return web.json_response({"input_tokens": input_tokens})

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /health."""
        health: dict[str, Any] = {"status": "ok"}

        if self._client:
            circuit_state = self._client.circuit.state
            if circuit_state == CircuitState.OPEN:
                health["status"] = "degraded"
                health["upstream"] = "circuit_open"
                return web.json_response(health, status=503)
            elif circuit_state == CircuitState.HALF_OPEN:
                health["upstream"] = "recovering"

        return web.json_response(health)
