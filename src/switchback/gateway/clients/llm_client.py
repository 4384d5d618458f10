"""LLM client for upstream OpenAI-compatible Chat Completions APIs.

Features:
- Circuit breaker for fault tolerance
- Retry with exponential backoff (before any byte is streamed)
- Complete JSON responses and raw SSE byte streams
- Timeout handling
"""

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

import aiohttp

from switchback.gateway.errors import CircuitOpenError, UpstreamError, UpstreamUnreachable

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = auto()  # Normal operation
    OPEN = auto()  # Failing, reject requests
    HALF_OPEN = auto()  # Testing recovery


@dataclass
class LLMClientConfig:
    """Configuration for LLM client."""

    base_url: str
    api_key: str = ""

    # Timeouts (seconds)
    connect_timeout: float = 10.0
    read_timeout: float = 300.0

    # Retry configuration
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retryable_status_codes: frozenset[int] = frozenset({429, 500, 502, 503, 504})

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_recovery_timeout: float = 30.0

    # Feature flags (provider-specific)
    supports_stream_usage: bool = True  # False for DeepSeek, Ollama

    @property
    def completions_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/chat/completions"


@dataclass
class CircuitBreaker:
    """Simple circuit breaker for upstream resilience.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests are rejected immediately
    - HALF_OPEN: Testing if service recovered, one request allowed
    """

    failure_threshold: int
    recovery_timeout: float
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: float = 0.0

    def record_success(self) -> None:
        self.failure_count = 0
        self.state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.warning("Circuit breaker opened after %d failures", self.failure_count)
            self.state = CircuitState.OPEN

    def can_execute(self) -> bool:
        """Check if a request can be executed."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if time.time() - self.last_failure_time > self.recovery_timeout:
                logger.info("Circuit breaker entering half-open state")
                self.state = CircuitState.HALF_OPEN
                return True
            return False

        # HALF_OPEN - allow one request
        return True


@dataclass
class LLMClient:
    """HTTP client for upstream Chat Completions APIs.

    send() returns the decoded JSON body; stream() yields raw SSE bytes
    as they arrive, leaving frame decoding to the caller.
    """

    config: LLMClientConfig
    _session: aiohttp.ClientSession | None = None
    _circuit: CircuitBreaker = field(default_factory=lambda: CircuitBreaker(5, 30.0))

    @property
    def circuit(self) -> CircuitBreaker:
        return self._circuit

    async def connect(self) -> None:
        """Initialize HTTP client and circuit breaker."""
        timeout = aiohttp.ClientTimeout(
            connect=self.config.connect_timeout,
            total=self.config.read_timeout,
        )
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        self._session = aiohttp.ClientSession(headers=headers, timeout=timeout)
        self._circuit = CircuitBreaker(
            failure_threshold=self.config.circuit_failure_threshold,
            recovery_timeout=self.config.circuit_recovery_timeout,
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._session:
            await self._session.close()
            self._session = None

    async def send(
        self,
        request_body: dict[str, Any],
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """Non-streaming request.

        Args:
            request_body: OpenAI-format request body
            trace_id: Optional trace ID for correlation

        Returns:
            Decoded upstream response body

        Raises:
            CircuitOpenError: If circuit breaker is open
            UpstreamError: If upstream returns a non-success status
            UpstreamUnreachable: If upstream cannot be reached
        """
        trace_id = trace_id or f"req_{int(time.time() * 1000)}"

        if not self._circuit.can_execute():
            raise CircuitOpenError("Circuit breaker is open")

        request_body = {**request_body, "stream": False}

        try:
            response_data = await self._execute_with_retry(request_body, trace_id)
        except Exception:
            self._circuit.record_failure()
            raise

        self._circuit.record_success()
        return response_data

    async def stream(
        self,
        request_body: dict[str, Any],
        trace_id: str | None = None,
    ) -> AsyncIterator[bytes]:
        """Streaming request.

        Args:
            request_body: OpenAI-format request body
            trace_id: Optional trace ID for correlation

        Yields:
            Raw SSE byte chunks, split at arbitrary boundaries

        Raises:
            CircuitOpenError: If circuit breaker is open
            UpstreamError: If upstream returns a non-success status
            UpstreamUnreachable: If upstream cannot be reached
            aiohttp.ClientError: If the connection fails mid-stream
        """
        trace_id = trace_id or f"req_{int(time.time() * 1000)}"

        if not self._circuit.can_execute():
            raise CircuitOpenError("Circuit breaker is open")

        request_body = {**request_body, "stream": True}
        if self.config.supports_stream_usage:
            request_body["stream_options"] = {"include_usage": True}

        try:
            response = await self._open_stream_with_retry(request_body, trace_id)
            async with response:
                logger.debug("[%s] Starting to receive SSE stream", trace_id)
                byte_count = 0
                async for chunk in response.content.iter_any():
                    byte_count += len(chunk)
                    yield chunk
                logger.debug("[%s] Stream complete, received %d bytes", trace_id, byte_count)
        except Exception:
            self._circuit.record_failure()
            raise

        self._circuit.record_success()

    def _backoff_delay(self, attempt: int) -> float:
        return min(
            self.config.retry_base_delay * (2**attempt),
            self.config.retry_max_delay,
        )

    async def _read_json_body(self, response: aiohttp.ClientResponse) -> dict[str, Any]:
        text = await response.text()
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise UpstreamError(f"Upstream returned invalid JSON: {e}", 502, text) from e
        if not isinstance(data, dict):
            raise UpstreamError("Upstream returned a non-object JSON body", 502, text)
        return data

    def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("Client not connected. Call connect() first.")
        return self._session

    async def _execute_with_retry(
        self,
        request_body: dict[str, Any],
        trace_id: str,
    ) -> dict[str, Any]:
        """Execute request with retry logic."""
        session = self._require_session()
        url = self.config.completions_url

        for attempt in range(self.config.max_retries + 1):
            can_retry = attempt < self.config.max_retries
            try:
                async with session.post(url, json=request_body) as response:
                    if response.status == 200:
                        return await self._read_json_body(response)

                    error_body = await response.text()
                    if response.status in self.config.retryable_status_codes and can_retry:
                        delay = self._backoff_delay(attempt)
                        logger.warning(
                            "[%s] Request failed with %d, retrying in %.1fs (attempt %d/%d)",
                            trace_id,
                            response.status,
                            delay,
                            attempt + 1,
                            self.config.max_retries,
                        )
                        await asyncio.sleep(delay)
                        continue

                    raise UpstreamError(
                        f"Upstream returned {response.status}: {error_body}",
                        response.status,
                        error_body,
                    )

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if not can_retry:
                    raise UpstreamUnreachable(f"Upstream unreachable: {str(e) or type(e).__name__}") from e
                delay = self._backoff_delay(attempt)
                logger.warning(
                    "[%s] Request failed with %s, retrying in %.1fs (attempt %d/%d)",
                    trace_id,
                    type(e).__name__,
                    delay,
                    attempt + 1,
                    self.config.max_retries,
                )
                await asyncio.sleep(delay)

        raise RuntimeError("Retry loop exited without result or error")

    async def _open_stream_with_retry(
        self,
        request_body: dict[str, Any],
        trace_id: str,
    ) -> aiohttp.ClientResponse:
        """Open a streaming response, retrying until the status line is good.

        Retries only cover connection failures and retryable statuses.
        Once the body starts streaming nothing is retried.
        """
        session = self._require_session()
        url = self.config.completions_url

        for attempt in range(self.config.max_retries + 1):
            can_retry = attempt < self.config.max_retries
            try:
                response = await session.post(url, json=request_body)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if not can_retry:
                    raise UpstreamUnreachable(f"Upstream unreachable: {str(e) or type(e).__name__}") from e
                delay = self._backoff_delay(attempt)
                logger.warning(
                    "[%s] Stream failed with %s, retrying in %.1fs",
                    trace_id,
                    type(e).__name__,
                    delay,
                )
                await asyncio.sleep(delay)
                continue

            if response.status == 200:
                return response

            error_body = await response.text()
            response.release()
            logger.error(
                "[%s] Upstream error %d: %s",
                trace_id,
                response.status,
                error_body[:500],
            )
            if response.status in self.config.retryable_status_codes and can_retry:
                delay = self._backoff_delay(attempt)
                logger.warning(
                    "[%s] Stream failed with %d, retrying in %.1fs",
                    trace_id,
                    response.status,
                    delay,
                )
                await asyncio.sleep(delay)
                continue
            raise UpstreamError(
                f"Upstream returned {response.status}: {error_body}",
                response.status,
                error_body,
            )

        raise RuntimeError("Retry loop exited without result or error")
