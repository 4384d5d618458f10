"""Stream conversion from OpenAI Chat Completions deltas to Anthropic Messages SSE.

OpenAI Chat Completion chunks:
    data: {"choices":[{"delta":{"role":"assistant"},"index":0}]}
    data: {"choices":[{"delta":{"content":"Hello"},"index":0}]}
    data: {"choices":[{"delta":{"tool_calls":[...]},"index":0}]}
    data: {"choices":[{"delta":{},"finish_reason":"stop","index":0}]}
    data: {"choices":[],"usage":{"prompt_tokens":9,"completion_tokens":12}}
    data: [DONE]

Anthropic Messages events:
    event: message_start
    data: {"type":"message_start","message":{...}}

    event: content_block_start
    data: {"type":"content_block_start","index":0,"content_block":{"type":"text","text":""}}

    event: content_block_delta
    data: {"type":"content_block_delta","index":0,"delta":{"type":"text_delta","text":"Hello"}}

    event: content_block_stop
    data: {"type":"content_block_stop","index":0}

    event: message_delta
    data: {"type":"message_delta","delta":{"stop_reason":"end_turn"},"usage":{"output_tokens":10}}

    event: message_stop
    data: {"type":"message_stop"}

A StreamConverter walks IDLE -> OPEN -> CLOSING -> CLOSED. It is a pull-based
async generator: it suspends on every upstream read and never reorders
events. One converter serves exactly one stream.
"""

import asyncio
import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

import aiohttp

from ..errors import GatewayError
from .anthropic import AnthropicTransformer, generate_message_id
from .openai import DONE_MARKER, OpenAITransformer, generate_tool_id, map_finish_reason
from .tokens import count_tokens
from .tool_id_mapper import ToolIDMapper
from .types import (
    ContentBlock,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    MessageDelta,
    MessageStart,
    MessageStop,
    StopReason,
    StreamError,
    StreamEvent,
    TextBlock,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

# Failures of the upstream transport that end a stream with an error event
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    GatewayError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ConnectionError,
)


class StreamState(Enum):
    """Converter lifecycle."""

    IDLE = auto()  # Nothing received yet
    OPEN = auto()  # message_start sent, blocks streaming
    CLOSING = auto()  # Finish reason received, waiting for upstream end
    CLOSED = auto()  # message_stop (or error) sent


@dataclass
class ToolCallAccumulator:
    """A tool call assembled from streamed argument fragments.

    The buffer is append-only while the block is open and parsed as JSON
    exactly once, when the block closes.
    """

    id: str
    name: str
    block_index: int
    _fragments: list[str] = field(default_factory=list)
    closed: bool = False
    arguments: dict[str, Any] | None = None

    @property
    def argument_buffer(self) -> str:
        return "".join(self._fragments)

    def append(self, fragment: str) -> None:
        if self.closed:
            raise RuntimeError(f"Tool call {self.id} is already closed")
        self._fragments.append(fragment)

    def close(self) -> dict[str, Any]:
        """Finalize the tool call and parse its arguments."""
        self.closed = True
        buffer = self.argument_buffer
        if not buffer.strip():
            self.arguments = {}
            return self.arguments
        try:
            parsed = json.loads(buffer)
        except json.JSONDecodeError:
            logger.warning("Tool call %s closed with invalid JSON arguments", self.id)
            parsed = {}
        self.arguments = parsed if isinstance(parsed, dict) else {}
        return self.arguments


@dataclass
class _TextBuffer:
    block_index: int
    fragments: list[str] = field(default_factory=list)


class StreamConverter:
    """Converts one upstream delta stream into Anthropic stream events.

    Example:
        converter = StreamConverter(model="claude-sonnet-4", input_tokens=42)
        async for frame in converter.frames(decode_sse_stream(chunks)):
            await response.write(frame.encode())
    """

    def __init__(
        self,
        model: str,
        input_tokens: int,
        tool_id_mapper: ToolIDMapper | None = None,
        message_id: str | None = None,
    ):
        self.model = model
        self.input_tokens = input_tokens
        self.tool_id_mapper = tool_id_mapper
        self.message_id = message_id or generate_message_id()
        self.state = StreamState.IDLE

        self._used = False
        self._next_index = 0
        self._open: _TextBuffer | ToolCallAccumulator | None = None
        self._blocks: dict[int, _TextBuffer | ToolCallAccumulator] = {}
        # Keyed by the upstream tool_calls[].index
        self._tool_calls: dict[int, ToolCallAccumulator] = {}

        self.stop_reason: StopReason | None = None
        self.error: StreamError | None = None
        self._estimated_output_tokens = 0
        self._reported_output_tokens: int | None = None
        self._reported_input_tokens: int | None = None

    @property
    def output_tokens(self) -> int:
        """Backend-reported completion tokens, else the local estimate."""
        if self._reported_output_tokens is not None:
            return self._reported_output_tokens
        return self._estimated_output_tokens

    @property
    def content(self) -> tuple[ContentBlock, ...]:
        """Content blocks assembled so far, in client block order."""
        blocks: list[ContentBlock] = []
        for index in sorted(self._blocks):
            block = self._blocks[index]
            if isinstance(block, _TextBuffer):
                blocks.append(TextBlock(text="".join(block.fragments)))
            else:
                arguments = block.arguments if block.closed else None
                blocks.append(
                    ToolUseBlock(id=block.id, name=block.name, input=arguments or {})
                )
        return tuple(blocks)

    async def events(self, upstream: AsyncIterable[dict[str, Any]]) -> AsyncIterator[StreamEvent]:
        """Convert the upstream delta sequence into stream events.

        Args:
            upstream: Parsed OpenAI chat completion chunks

        Yields:
            StreamEvent objects, starting with MessageStart and ending with
            MessageStop, or with a single StreamError on transport failure
        """
        if self._used:
            raise RuntimeError("StreamConverter cannot be reused across streams")
        self._used = True

        try:
            async for chunk in upstream:
                for event in self.process_chunk(chunk):
                    yield event
        except TRANSPORT_ERRORS as e:
            logger.error("Upstream stream failed after %s: %s", self.state.name, e)
            self.state = StreamState.CLOSED
            self.error = StreamError(
                message=str(e) or type(e).__name__,
                error_type=getattr(e, "error_type", "api_error"),
            )
            yield self.error
            return
        finally:
            aclose = getattr(upstream, "aclose", None)
            if aclose is not None:
                await aclose()

        for event in self.finish():
            yield event

    async def frames(self, upstream: AsyncIterable[dict[str, Any]]) -> AsyncIterator[str]:
        """Like events(), rendered as wire-ready SSE frames."""
        transformer = AnthropicTransformer()
        async for event in self.events(upstream):
            yield transformer.event_to_sse(event)

    def process_chunk(self, chunk: dict[str, Any]) -> list[StreamEvent]:
        """Convert one upstream chunk into zero or more events."""
        if self.state is StreamState.CLOSED:
            logger.debug("Ignoring chunk after stream closed")
            return []

        events: list[StreamEvent] = []
        if self.state is StreamState.IDLE:
            events.append(
                MessageStart(id=self.message_id, model=self.model, input_tokens=self.input_tokens)
            )
            self.state = StreamState.OPEN

        self._absorb_usage(chunk.get("usage"))

        choices = chunk.get("choices") or []
        if not isinstance(choices, list):
            logger.warning("Skipping chunk with malformed choices: %r", choices)
            return events
        if not choices:
            return events
        if self.state is StreamState.CLOSING:
            logger.debug("Ignoring content after finish reason")
            return events

        choice = choices[0]
        if not isinstance(choice, dict):
            logger.warning("Skipping chunk with malformed choice: %r", choice)
            return events

        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            logger.warning("Skipping malformed delta: %r", delta)
            delta = {}

        text = delta.get("content")
        if isinstance(text, str) and text:
            events.extend(self._on_text(text))

        tool_calls = delta.get("tool_calls") or []
        if not isinstance(tool_calls, list):
            logger.warning("Skipping malformed tool_calls: %r", tool_calls)
            tool_calls = []
        for tool_call in tool_calls:
            if not isinstance(tool_call, dict):
                logger.warning("Skipping malformed tool call: %r", tool_call)
                continue
            events.extend(self._on_tool_call(tool_call))

        finish_reason = choice.get("finish_reason")
        if finish_reason:
            events.extend(self._close_open_block())
            self.stop_reason = map_finish_reason(finish_reason)
            self.state = StreamState.CLOSING

        return events

    def finish(self) -> list[StreamEvent]:
        """Close out the message once the upstream has ended cleanly.

        An upstream that ended without a finish reason is closed out the
        same way, with whatever was accumulated and a null stop reason.
        """
        if self.state is StreamState.CLOSED:
            return []

        events: list[StreamEvent] = []
        if self.state is StreamState.IDLE:
            events.append(
                MessageStart(id=self.message_id, model=self.model, input_tokens=self.input_tokens)
            )
        elif self.state is StreamState.OPEN:
            logger.info("Upstream ended without a finish reason, closing stream")

        events.extend(self._close_open_block())
        events.append(
            MessageDelta(
                stop_reason=self.stop_reason,
                output_tokens=self.output_tokens,
                input_tokens=self._reported_input_tokens,
            )
        )
        events.append(MessageStop())
        self.state = StreamState.CLOSED
        return events

    def _allocate_index(self) -> int:
        index = self._next_index
        self._next_index += 1
        return index

    def _absorb_usage(self, usage: Any) -> None:
        if not isinstance(usage, dict):
            return
        if isinstance(usage.get("completion_tokens"), int):
            self._reported_output_tokens = usage["completion_tokens"]
        if isinstance(usage.get("prompt_tokens"), int):
            self._reported_input_tokens = usage["prompt_tokens"]

    def _on_text(self, text: str) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        block = self._open
        if not isinstance(block, _TextBuffer):
            events.extend(self._close_open_block())
            block = _TextBuffer(block_index=self._allocate_index())
            self._blocks[block.block_index] = block
            self._open = block
            events.append(ContentBlockStart(index=block.block_index, block_type="text"))

        block.fragments.append(text)
        self._estimated_output_tokens += count_tokens(text)
        events.append(ContentBlockDelta(index=block.block_index, text=text))
        return events

    def _on_tool_call(self, tool_call: dict[str, Any]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        upstream_index = tool_call.get("index", 0)
        if not isinstance(upstream_index, int):
            upstream_index = 0
        function = tool_call.get("function") or {}
        if not isinstance(function, dict):
            logger.warning("Skipping tool call with malformed function payload: %r", function)
            return events
        fragment = function.get("arguments") or ""
        if not isinstance(fragment, str):
            # Some servers send the arguments as an already-parsed object
            fragment = json.dumps(fragment, separators=(",", ":"), ensure_ascii=False)
        name = function.get("name")
        if not isinstance(name, str):
            name = ""
        elif name and self.tool_id_mapper is not None:
            name = self.tool_id_mapper.to_original_name(name)

        accumulator = self._tool_calls.get(upstream_index)
        if accumulator is None:
            events.extend(self._close_open_block())
            tool_id = tool_call.get("id")
            if not isinstance(tool_id, str) or not tool_id:
                tool_id = generate_tool_id()
            if self.tool_id_mapper is not None:
                tool_id = self.tool_id_mapper.to_original_id(tool_id)
            accumulator = ToolCallAccumulator(
                id=tool_id,
                name=name,
                block_index=self._allocate_index(),
            )
            self._tool_calls[upstream_index] = accumulator
            self._blocks[accumulator.block_index] = accumulator
            self._open = accumulator
            events.append(
                ContentBlockStart(
                    index=accumulator.block_index,
                    block_type="tool_use",
                    tool_id=accumulator.id,
                    tool_name=accumulator.name,
                )
            )
        elif accumulator.closed:
            if fragment:
                logger.warning(
                    "Dropping argument fragment for already closed tool call %s",
                    accumulator.id,
                )
            return events
        elif not accumulator.name and name:
            accumulator.name = name

        if fragment:
            accumulator.append(fragment)
            events.append(ContentBlockDelta(index=accumulator.block_index, partial_json=fragment))
        return events

    def _close_open_block(self) -> list[StreamEvent]:
        block = self._open
        if block is None:
            return []
        self._open = None
        if isinstance(block, ToolCallAccumulator):
            block.close()
            self._estimated_output_tokens += count_tokens(block.argument_buffer)
        return [ContentBlockStop(index=block.block_index)]


async def convert_stream(
    upstream: AsyncIterable[dict[str, Any]],
    model: str,
    input_tokens: int,
    tool_id_mapper: ToolIDMapper | None = None,
) -> AsyncIterator[str]:
    """Convert upstream deltas into wire-ready Anthropic SSE frames.

    Args:
        upstream: Parsed OpenAI chat completion chunks
        model: Model name reported to the client
        input_tokens: Input token count computed before the backend call
        tool_id_mapper: Request-scoped mapper used to restore client tool IDs

    Yields:
        Frames of the form "event: <name>\\ndata: <json>\\n\\n"
    """
    converter = StreamConverter(model, input_tokens, tool_id_mapper)
    async for frame in converter.frames(upstream):
        yield frame


async def decode_sse_stream(chunks: AsyncIterable[bytes | str]) -> AsyncIterator[dict[str, Any]]:
    """Decode raw OpenAI SSE bytes into parsed chunks.

    Chunks may split lines (and UTF-8 sequences) at any boundary. The
    sequence ends at "data: [DONE]" or when the upstream ends. Malformed
    frames are logged and skipped.
    """
    transformer = OpenAITransformer()
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    try:
        async for chunk in chunks:
            buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
            *lines, buffer = buffer.split("\n")
            for line in lines:
                parsed = transformer.parse_sse_line(line.rstrip("\r"))
                if parsed == DONE_MARKER:
                    return
                if isinstance(parsed, dict):
                    yield parsed

        buffer += decoder.decode(b"", final=True)
        parsed = transformer.parse_sse_line(buffer.strip())
        if isinstance(parsed, dict):
            yield parsed
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()
