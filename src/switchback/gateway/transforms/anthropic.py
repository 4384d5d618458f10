"""Anthropic Messages API transformer.

Converts between the Anthropic Messages API wire format (spoken by clients)
and the typed values in types.py. Handles request parsing, response
rendering, and rendering of streaming SSE events.

Anthropic API Reference:
- Request: POST /v1/messages with {messages, max_tokens, model, stream, tools, system}
- Response: {id, type, role, content, model, stop_reason, usage}
- Streaming: SSE events (message_start, content_block_start/delta/stop, message_delta, message_stop)
"""

import json
import logging
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, assert_never, cast

from .types import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ContentBlock,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    ImageBlock,
    MessageDelta,
    MessageStart,
    MessageStop,
    Role,
    StreamError,
    StreamEvent,
    TextBlock,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)


def generate_message_id() -> str:
    """Generate a unique message ID in Anthropic format."""
    return f"msg_{uuid.uuid4().hex[:24]}"


def parse_content_block(block: Mapping[str, Any]) -> ContentBlock | None:
    """Parse one client content block.

    Returns None for block types outside the supported set
    (e.g. thinking, redacted_thinking, document); they are dropped.
    """
    block_type = block.get("type")

    if block_type == "text":
        return TextBlock(text=block.get("text") or "")

    elif block_type == "image":
        source = block.get("source") or {}
        if source.get("type") == "url":
            return ImageBlock(
                media_type=source.get("media_type") or "",
                data="",
                url=source.get("url", ""),
            )
        return ImageBlock(
            media_type=source.get("media_type") or "image/png",
            data=source.get("data") or "",
        )

    elif block_type == "tool_use":
        tool_input = block.get("input")
        return ToolUseBlock(
            id=block.get("id") or "",
            name=block.get("name") or "",
            input=tool_input if isinstance(tool_input, dict) else {},
        )

    elif block_type == "tool_result":
        return ToolResultBlock(
            tool_use_id=block.get("tool_use_id") or "",
            content=block.get("content", ""),
            is_error=block.get("is_error"),
        )

    logger.debug("Dropping unsupported content block type: %s", block_type)
    return None


def parse_message(msg: Mapping[str, Any]) -> ChatMessage:
    """Parse one client message."""
    role = cast(Role, msg.get("role", "user"))
    content = msg.get("content")

    if content is None or isinstance(content, str):
        return ChatMessage(role=role, content=content or "")

    blocks = []
    for raw in content:
        block = parse_content_block(raw)
        if block is not None:
            blocks.append(block)
    return ChatMessage(role=role, content=tuple(blocks))


def parse_tool(tool: Mapping[str, Any]) -> ToolSpec:
    return ToolSpec(
        name=tool.get("name", ""),
        description=tool.get("description"),
        input_schema=tool.get("input_schema") or {},
    )


def system_text(system: str | Iterable[Mapping[str, Any]] | None) -> str | None:
    """Flatten the system prompt; Anthropic allows a list of text blocks."""
    if system is None or isinstance(system, str):
        return system
    return "\n".join(
        block.get("text", "") for block in system if block.get("type") == "text"
    )


def block_to_dict(block: ContentBlock) -> dict[str, Any]:
    """Render a content block in Anthropic wire format."""
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    elif isinstance(block, ImageBlock):
        if block.url and not block.data:
            return {"type": "image", "source": {"type": "url", "url": block.url}}
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": block.media_type, "data": block.data},
        }
    elif isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    elif isinstance(block, ToolResultBlock):
        result: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
        }
        if block.is_error is not None:
            result["is_error"] = block.is_error
        return result
    else:
        assert_never(block)


def format_sse_event(event_type: str, data: dict[str, Any]) -> str:
    """Format data as an SSE event.

    Args:
        event_type: The SSE event type
        data: The event data to serialize

    Returns:
        SSE-formatted string with event and data lines
    """
    json_data = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    return f"event: {event_type}\ndata: {json_data}\n\n"


def error_body(error_type: str, message: str) -> dict[str, Any]:
    """Anthropic-format error object."""
    return {"type": "error", "error": {"type": error_type, "message": message}}


@dataclass
class AnthropicTransformer:
    """Transforms Anthropic API format to/from typed values."""

    def to_internal(self, body: Mapping[str, Any]) -> ChatRequest:
        """Convert Anthropic Messages API request to a ChatRequest.

        Args:
            body: Anthropic request body with messages, max_tokens, etc.

        Returns:
            ChatRequest; optional fields absent from the body stay None
        """
        tools = body.get("tools")
        stop_sequences = body.get("stop_sequences")
        return ChatRequest(
            model=body.get("model") or "",
            messages=tuple(parse_message(msg) for msg in body.get("messages") or ()),
            max_tokens=body.get("max_tokens"),
            system=system_text(body.get("system")),
            tools=tuple(parse_tool(tool) for tool in tools) if tools is not None else None,
            temperature=body.get("temperature"),
            stream=body.get("stream"),
            top_p=body.get("top_p"),
            stop_sequences=tuple(stop_sequences) if stop_sequences else None,
            tool_choice=body.get("tool_choice"),
        )

    def from_internal(self, response: ChatResponse) -> dict[str, Any]:
        """Convert a ChatResponse to Anthropic Messages API format."""
        return {
            "id": response.id,
            "type": "message",
            "role": response.role,
            "content": [block_to_dict(block) for block in response.content],
            "model": response.model,
            "stop_reason": response.stop_reason,
            "stop_sequence": None,
            "usage": {
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
        }

    def event_to_dict(self, event: StreamEvent) -> dict[str, Any]:
        """Render a stream event as its Anthropic SSE data payload."""
        if isinstance(event, MessageStart):
            return {
                "type": "message_start",
                "message": {
                    "id": event.id,
                    "type": "message",
                    "role": "assistant",
                    "content": [],
                    "model": event.model,
                    "stop_reason": None,
                    "stop_sequence": None,
                    "usage": {"input_tokens": event.input_tokens, "output_tokens": 0},
                },
            }

        elif isinstance(event, ContentBlockStart):
            if event.block_type == "tool_use":
                content_block: dict[str, Any] = {
                    "type": "tool_use",
                    "id": event.tool_id,
                    "name": event.tool_name,
                    "input": {},
                }
            else:
                content_block = {"type": "text", "text": ""}
            return {
                "type": "content_block_start",
                "index": event.index,
                "content_block": content_block,
            }

        elif isinstance(event, ContentBlockDelta):
            if event.partial_json is not None:
                delta = {"type": "input_json_delta", "partial_json": event.partial_json}
            else:
                delta = {"type": "text_delta", "text": event.text or ""}
            return {"type": "content_block_delta", "index": event.index, "delta": delta}

        elif isinstance(event, ContentBlockStop):
            return {"type": "content_block_stop", "index": event.index}

        elif isinstance(event, MessageDelta):
            usage: dict[str, int] = {"output_tokens": event.output_tokens}
            if event.input_tokens is not None:
                usage["input_tokens"] = event.input_tokens
            return {
                "type": "message_delta",
                "delta": {"stop_reason": event.stop_reason, "stop_sequence": None},
                "usage": usage,
            }

        elif isinstance(event, MessageStop):
            return {"type": "message_stop"}

        elif isinstance(event, StreamError):
            return error_body(event.error_type, event.message)

        else:
            assert_never(event)

    def event_to_sse(self, event: StreamEvent) -> str:
        """Convert a stream event to an Anthropic SSE frame."""
        return format_sse_event(event.event, self.event_to_dict(event))
