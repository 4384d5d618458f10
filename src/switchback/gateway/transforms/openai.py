"""OpenAI Chat Completions API transformer.

Converts typed requests to OpenAI API format for upstream requests,
parses OpenAI responses back into typed values, and decodes single
lines of an OpenAI SSE stream.

OpenAI API Reference:
- Request: POST /chat/completions with {model, messages, tools, stream, max_tokens, temperature}
- Messages: [{role, content, tool_calls?, tool_call_id?}]
- Streaming: SSE with data: {"choices": [{"delta": {...}}]}
"""

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any, Literal, assert_never

from .anthropic import block_to_dict, generate_message_id
from .sanitizer import sanitize
from .tool_id_mapper import ToolIDMapper, sanitize_tool_name
from .types import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ContentBlock,
    ImageBlock,
    StopReason,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"

FINISH_REASON_MAP: dict[str, StopReason] = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
}


def map_finish_reason(finish_reason: Any) -> StopReason | None:
    """Map an OpenAI finish_reason to an Anthropic stop_reason.

    Unknown or absent reasons map to None.
    """
    if not isinstance(finish_reason, str):
        return None
    return FINISH_REASON_MAP.get(finish_reason)


def generate_tool_id() -> str:
    return f"toolu_{uuid.uuid4().hex[:24]}"


def _map_tool_choice(
    tool_choice: dict[str, Any],
    map_name: Callable[[str], str],
) -> str | dict[str, Any] | None:
    choice_type = tool_choice.get("type")
    if choice_type == "auto":
        return "auto"
    elif choice_type == "any":
        return "required"
    elif choice_type == "none":
        return "none"
    elif choice_type == "tool" and tool_choice.get("name"):
        return {"type": "function", "function": {"name": map_name(tool_choice["name"])}}
    logger.debug("Dropping unsupported tool_choice: %s", tool_choice)
    return None


def _tool_to_upstream(tool: ToolSpec, name: str) -> dict[str, Any]:
    function: dict[str, Any] = {"name": name}
    if tool.description is not None:
        function["description"] = tool.description
    function["parameters"] = tool.input_schema or {"type": "object", "properties": {}}
    return {"type": "function", "function": function}


def _is_empty_content(content: Any) -> bool:
    if content is None:
        return True
    if isinstance(content, str):
        return not content.strip()
    return all(
        part.get("type") == "text" and not (part.get("text") or "").strip() for part in content
    )


def filter_empty_assistant_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Drop assistant messages that carry neither content nor tool calls.

    Strict backends reject such turns; they show up when a client replays an
    interrupted or empty assistant reply.
    """
    kept = []
    for message in messages:
        if (
            message.get("role") == "assistant"
            and not message.get("tool_calls")
            and _is_empty_content(message.get("content"))
        ):
            logger.debug("Dropping empty assistant message")
            continue
        kept.append(message)
    return kept


@dataclass
class OpenAITransformer:
    """Transforms typed values to/from OpenAI API format."""

    sanitize_tool_results: bool = False
    native_tools: bool = False

    def to_upstream(
        self,
        request: ChatRequest,
        tool_id_mapper: ToolIDMapper | None = None,
    ) -> dict[str, Any]:
        """Convert a ChatRequest to OpenAI Chat Completions format.

        Args:
            request: Parsed client request
            tool_id_mapper: Request-scoped mapper; when given, tool IDs in
                tool_use and tool_result blocks are shortened

        Returns:
            OpenAI-format request dict ready for /chat/completions
        """
        messages: list[dict[str, Any]] = []

        # Add system message if present
        if request.system is not None:
            messages.append({"role": "system", "content": request.system})

        for msg in request.messages:
            messages.extend(self._convert_message(msg, tool_id_mapper))
        messages = filter_empty_assistant_messages(messages)

        result: dict[str, Any] = {"model": request.model, "messages": messages}
        if request.max_tokens is not None:
            result["max_tokens"] = request.max_tokens
        if request.temperature is not None:
            result["temperature"] = request.temperature
        if request.top_p is not None:
            result["top_p"] = request.top_p
        if request.stop_sequences:
            result["stop"] = list(request.stop_sequences)
        if request.stream is not None:
            result["stream"] = request.stream

        if request.tools:
            result["tools"] = [
                _tool_to_upstream(tool, self._map_name(tool.name, tool_id_mapper))
                for tool in request.tools
            ]
            if request.tool_choice:
                tool_choice = _map_tool_choice(
                    request.tool_choice,
                    lambda name: self._map_name(name, tool_id_mapper),
                )
                if tool_choice is not None:
                    result["tool_choice"] = tool_choice

        return result

    def _map_id(self, tool_id: str, tool_id_mapper: ToolIDMapper | None) -> str:
        if tool_id_mapper is None or not tool_id:
            return tool_id
        return tool_id_mapper.to_short_id(tool_id)

    def _map_name(self, name: str, tool_id_mapper: ToolIDMapper | None) -> str:
        if tool_id_mapper is None:
            return sanitize_tool_name(name)
        return tool_id_mapper.to_upstream_name(name)

    def _convert_message(
        self,
        msg: ChatMessage,
        tool_id_mapper: ToolIDMapper | None,
    ) -> list[dict[str, Any]]:
        if isinstance(msg.content, str):
            return [{"role": msg.role, "content": msg.content}]
        if self.native_tools:
            return self._convert_native(msg, tool_id_mapper)
        return [
            {
                "role": msg.role,
                "content": [self._convert_block(block, tool_id_mapper) for block in msg.content],
            }
        ]

    def _convert_block(
        self,
        block: ContentBlock,
        tool_id_mapper: ToolIDMapper | None,
    ) -> dict[str, Any]:
        """Convert one block, keeping tool blocks in their client shape."""
        if isinstance(block, TextBlock):
            return {"type": "text", "text": block.text}
        elif isinstance(block, ImageBlock):
            return {"type": "image_url", "image_url": {"url": block.data_uri}}
        elif isinstance(block, ToolUseBlock):
            return block_to_dict(
                replace(
                    block,
                    id=self._map_id(block.id, tool_id_mapper),
                    name=self._map_name(block.name, tool_id_mapper),
                )
            )
        elif isinstance(block, ToolResultBlock):
            if self.sanitize_tool_results:
                block = sanitize(block)
            mapped = replace(block, tool_use_id=self._map_id(block.tool_use_id, tool_id_mapper))
            return block_to_dict(mapped)
        else:
            assert_never(block)

    def _convert_native(
        self,
        msg: ChatMessage,
        tool_id_mapper: ToolIDMapper | None,
    ) -> list[dict[str, Any]]:
        """Convert a message into OpenAI's native tool-calling shape.

        tool_use blocks become the message's tool_calls and each tool_result
        becomes a separate "tool" message. Tool messages come first since
        OpenAI requires them to directly follow the assistant tool_calls.
        """
        parts: list[dict[str, Any]] = []
        tool_calls: list[dict[str, Any]] = []
        tool_messages: list[dict[str, Any]] = []

        for block in msg.content:
            if isinstance(block, TextBlock):
                parts.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageBlock):
                parts.append({"type": "image_url", "image_url": {"url": block.data_uri}})
            elif isinstance(block, ToolUseBlock):
                tool_calls.append(
                    {
                        "id": self._map_id(block.id, tool_id_mapper),
                        "type": "function",
                        "function": {
                            "name": self._map_name(block.name, tool_id_mapper),
                            "arguments": block.arguments_json,
                        },
                    }
                )
            elif isinstance(block, ToolResultBlock):
                sanitized = sanitize(block)
                tool_messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": self._map_id(block.tool_use_id, tool_id_mapper),
                        "content": sanitized.content,
                    }
                )
            else:
                assert_never(block)

        messages = tool_messages
        if tool_calls:
            # OpenAI expects assistant text as a plain string next to tool_calls
            text = "".join(p["text"] for p in parts if p["type"] == "text")
            messages.append(
                {"role": msg.role, "content": text or None, "tool_calls": tool_calls}
            )
        elif parts or not tool_messages:
            messages.append({"role": msg.role, "content": parts})
        return messages

    def from_upstream(
        self,
        response: dict[str, Any],
        model: str,
        tool_id_mapper: ToolIDMapper | None = None,
    ) -> ChatResponse:
        """Convert OpenAI non-streaming response to a ChatResponse.

        Args:
            response: OpenAI response dict
            model: Model name reported to the client
            tool_id_mapper: Mapper used to restore client tool IDs and names

        Returns:
            ChatResponse; never raises on missing fields
        """
        choices = response.get("choices") or []
        choice = choices[0] if choices else {}
        message = choice.get("message") or {}

        content: list[ContentBlock] = []
        text = message.get("content")
        if isinstance(text, list):
            text = "".join(
                part.get("text", "") for part in text if isinstance(part, dict)
            )
        if isinstance(text, str) and text:
            content.append(TextBlock(text=text))

        for tc in message.get("tool_calls") or []:
            function = tc.get("function") or {}
            raw_arguments = function.get("arguments") or "{}"
            if isinstance(raw_arguments, str):
                try:
                    arguments = json.loads(raw_arguments)
                except json.JSONDecodeError:
                    logger.warning("Tool call %s has malformed arguments", tc.get("id"))
                    arguments = {}
            else:
                arguments = raw_arguments
            if not isinstance(arguments, dict):
                arguments = {}

            tool_id = tc.get("id") or generate_tool_id()
            name = function.get("name") or ""
            if tool_id_mapper is not None:
                tool_id = tool_id_mapper.to_original_id(tool_id)
                name = tool_id_mapper.to_original_name(name)
            content.append(ToolUseBlock(id=tool_id, name=name, input=arguments))

        usage = response.get("usage") or {}
        return ChatResponse(
            id=response.get("id") or generate_message_id(),
            model=model,
            content=tuple(content),
            stop_reason=map_finish_reason(choice.get("finish_reason")),
            usage=TokenUsage(
                input_tokens=usage.get("prompt_tokens") or 0,
                output_tokens=usage.get("completion_tokens") or 0,
            ),
        )

    def parse_sse_line(self, line: str) -> dict[str, Any] | Literal["[DONE]"] | None:
        """Parse an SSE data line from an OpenAI streaming response.

        Args:
            line: Raw SSE line (should start with "data:")

        Returns:
            The decoded chunk, DONE_MARKER for the end-of-stream marker, or
            None for lines that carry no chunk (comments, other fields,
            malformed JSON)
        """
        if not line.startswith("data:"):
            return None

        data_str = line[5:].strip()
        if not data_str:
            return None
        if data_str == DONE_MARKER:
            return DONE_MARKER

        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed stream frame: %s", data_str[:200])
            return None

        if not isinstance(data, dict):
            logger.warning("Skipping non-object stream frame: %s", data_str[:200])
            return None
        return data
