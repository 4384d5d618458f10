"""Types for the protocol translators.

These types are the typed view of a client (Anthropic Messages) request
and of the responses and stream events sent back to the client. Content
blocks form a closed set; every consumer matches all four variants.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["user", "assistant", "system"]
StopReason = Literal["end_turn", "max_tokens", "tool_use"]


@dataclass(frozen=True)
class TextBlock:
    """Plain text content."""

    text: str
    type: Literal["text"] = field(default="text", init=False)


@dataclass(frozen=True)
class ImageBlock:
    """Inline image, either base64 data or a remote URL."""

    media_type: str
    data: str
    url: str | None = None
    type: Literal["image"] = field(default="image", init=False)

    @property
    def data_uri(self) -> str:
        """URL the target protocol accepts for this image."""
        if self.url and not self.data:
            return self.url
        return f"data:{self.media_type};base64,{self.data}"


@dataclass(frozen=True)
class ToolUseBlock:
    """A tool invocation issued by the assistant."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_use"] = field(default="tool_use", init=False)

    @property
    def arguments_json(self) -> str:
        return json.dumps(self.input, ensure_ascii=False)


@dataclass(frozen=True)
class ToolResultBlock:
    """Result of a tool invocation, sent back by the client.

    ``content`` is either a plain string or a structured value
    (an object or a list of blocks) as the client sent it.
    """

    tool_use_id: str
    content: Any = ""
    is_error: bool | None = None
    type: Literal["tool_result"] = field(default="tool_result", init=False)


ContentBlock = TextBlock | ImageBlock | ToolUseBlock | ToolResultBlock


@dataclass(frozen=True)
class ChatMessage:
    """One message of the conversation history."""

    role: Role
    content: str | tuple[ContentBlock, ...]


@dataclass(frozen=True)
class ToolSpec:
    """Definition of a tool the model may call."""

    name: str
    description: str | None = None
    input_schema: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChatRequest:
    """Client request in typed form.

    Optional fields left as None were absent from the client body and are
    omitted from the translated request.
    """

    model: str
    messages: tuple[ChatMessage, ...]
    max_tokens: int | None = None
    system: str | None = None
    tools: tuple[ToolSpec, ...] | None = None
    temperature: float | None = None
    stream: bool | None = None
    top_p: float | None = None
    stop_sequences: tuple[str, ...] | None = None
    tool_choice: dict[str, Any] | None = None


@dataclass(frozen=True)
class TokenUsage:
    """Token usage statistics."""

    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class ChatResponse:
    """Complete (non-streaming) response."""

    id: str
    model: str
    content: tuple[ContentBlock, ...] = ()
    stop_reason: StopReason | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    role: Literal["assistant"] = field(default="assistant", init=False)


# Streaming events (client protocol)


@dataclass(frozen=True)
class MessageStart:
    id: str
    model: str
    input_tokens: int
    event: Literal["message_start"] = field(default="message_start", init=False)


@dataclass(frozen=True)
class ContentBlockStart:
    index: int
    block_type: Literal["text", "tool_use"]
    tool_id: str | None = None
    tool_name: str | None = None
    event: Literal["content_block_start"] = field(default="content_block_start", init=False)


@dataclass(frozen=True)
class ContentBlockDelta:
    """Text fragment or raw tool-argument fragment for one block."""

    index: int
    text: str | None = None
    partial_json: str | None = None
    event: Literal["content_block_delta"] = field(default="content_block_delta", init=False)


@dataclass(frozen=True)
class ContentBlockStop:
    index: int
    event: Literal["content_block_stop"] = field(default="content_block_stop", init=False)


@dataclass(frozen=True)
class MessageDelta:
    stop_reason: StopReason | None
    output_tokens: int
    input_tokens: int | None = None
    event: Literal["message_delta"] = field(default="message_delta", init=False)


@dataclass(frozen=True)
class MessageStop:
    event: Literal["message_stop"] = field(default="message_stop", init=False)


@dataclass(frozen=True)
class StreamError:
    message: str
    error_type: str = "api_error"
    event: Literal["error"] = field(default="error", init=False)


StreamEvent = (
    MessageStart
    | ContentBlockStart
    | ContentBlockDelta
    | ContentBlockStop
    | MessageDelta
    | MessageStop
    | StreamError
)
