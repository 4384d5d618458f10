"""Pydantic models for inbound Messages API request validation.

Requests are validated before translation so that malformed bodies get an
invalid_request_error instead of a backend round trip. Unknown fields and
unknown content block types are allowed through; the translator drops
what it does not support.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator


class ImageSource(BaseModel):
    """Image source for image content blocks."""

    model_config = ConfigDict(extra="allow")

    type: Literal["base64", "url"]
    media_type: str | None = None
    data: str | None = None
    url: str | None = None


class ContentBlock(BaseModel):
    """Content block within a message.

    text, image, tool_use and tool_result are translated; other types
    (thinking, document, ...) validate but are dropped on translation.
    """

    model_config = ConfigDict(extra="allow")

    type: str

    # text
    text: str | None = None

    # tool_use
    id: str | None = None
    name: str | None = None
    input: dict[str, Any] | None = None

    # tool_result
    tool_use_id: str | None = None
    content: Any = None
    is_error: bool | None = None

    # image
    source: ImageSource | None = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if not v:
            raise ValueError("content block type cannot be empty")
        return v


class Message(BaseModel):
    """A message in the conversation."""

    model_config = ConfigDict(extra="allow")

    role: Literal["user", "assistant", "system"]
    content: str | list[ContentBlock]


class ToolDefinition(BaseModel):
    """Definition of an available tool."""

    model_config = ConfigDict(extra="allow")

    name: str
    description: str | None = None
    input_schema: dict[str, Any] = {}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate tool name format."""
        if not v or not v.strip():
            raise ValueError("tool name cannot be empty")
        return v


class SystemContentBlock(BaseModel):
    """Content block for the system prompt (text with optional cache control)."""

    model_config = ConfigDict(extra="allow")

    type: Literal["text"] = "text"
    text: str


class MessagesRequest(BaseModel):
    """Messages API request body."""

    model_config = ConfigDict(extra="allow")

    messages: list[Message]
    max_tokens: int | None = None
    model: str | None = None
    system: str | list[SystemContentBlock] | None = None
    tools: list[ToolDefinition] | None = None
    tool_choice: dict[str, Any] | None = None
    stream: bool | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop_sequences: list[str] | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("max_tokens")
    @classmethod
    def validate_max_tokens(cls, v: int | None) -> int | None:
        """Validate max_tokens is positive."""
        if v is not None and v <= 0:
            raise ValueError("max_tokens must be positive")
        return v

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float | None) -> float | None:
        if v is not None and (v < 0 or v > 2):
            raise ValueError("temperature must be between 0 and 2")
        return v


class CountTokensRequest(BaseModel):
    """Body of POST /v1/messages/count_tokens."""

    model_config = ConfigDict(extra="allow")

    messages: list[Message]
    model: str | None = None
    system: str | list[SystemContentBlock] | None = None
    tools: list[ToolDefinition] | None = None


def _format_errors(error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        messages.append(f"{location}: {item['msg']}" if location else item["msg"])
    return messages


def validate_request(body: dict[str, Any]) -> list[str]:
    """Validate a Messages API request body.

    Args:
        body: The request body dict to validate

    Returns:
        List of validation error messages (empty if valid)
    """
    try:
        MessagesRequest.model_validate(body)
    except ValidationError as e:
        return _format_errors(e)
    return []


def validate_count_tokens_request(body: dict[str, Any]) -> list[str]:
    """Validate a count_tokens request body; same contract as validate_request."""
    try:
        CountTokensRequest.model_validate(body)
    except ValidationError as e:
        return _format_errors(e)
    return []
