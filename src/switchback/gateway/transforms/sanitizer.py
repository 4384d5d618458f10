"""Content sanitization for backends that only accept string tool results."""

import json
from typing import Any

from .types import ChatMessage, ContentBlock, ToolResultBlock


def canonical_json(value: Any) -> str:
    """Serialize a value to canonical JSON text (sorted keys, compact)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sanitize(block: ContentBlock) -> ContentBlock:
    """Flatten a structured tool_result payload into JSON text.

    String payloads and every other block type are returned unchanged, so
    sanitizing an already-sanitized block is a no-op.
    """
    if isinstance(block, ToolResultBlock) and not isinstance(block.content, str):
        content = "" if block.content is None else canonical_json(block.content)
        return ToolResultBlock(
            tool_use_id=block.tool_use_id,
            content=content,
            is_error=block.is_error,
        )
    return block


def sanitize_message(message: ChatMessage) -> ChatMessage:
    """Apply sanitize() to every block of a message."""
    if isinstance(message.content, str):
        return message
    return ChatMessage(
        role=message.role,
        content=tuple(sanitize(block) for block in message.content),
    )
