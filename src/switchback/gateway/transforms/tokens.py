"""Token counting for requests and streamed output.

Backends report usage only at the end of a response, but the client
protocol announces input tokens in the very first stream event. Counts are
therefore computed locally with tiktoken's cl100k_base encoding.

The encoder is loaded once per process and is read-only afterwards, so
concurrent requests share it without locking. If tiktoken cannot encode
(or the encoding cannot be loaded), counts fall back to ceil(len / 4).
"""

import json
import logging
import math
import threading
from collections.abc import Iterable, Mapping
from typing import Any

import tiktoken

from .anthropic import parse_message, parse_tool
from .types import (
    ChatMessage,
    ImageBlock,
    TextBlock,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

ENCODING_NAME = "cl100k_base"

_encoder: tiktoken.Encoding | None = None
_encoder_unavailable = False
_encoder_lock = threading.Lock()


def _get_encoder() -> tiktoken.Encoding | None:
    global _encoder, _encoder_unavailable
    if _encoder is not None or _encoder_unavailable:
        return _encoder
    with _encoder_lock:
        if _encoder is None and not _encoder_unavailable:
            try:
                _encoder = tiktoken.get_encoding(ENCODING_NAME)
            except Exception as e:
                logger.debug(
                    "Failed to load %s encoding, using character estimate: %s",
                    ENCODING_NAME,
                    e,
                )
                _encoder_unavailable = True
    return _encoder


def estimate_tokens(text: str) -> int:
    """Character-based estimate used when the tokenizer is unavailable."""
    return math.ceil(len(text) / 4)


def count_tokens(text: str) -> int:
    """Count tokens in a string. Never raises."""
    if not text:
        return 0
    encoder = _get_encoder()
    if encoder is None:
        return estimate_tokens(text)
    try:
        return len(encoder.encode(text, disallowed_special=()))
    except Exception:
        logger.debug("Tokenizer failed, using character estimate", exc_info=True)
        return estimate_tokens(text)


def _json_text(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _count_message(message: ChatMessage) -> int:
    if isinstance(message.content, str):
        return count_tokens(message.content)

    total = 0
    for block in message.content:
        if isinstance(block, TextBlock):
            total += count_tokens(block.text)
        elif isinstance(block, ToolUseBlock):
            total += count_tokens(_json_text(block.input))
        elif isinstance(block, ToolResultBlock):
            content = block.content
            total += count_tokens(content if isinstance(content, str) else _json_text(content))
        elif isinstance(block, ImageBlock):
            # Image tokens are priced by the backend, not by text length
            pass
    return total


def count_request_tokens(
    messages: Iterable[ChatMessage | Mapping[str, Any]],
    system: str | Iterable[Mapping[str, Any]] | None = None,
    tools: Iterable[ToolSpec | Mapping[str, Any]] | None = None,
) -> int:
    """Count input tokens of a request before it is sent to the backend.

    Sums every text block, the JSON form of every tool_use input and
    structured tool_result payload, the system prompt, and each tool's
    name, description and JSON input schema.

    Args:
        messages: Conversation history, typed or as client dicts
        system: System prompt as a string or a list of text blocks
        tools: Tool definitions, typed or as client dicts

    Returns:
        Token count (>= 0)
    """
    total = 0

    for message in messages:
        if isinstance(message, Mapping):
            message = parse_message(message)
        total += _count_message(message)

    if isinstance(system, str):
        total += count_tokens(system)
    elif system is not None:
        for item in system:
            if item.get("type") == "text" and isinstance(item.get("text"), str):
                total += count_tokens(item["text"])

    for tool in tools or ():
        if isinstance(tool, Mapping):
            tool = parse_tool(tool)
        total += count_tokens(tool.name)
        if tool.description:
            total += count_tokens(tool.description)
        if tool.input_schema:
            total += count_tokens(_json_text(tool.input_schema))

    return total
