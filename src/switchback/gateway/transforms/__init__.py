"""Protocol transforms between the Anthropic Messages API and the OpenAI
Chat Completions API.

Requests and responses pass through the typed values in types.py; streams
are converted event by event by StreamConverter.
"""

from .anthropic import AnthropicTransformer
from .openai import OpenAITransformer, filter_empty_assistant_messages
from .sanitizer import sanitize, sanitize_message
from .streaming import StreamConverter, ToolCallAccumulator, convert_stream, decode_sse_stream
from .tokens import count_request_tokens, count_tokens
from .tool_id_mapper import ToolIDMapper, sanitize_tool_name, shorten_tool_id
from .translator import translate_request, translate_response
from .types import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ContentBlock,
    StreamEvent,
    TokenUsage,
)
from .validation import MessagesRequest, validate_request

__all__ = [
    # Translation
    "translate_request",
    "translate_response",
    "convert_stream",
    "decode_sse_stream",
    # Transformers
    "AnthropicTransformer",
    "OpenAITransformer",
    "StreamConverter",
    "ToolCallAccumulator",
    "ToolIDMapper",
    "shorten_tool_id",
    "sanitize_tool_name",
    # Helpers
    "count_tokens",
    "count_request_tokens",
    "sanitize",
    "sanitize_message",
    "filter_empty_assistant_messages",
    # Types
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "ContentBlock",
    "StreamEvent",
    "TokenUsage",
    # Validation
    "MessagesRequest",
    "validate_request",
]
