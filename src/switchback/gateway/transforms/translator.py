"""Request and response translation between client and backend protocols.

translate_request:  Anthropic Messages request  -> OpenAI Chat Completions request
translate_response: OpenAI Chat Completions response -> Anthropic Messages response

Both are pure: they never mutate their input and, apart from recording
shortened tool IDs in the supplied request-scoped mapper, keep no state.
"""

from collections.abc import Mapping
from typing import Any

from .anthropic import AnthropicTransformer
from .openai import OpenAITransformer
from .tool_id_mapper import ToolIDMapper
from .types import ChatRequest


def translate_request(
    request: ChatRequest | Mapping[str, Any],
    tool_id_mapper: ToolIDMapper | None = None,
    *,
    sanitize_tool_results: bool = False,
    native_tools: bool = False,
) -> dict[str, Any]:
    """Translate a client request into a backend request.

    Args:
        request: Parsed ChatRequest or the raw client body
        tool_id_mapper: Request-scoped mapper; tool IDs are shortened when given
        sanitize_tool_results: Stringify structured tool_result payloads
        native_tools: Emit tool_calls / "tool" messages instead of passing
            tool blocks through

    Returns:
        OpenAI Chat Completions request body
    """
    if isinstance(request, Mapping):
        request = AnthropicTransformer().to_internal(request)
    transformer = OpenAITransformer(
        sanitize_tool_results=sanitize_tool_results,
        native_tools=native_tools,
    )
    return transformer.to_upstream(request, tool_id_mapper)


def translate_response(
    response: Mapping[str, Any],
    override_model: str,
    tool_id_mapper: ToolIDMapper | None = None,
) -> dict[str, Any]:
    """Translate a complete backend response into a client response.

    Args:
        response: OpenAI Chat Completions response body
        override_model: Model name the client asked for; reported instead
            of the model the backend served
        tool_id_mapper: Mapper used to restore client tool IDs

    Returns:
        Anthropic Messages response body
    """
    chat_response = OpenAITransformer().from_upstream(dict(response), override_model, tool_id_mapper)
    return AnthropicTransformer().from_internal(chat_response)
