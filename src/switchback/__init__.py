"""switchback - Anthropic Messages API proxy for OpenAI-compatible backends.

Clients speaking the Anthropic Messages API (requests, tool use, SSE
streaming) are served by any Chat Completions backend.

Layers:
    gateway/transforms/  Pure protocol translation (requests, responses, streams)
    gateway/clients/     Resilient HTTP client for the upstream
    gateway/proxy.py     aiohttp server exposing /v1/messages
    compose.py           Configuration resolution and server startup
    cli.py               `switchback serve`

Quick Start:
    >>> from switchback.gateway.transforms import translate_request, translate_response
    >>> openai_body = translate_request({"model": "claude", "max_tokens": 64,
    ...     "messages": [{"role": "user", "content": "Hi"}]})
"""

__version__ = "0.1.0"
