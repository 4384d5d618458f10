"""switchback gateway - accepts Anthropic Messages API requests and forwards
them to an OpenAI-compatible upstream.

Components:
- Proxy server: Accepts, translates and forwards requests
- Transforms: Protocol conversion utilities
- Clients: Resilient HTTP client for the upstream API

Usage (via compose.py):
    from switchback.compose import create_proxy
    import asyncio

    asyncio.run(create_proxy(
        upstream_base_url="https://api.openai.com/v1",
        upstream_api_key="sk-...",
        upstream_model="gpt-4o",
    ))

Usage (direct):
    from switchback.gateway.proxy import ProxyConfig, ProxyServer
    import asyncio

    async def main():
        config = ProxyConfig(upstream_base_url="http://localhost:11434/v1")
        server = ProxyServer(config=config)
        await server.serve()

    asyncio.run(main())
"""

from switchback.gateway.errors import (
    ERROR_TYPE_MAP,
    CircuitOpenError,
    GatewayError,
    UpstreamError,
    UpstreamUnreachable,
)
from switchback.gateway.tracing import RequestTracer

__all__ = [
    "ERROR_TYPE_MAP",
    "CircuitOpenError",
    "GatewayError",
    "RequestTracer",
    "UpstreamError",
    "UpstreamUnreachable",
]
