"""Convenience functions for building and running the proxy.

Configuration is resolved per field with priority:
    explicit argument > environment variable > YAML config file > default

The YAML file path comes from the config_file argument or SWITCHBACK_CONFIG.
Its keys are the ProxyConfig field names, e.g.:

    upstream_base_url: http://localhost:11434/v1
    upstream_model: qwen2.5-coder:32b
    supports_stream_usage: false
    debug_dir: /tmp/switchback-debug
"""

import asyncio
import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from switchback.gateway.proxy import ProxyConfig, ProxyServer

logger = logging.getLogger(__name__)

CONFIG_ENV_KEY = "SWITCHBACK_CONFIG"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


async def _load_file_config(config_file: str | None) -> dict[str, Any]:
    config_path = config_file or os.environ.get(CONFIG_ENV_KEY)
    if not config_path:
        return {}
    try:
        content = await asyncio.to_thread(Path(config_path).read_text)
    except FileNotFoundError:
        logger.warning("Config file not found: %s", config_path)
        return {}

    file_config = yaml.safe_load(content) or {}
    if not isinstance(file_config, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    return file_config


def _value_resolver(file_config: dict[str, Any]) -> Callable[[Any, str, str, Any], Any]:
    def get_value(arg: Any, env_key: str, file_key: str, default: Any) -> Any:
        if arg is not None:
            return arg
        env_val = os.environ.get(env_key)
        if env_val:
            return env_val
        file_val = file_config.get(file_key)
        if file_val is not None:
            return file_val
        return default

    return get_value


async def load_proxy_config(
    host: str | None = None,
    port: int | None = None,
    upstream_base_url: str | None = None,
    upstream_api_key: str | None = None,
    upstream_model: str | None = None,
    debug_dir: str | None = None,
    config_file: str | None = None,
) -> ProxyConfig:
    """Resolve a ProxyConfig from arguments, environment and config file.

    Raises:
        ValueError: If no upstream base URL is configured.
    """
    file_config = await _load_file_config(config_file)
    get_value = _value_resolver(file_config)
    defaults = ProxyConfig()

    config = ProxyConfig(
        host=str(get_value(host, "SWITCHBACK_HOST", "host", defaults.host)),
        port=int(get_value(port, "SWITCHBACK_PORT", "port", defaults.port)),
        upstream_base_url=str(get_value(upstream_base_url, "OPENAI_BASE_URL", "upstream_base_url", "")),
        upstream_api_key=str(get_value(upstream_api_key, "OPENAI_API_KEY", "upstream_api_key", "")),
        upstream_model=str(get_value(upstream_model, "OPENAI_MODEL", "upstream_model", "")),
        connect_timeout=float(
            get_value(None, "SWITCHBACK_CONNECT_TIMEOUT", "connect_timeout", defaults.connect_timeout)
        ),
        read_timeout=float(
            get_value(None, "SWITCHBACK_READ_TIMEOUT", "read_timeout", defaults.read_timeout)
        ),
        max_retries=int(get_value(None, "SWITCHBACK_MAX_RETRIES", "max_retries", defaults.max_retries)),
        supports_stream_usage=_as_bool(
            get_value(
                None,
                "SWITCHBACK_STREAM_USAGE",
                "supports_stream_usage",
                defaults.supports_stream_usage,
            )
        ),
        native_tools=_as_bool(
            get_value(None, "SWITCHBACK_NATIVE_TOOLS", "native_tools", defaults.native_tools)
        ),
        sanitize_tool_results=_as_bool(
            get_value(
                None,
                "SWITCHBACK_SANITIZE_TOOL_RESULTS",
                "sanitize_tool_results",
                defaults.sanitize_tool_results,
            )
        ),
        max_body_size=int(
            get_value(None, "SWITCHBACK_MAX_BODY_SIZE", "max_body_size", defaults.max_body_size)
        ),
        debug_dir=get_value(debug_dir, "SWITCHBACK_DEBUG_DIR", "debug_dir", None),
    )

    if not config.upstream_base_url:
        raise ValueError(
            "upstream_base_url is required. Set OPENAI_BASE_URL env var or pass explicitly."
        )
    return config


async def create_proxy(
    host: str | None = None,
    port: int | None = None,
    upstream_base_url: str | None = None,
    upstream_api_key: str | None = None,
    upstream_model: str | None = None,
    debug_dir: str | None = None,
    config_file: str | None = None,
) -> None:
    """Create and run the proxy server until shutdown.

    Example:
        >>> import asyncio
        >>> asyncio.run(create_proxy(
        ...     upstream_base_url="https://api.openai.com/v1",
        ...     upstream_api_key="sk-...",
        ...     upstream_model="gpt-4o",
        ... ))
    """
    config = await load_proxy_config(
        host=host,
        port=port,
        upstream_base_url=upstream_base_url,
        upstream_api_key=upstream_api_key,
        upstream_model=upstream_model,
        debug_dir=debug_dir,
        config_file=config_file,
    )
    server = ProxyServer(config=config)
    await server.serve()
