"""CLI entry point."""

import asyncio
import logging

import rich_click as click

from switchback.compose import create_proxy
from switchback.logging_config import configure_logging

logger = logging.getLogger(__name__)

click.rich_click.USE_RICH_MARKUP = True
click.rich_click.USE_MARKDOWN = True
click.rich_click.SHOW_ARGUMENTS = True
click.rich_click.GROUP_ARGUMENTS_OPTIONS = True
click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
click.rich_click.ERRORS_SUGGESTION = "Try running '--help' for more information."
click.rich_click.ERRORS_EPILOGUE = ""
click.rich_click.MAX_WIDTH = 100


@click.group()
@click.version_option(package_name="switchback")
def cli() -> None:
    """switchback - Anthropic Messages API in front of OpenAI-compatible backends.

    Point an Anthropic client at the proxy and it talks to any
    Chat Completions backend (OpenAI, vLLM, Ollama, DeepSeek, ...).

        switchback serve    Run the proxy server
    """


@cli.command()
@click.option("--host", default=None, help="Host to bind to [env: SWITCHBACK_HOST, default: 127.0.0.1]")
@click.option("--port", "-p", type=int, default=None, help="Port to bind to [env: SWITCHBACK_PORT, default: 3456]")
@click.option("--upstream-url", default=None, help="Upstream base URL [env: OPENAI_BASE_URL]")
@click.option("--upstream-key", default=None, help="Upstream API key [env: OPENAI_API_KEY]")
@click.option("--model", "-m", default=None, help="Upstream model override [env: OPENAI_MODEL]")
@click.option("--debug-dir", default=None, help="Save per-request debug JSON under this directory")
@click.option("--config", "-c", "config_file", default=None, help="YAML config file [env: SWITCHBACK_CONFIG]")
@click.option("--log-level", default=None, help="Log level [env: SWITCHBACK_LOG_LEVEL, default: INFO]")
@click.option("--log-format", type=click.Choice(["text", "json"]), default=None, help="Log output format")
def serve(
    host: str | None,
    port: int | None,
    upstream_url: str | None,
    upstream_key: str | None,
    model: str | None,
    debug_dir: str | None,
    config_file: str | None,
    log_level: str | None,
    log_format: str | None,
) -> None:
    """Run the proxy server.

    **Examples:**

        switchback serve --upstream-url https://api.openai.com/v1 -m gpt-4o

        switchback serve -c switchback.yaml --log-level DEBUG
    """
    configure_logging(level=log_level, format=log_format)  # type: ignore[arg-type]

    try:
        asyncio.run(
            create_proxy(
                host=host,
                port=port,
                upstream_base_url=upstream_url,
                upstream_api_key=upstream_key,
                upstream_model=model,
                debug_dir=debug_dir,
                config_file=config_file,
            )
        )
    except ValueError as e:
        raise click.UsageError(str(e)) from e
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
