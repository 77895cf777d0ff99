"""Run the relay server: ``python -m local_llm_chat``."""

import click
import uvicorn

from .config import get_config
from .log import configure_logging

_config = get_config()


@click.command()
@click.option("--host", default=_config.host, show_default=True, help="Interface to bind")
@click.option("--port", default=_config.port, show_default=True, type=int, help="Port to listen on")
@click.option(
    "--log-level",
    default=_config.log_level,
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
)
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
def main(host: str, port: int, log_level: str, json_logs: bool):
    """Start the chat relay in front of an Ollama-compatible server."""
    configure_logging(log_level, json=json_logs)
    click.echo(f"Relaying to {_config.api_url} on http://{host}:{port}", err=True)
    uvicorn.run(
        "local_llm_chat.api.app:app",
        host=host,
        port=port,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    main()
