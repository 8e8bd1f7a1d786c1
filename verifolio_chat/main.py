"""Command-line entry point for Verifolio Chat."""

import sys

import typer

from verifolio_chat.config import Config, set_config
from verifolio_chat.exceptions import ConfigurationError
from verifolio_chat.logging import configure_logging, get_logger

log = get_logger(__name__)

app = typer.Typer(help="Verifolio Chat - tool-calling assistant service")


def _load_config(config: str, host: str, port: int) -> Config:
    try:
        cfg = Config.load(config or None)
    except Exception as e:
        raise ConfigurationError(f"Could not load configuration: {e}") from e

    # CLI flags override the file and the environment
    if host:
        cfg.web.host = host
    if port:
        cfg.web.port = port
    return cfg


@app.command()
def serve(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    host: str = typer.Option("", "--host", help="Override listen host"),
    port: int = typer.Option(0, "--port", help="Override listen port"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Serve POST /chat and GET /health."""
    try:
        cfg = _load_config(config, host, port)
    except ConfigurationError as e:
        print(f"Error: {e}")
        sys.exit(1)

    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)

    from verifolio_chat.web_server import run_web_server

    try:
        run_web_server(cfg)
    except Exception as e:
        log.error("Server crashed", error=str(e))
        print(f"Fatal error: {e}")
        sys.exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    from verifolio_chat import __version__
    print(f"Verifolio Chat v{__version__}")


if __name__ == "__main__":
    app()
