import typer
import logging
import sys
from typing import Optional

from pydantic import ValidationError

from joinctl.commands import agent, channel, config, server
from joinctl.commands.cluster import cluster_app
from joinctl.logging import configure_logging
from joinctl.modules.k3s.config import HandshakeConfig, set_config

app = typer.Typer()

# Global debug flag
debug_mode = False

# Add all command groups
app.add_typer(server.app, name="server", help="Server readiness and publication")
app.add_typer(agent.app, name="agent", help="Agent collection and join")
app.add_typer(cluster_app, name="cluster", help="Cluster membership")
app.add_typer(channel.app, name="channel", help="Publication channel")
app.add_typer(config.app, name="config", help="Configuration files")


# Global options callback
@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    config_file: Optional[str] = typer.Option(None, "--config", "-c", help="Configuration file"),
):
    """joinctl - K3S cluster join handshake."""
    global debug_mode
    debug_mode = debug
    try:
        settings = HandshakeConfig.load(config_file)
    except ValidationError as e:
        typer.echo(f"❌ Invalid configuration: {e}", err=True)
        raise typer.Exit(code=1)
    set_config(settings)
    configure_logging(
        level="DEBUG" if debug else settings.logging.level,
        log_file=settings.logging.file,
        max_size_mb=settings.logging.max_size_mb,
        backup_count=settings.logging.backup_count,
    )
    if debug:
        logging.debug("Debug mode enabled")


if __name__ == "__main__":
    try:
        app()
    except Exception as e:
        if debug_mode:
            import traceback
            logging.error(f"Unhandled exception: {e}\n{traceback.format_exc()}")
        else:
            logging.error(f"Error: {e}")
        sys.exit(1)
