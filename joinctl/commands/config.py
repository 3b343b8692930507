import typer
from typing import Optional

from joinctl.commands.common import finish
from joinctl.modules.k3s.config import get_config
from joinctl.modules.k3s.configure import (
    create_config_file,
    find_config_file,
    show_config,
    validate_config_file,
)

app = typer.Typer()


@app.command("init")
def init_config(
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output file path (default: auto-detect)"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file"),
):
    """Create a configuration file with default values."""
    try:
        path = create_config_file(output_path=output, overwrite=force)
    except (FileExistsError, OSError) as e:
        typer.echo(f"❌ {e}", err=True)
        finish(False)
    typer.echo(f"✅ Created configuration file: {path}")


@app.command("validate")
def validate_config(
    config_file: Optional[str] = typer.Argument(None, help="Configuration file (default: auto-detect)"),
):
    """Validate a configuration file."""
    path = config_file or find_config_file()
    if path is None:
        typer.echo("No configuration file found.")
        finish(False)

    result = validate_config_file(path)
    if result['valid']:
        typer.echo(f"✅ Configuration is valid: {result['path']}")
        for warning in result['warnings']:
            typer.echo(f"  ⚠️  {warning}")
    else:
        typer.echo(f"❌ Configuration is invalid: {result['path']}")
        for error in result['errors']:
            typer.echo(f"  ❌ {error}")
    finish(result['valid'])


@app.command("show")
def show():
    """Show the effective configuration and where it was loaded from."""
    typer.echo(show_config(get_config()))
