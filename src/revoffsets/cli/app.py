"""Root Typer application with subcommand registration."""

from __future__ import annotations

from typing import Optional

import typer

from revoffsets import RevOffsetsContext, __version__

app = typer.Typer(
    name="revoffsets",
    help="revoffsets — function and structure offsets for ARM64 Mach-O binaries",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# Shared state across commands
_ctx = RevOffsetsContext()


def get_context() -> RevOffsetsContext:
    return _ctx


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"revoffsets {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    config: Optional[str] = typer.Option(None, "--config", "-C", help="Path to revoffsets.yaml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines on stderr"),
    version: Optional[bool] = typer.Option(
        None, "--version", "-V", callback=_version_callback, is_eager=True
    ),
) -> None:
    """revoffsets — function and structure offsets for ARM64 Mach-O binaries."""
    from revoffsets.config.loader import load_config
    from revoffsets.errors import ConfigError
    from revoffsets.utils.formatters import print_error
    from revoffsets.utils.logging import setup_logging

    setup_logging(level="DEBUG" if verbose else "WARNING", json_output=json_logs)
    try:
        _ctx.config = load_config(config)
    except ConfigError as exc:
        print_error(str(exc))
        raise typer.Exit(1)
    _ctx.catalog = None
    _ctx.catalog_override = None


# -- Subcommand registration --
from revoffsets.cli.generate import generate_cmd  # noqa: E402
from revoffsets.cli.diff import diff_cmd  # noqa: E402
from revoffsets.cli.symbols import symbols_cmd  # noqa: E402
from revoffsets.cli.scan import scan_cmd  # noqa: E402
from revoffsets.cli.catalog_cmd import catalog_cmd  # noqa: E402

app.command(name="generate")(generate_cmd)
app.command(name="diff")(diff_cmd)
app.command(name="symbols")(symbols_cmd)
app.command(name="scan")(scan_cmd)
app.command(name="catalog")(catalog_cmd)
