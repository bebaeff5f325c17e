"""Typer application for the kyc-secure operator CLI.

Global options are parsed here and stashed on ``ctx.obj`` for the commands:
``verbose``/``quiet`` pick the log level and ``json`` switches every command
to machine-readable stdout.
"""

from typing import Optional

import typer

from kyc_secure import __version__

app = typer.Typer(
    name="kyc-secure",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=False,
)


def _print_version(value: bool) -> None:
    if value:
        typer.echo(f"kyc-secure {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug-level logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Warnings and errors only"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON to stdout"),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=_print_version,
        is_eager=True,
        help="Show the kyc-secure version and exit",
    ),
):
    """Operate the KYC encryption engine: secret policy, audit ledger, configuration."""
    if verbose and quiet:
        raise typer.BadParameter("--verbose and --quiet are mutually exclusive")
    ctx.ensure_object(dict)
    ctx.obj.update(verbose=verbose, quiet=quiet, json=json_output)
