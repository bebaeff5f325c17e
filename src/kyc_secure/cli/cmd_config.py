"""config command: print the effective engine configuration."""

from pathlib import Path
from typing import Optional

import typer

from kyc_secure.cli._app import app
from kyc_secure.cli._common import load_config, setup_logging
from kyc_secure.cli._console import output_result, print_err


@app.command("config", help="Show the effective engine configuration.")
def config_cmd(
    ctx: typer.Context,
    env_file: Optional[Path] = typer.Option(
        None,
        "--env-file",
        help=".env file to load (default: ./.env)",
    ),
):
    """Load .env and KYC_ENGINE_* variables and print the resulting config."""
    setup_logging(verbose=ctx.obj["verbose"], quiet=ctx.obj["quiet"])

    try:
        config = load_config(env_file)
    except ValueError as e:
        print_err(f"Invalid configuration: {e}")
        raise SystemExit(1)

    output_result(config.model_dump(mode="json"), ctx=ctx, title="Engine configuration")
