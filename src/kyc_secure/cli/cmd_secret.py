"""check-secret command: evaluate a secret against the secret policy."""

from pathlib import Path
from typing import Optional

import typer

from kyc_secure.cli._app import app
from kyc_secure.cli._common import setup_logging
from kyc_secure.cli._console import output_result, print_err, print_ok


@app.command("check-secret", help="Check a secret against the secret policy.")
def check_secret_cmd(
    ctx: typer.Context,
    secret: str = typer.Option(
        ...,
        "--secret",
        prompt=True,
        hide_input=True,
        help="Secret to check (prompted if omitted)",
    ),
    policy: Optional[Path] = typer.Option(
        None,
        "--policy",
        help="Secret policy YAML (default: packaged policy)",
    ),
):
    """Report which policy rules a secret violates. Exit code 1 if any."""
    setup_logging(verbose=ctx.obj["verbose"], quiet=ctx.obj["quiet"])

    from kyc_secure.services.crypto.secret_policy import SecretPolicyLoader

    try:
        loaded = SecretPolicyLoader.load(policy)
    except (FileNotFoundError, ValueError) as e:
        print_err(f"Cannot load secret policy: {e}")
        raise SystemExit(2)

    reasons = loaded.violations(secret)

    if ctx.obj["json"]:
        output_result({"accepted": not reasons, "violations": reasons}, ctx=ctx)
    elif reasons:
        print_err("Secret rejected")
        for reason in reasons:
            print_err(f"  {reason}")
    elif not ctx.obj["quiet"]:
        print_ok("Secret meets the policy")

    if reasons:
        raise SystemExit(1)
