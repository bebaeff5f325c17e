"""CLI package: Typer-based operator command line.

Usage:
    python -m kyc_secure.cli --help
    python -m kyc_secure.cli verify-ledger output/audit
"""

from kyc_secure.cli._app import app

# Register command modules (side-effect imports)
import kyc_secure.cli.cmd_secret  # noqa: F401
import kyc_secure.cli.cmd_ledger  # noqa: F401
import kyc_secure.cli.cmd_config  # noqa: F401

__all__ = ["app"]
