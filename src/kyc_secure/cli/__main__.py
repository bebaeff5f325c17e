"""Entry point for ``python -m kyc_secure.cli``."""

from kyc_secure.cli import app

if __name__ == "__main__":
    app()
