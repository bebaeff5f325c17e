"""Shared CLI setup: environment loading and logging."""

import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from rich.logging import RichHandler

from kyc_secure.cli._console import console
from kyc_secure.services.config import EngineConfig

logger = logging.getLogger(__name__)


def load_environment(env_path: Optional[Path] = None) -> bool:
    """Load a .env file (current directory by default) without overriding the shell."""
    if env_path is not None:
        return load_dotenv(env_path)
    return load_dotenv()


def load_config(env_path: Optional[Path] = None) -> EngineConfig:
    """Load .env, then build EngineConfig from KYC_ENGINE_* variables."""
    load_environment(env_path)
    return EngineConfig.from_env()


def setup_logging(*, verbose: bool = False, quiet: bool = False) -> None:
    """Configure logging with Rich handler."""
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=True,
        rich_tracebacks=True,
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
