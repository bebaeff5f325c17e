"""Run blocking crypto primitives off the event loop with a timeout."""

import asyncio
import logging
from typing import Any, Callable, Optional, Type, TypeVar

from kyc_secure.services.crypto.errors import CryptoError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_primitive(
    func: Callable[..., T],
    *args: Any,
    timeout: Optional[float] = None,
    error_cls: Type[CryptoError] = CryptoError,
) -> T:
    """Run ``func(*args)`` in a worker thread.

    Args:
        func: Blocking callable (KDF, AEAD, HMAC).
        *args: Positional arguments for func.
        timeout: Seconds before giving up; None waits indefinitely.
        error_cls: Exception raised on timeout.

    Raises:
        error_cls: If the call exceeds the timeout.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
    except asyncio.TimeoutError as e:
        name = getattr(func, "__name__", repr(func))
        logger.warning(f"Crypto primitive {name} timed out after {timeout}s")
        raise error_cls(f"Operation timed out after {timeout}s") from e
