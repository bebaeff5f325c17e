"""Per-session key state.

One SessionContext per user session; nothing here is global, so several
sessions can live side by side in one process.

Gate:
- Normal operations take a *lease* on the active key.
- Rotation and retention sweeps take the *exclusive* gate: new leases block,
  in-flight leases drain, then the exclusive holder runs alone.
- The gate is reopened in a finally block, so a cancelled or failed rotation
  never leaves it closed.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional

from kyc_secure.services.crypto.errors import SessionError, SessionNotInitializedError
from kyc_secure.services.crypto.key_derivation import KeyMaterial

logger = logging.getLogger(__name__)


class SessionContext:
    """Holds the active KeyMaterial, retiring generations and the rotation gate."""

    def __init__(self):
        self._active: Optional[KeyMaterial] = None
        self._retired: Dict[int, KeyMaterial] = {}
        self._condition = asyncio.Condition()
        self._leases = 0
        self._exclusive = False

    # -------------------------------------------------------------------------
    # Key state
    # -------------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._active is not None

    @property
    def generation(self) -> int:
        return self.active_key().generation

    @property
    def active_leases(self) -> int:
        return self._leases

    @property
    def is_exclusive(self) -> bool:
        return self._exclusive

    def install(self, key: KeyMaterial) -> None:
        """Install the first key of a session.

        Raises:
            SessionError: If a key is already installed.
        """
        if self._active is not None:
            raise SessionError("Session already initialized; clear it first")
        self._active = key
        logger.debug(f"Installed key generation {key.generation}")

    def active_key(self) -> KeyMaterial:
        """Return the active key.

        Raises:
            SessionNotInitializedError: If no key is installed.
        """
        if self._active is None:
            raise SessionNotInitializedError("Session not initialized")
        return self._active

    def key_for_generation(self, generation: int) -> Optional[KeyMaterial]:
        """Return the live key for a generation, or None."""
        if self._active is not None and self._active.generation == generation:
            return self._active
        return self._retired.get(generation)

    def retired_generations(self) -> List[int]:
        return sorted(self._retired)

    def activate(self, key: KeyMaterial) -> None:
        """Make ``key`` active and move the previous key to the retired set.

        Call ``zero_unreferenced`` afterwards to destroy retired keys that no
        stored record still needs.
        """
        previous = self.active_key()
        if key.generation <= previous.generation:
            raise SessionError(
                f"New generation {key.generation} must exceed {previous.generation}"
            )
        self._retired[previous.generation] = previous
        self._active = key
        logger.info(f"Activated key generation {key.generation} (retired {previous.generation})")

    def zero_unreferenced(self, referenced: Iterable[int]) -> List[int]:
        """Zero and drop retired keys whose generation is not referenced.

        Returns:
            Generations that were zeroed.
        """
        keep = set(referenced)
        zeroed = []
        for generation in sorted(self._retired):
            if generation in keep:
                continue
            self._retired.pop(generation).zero()
            zeroed.append(generation)
        if zeroed:
            logger.info(f"Zeroed retired key generations {zeroed}")
        return zeroed

    def clear(self) -> None:
        """Zero every key buffer immediately."""
        count = 0
        if self._active is not None:
            self._active.zero()
            count += 1
        for key in self._retired.values():
            key.zero()
            count += 1
        self._active = None
        self._retired.clear()
        logger.info(f"Session cleared ({count} key(s) zeroed)")

    # -------------------------------------------------------------------------
    # Gate
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[KeyMaterial]:
        """Borrow the active key for one operation.

        Waits while a rotation holds the gate.

        Raises:
            SessionNotInitializedError: If no key is installed.
        """
        async with self._condition:
            await self._condition.wait_for(lambda: not self._exclusive)
            key = self.active_key()
            self._leases += 1
        try:
            yield key
        finally:
            async with self._condition:
                self._leases -= 1
                self._condition.notify_all()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        """Hold the session alone: block new leases and drain in-flight ones."""
        async with self._condition:
            await self._condition.wait_for(lambda: not self._exclusive)
            self._exclusive = True
            try:
                await self._condition.wait_for(lambda: self._leases == 0)
            except BaseException:
                self._exclusive = False
                self._condition.notify_all()
                raise
        try:
            yield
        finally:
            async with self._condition:
                self._exclusive = False
                self._condition.notify_all()
