"""Retention metadata for encrypted records."""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from kyc_secure.schemas.audit_entry import RetentionRecord
from kyc_secure.utils.clock import Clock, to_utc, utc_now

logger = logging.getLogger(__name__)


class RetentionRegistry:
    """Maps subject ids to expiry times.

    The registry only answers "what has expired"; purging ciphertext and
    keys is done by the engine under the session's exclusive gate.
    """

    def __init__(self, clock: Clock = utc_now):
        self._records: Dict[str, RetentionRecord] = {}
        self._clock = clock

    def set_retention(self, subject_id: str, ttl: timedelta) -> RetentionRecord:
        """Set (or replace) the expiry of a subject to now + ttl."""
        if ttl <= timedelta(0):
            raise ValueError(f"Retention ttl must be positive, got {ttl}")
        now = to_utc(self._clock())
        record = RetentionRecord(subject_id=subject_id, expires_at=now + ttl, created_at=now)
        self._records[subject_id] = record
        logger.debug(f"Retention for {subject_id} until {record.expires_at.isoformat()}")
        return record

    def get(self, subject_id: str) -> Optional[RetentionRecord]:
        return self._records.get(subject_id)

    def expired(self, now: Optional[datetime] = None) -> List[RetentionRecord]:
        """Return records whose expiry is at or before ``now``, oldest first."""
        now = to_utc(now or self._clock())
        due = [r for r in self._records.values() if r.is_expired(now)]
        return sorted(due, key=lambda r: (r.expires_at, r.subject_id))

    def remove(self, subject_id: str) -> None:
        self._records.pop(subject_id, None)

    def __len__(self) -> int:
        return len(self._records)
