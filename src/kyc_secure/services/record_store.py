"""In-memory store of encrypted records and their lifecycle state.

Each logical record id maps to its current ciphertext record and a
RecordState. Allowed transitions:

    created -> active
    active  -> rotated | purged
    rotated -> purged

purged is terminal. Rotation replaces the ciphertext of every active record
in one synchronous step (``replace_all``), so no caller ever observes a mix
of key generations.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Set

from kyc_secure.schemas.encrypted_record import EncryptedRecord, RecordState
from kyc_secure.services.crypto.errors import RecordStateError

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[RecordState, Set[RecordState]] = {
    RecordState.CREATED: {RecordState.ACTIVE},
    RecordState.ACTIVE: {RecordState.ROTATED, RecordState.PURGED},
    RecordState.ROTATED: {RecordState.PURGED},
    RecordState.PURGED: set(),
}


@dataclass
class StoredRecord:
    """A record slot: the current ciphertext plus its lifecycle state."""

    record: Optional[EncryptedRecord]
    state: RecordState


class RecordStore:
    """Tracks every record the engine produced and enforces the state machine."""

    def __init__(self):
        self._slots: Dict[str, StoredRecord] = {}

    def _transition(self, record_id: str, target: RecordState) -> StoredRecord:
        slot = self._slots.get(record_id)
        if slot is None:
            raise KeyError(record_id)
        if target not in ALLOWED_TRANSITIONS[slot.state]:
            raise RecordStateError(
                f"Illegal transition for {record_id}: {slot.state.value} -> {target.value}"
            )
        slot.state = target
        return slot

    def add(self, record: EncryptedRecord) -> None:
        """Register a freshly encrypted record (created, then active)."""
        record_id = record.record_id
        if record_id in self._slots:
            raise RecordStateError(f"Record {record_id} already exists")
        self._slots[record_id] = StoredRecord(record=record, state=RecordState.CREATED)
        self._transition(record_id, RecordState.ACTIVE)

    def get(self, record_id: str) -> Optional[EncryptedRecord]:
        slot = self._slots.get(record_id)
        return slot.record if slot else None

    def state(self, record_id: str) -> Optional[RecordState]:
        slot = self._slots.get(record_id)
        return slot.state if slot else None

    def is_purged(self, record_id: str) -> bool:
        return self.state(record_id) == RecordState.PURGED

    def active_records(self) -> List[EncryptedRecord]:
        return [
            slot.record
            for slot in self._slots.values()
            if slot.state == RecordState.ACTIVE and slot.record is not None
        ]

    def referenced_generations(self) -> Set[int]:
        return {record.key_generation for record in self.active_records()}

    def replace_all(self, replacements: Mapping[str, EncryptedRecord]) -> None:
        """Swap in re-encrypted records for every active record at once.

        Each old version passes through rotated before the new version is
        registered as active under the same id.

        Raises:
            RecordStateError: If the replacements do not cover exactly the
                active records, or a replacement carries another id.
        """
        active_ids = {r.record_id for r in self.active_records()}
        if set(replacements) != active_ids:
            missing = sorted(active_ids - set(replacements))
            extra = sorted(set(replacements) - active_ids)
            raise RecordStateError(
                f"Replacement set mismatch (missing={missing}, unexpected={extra})"
            )
        for record_id, new in replacements.items():
            if new.record_id != record_id:
                raise RecordStateError(f"Replacement id {new.record_id} != {record_id}")

        # Validated; from here on nothing raises
        for record_id, new in replacements.items():
            self._transition(record_id, RecordState.ROTATED)
            self._slots[record_id] = StoredRecord(record=new, state=RecordState.CREATED)
            self._transition(record_id, RecordState.ACTIVE)

        logger.debug(f"Replaced {len(replacements)} record(s) after rotation")

    def purge(self, record_id: str) -> bool:
        """Erase the ciphertext of a record and mark it purged.

        Returns:
            True if the record was purged, False if unknown or already purged.
        """
        slot = self._slots.get(record_id)
        if slot is None or slot.state == RecordState.PURGED:
            return False
        self._transition(record_id, RecordState.PURGED)
        slot.record = None
        return True

    def purge_many(self, record_ids: Iterable[str]) -> List[str]:
        return [record_id for record_id in record_ids if self.purge(record_id)]

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._slots

    def __len__(self) -> int:
        return len(self.active_records())
