"""Append-only audit ledger with hash chain integrity.

Every encrypt, decrypt, track, rotate, access-denied, purge, seal, verify and clear
operation appends one AuditEntry. Each entry is linked to the previous one
via SHA-256 hashes, so modification or deletion is detectable.

Entries are held in memory and, when a directory is configured, appended to
``audit.jsonl`` and reloaded on start. Entries carry ids, field types and key
generations only; never plaintext or key bytes.

Appends are synchronous: ``record_access`` returns only after the line is
written and, unless ``fsync=False``, flushed to disk. Engine operations call it
on the event loop, so each audited operation pays one fsync there. Pass
``fsync=False`` (``KYC_ENGINE_AUDIT_FSYNC=false``) to trade durability of the
last entries on power loss for lower latency.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from kyc_secure.schemas.audit_entry import (
    AuditEntry,
    AuditOperation,
    AuditOutcome,
    AuditQuery,
    IntegrityReport,
)
from kyc_secure.schemas.encrypted_record import FieldType
from kyc_secure.utils.clock import Clock, to_utc, utc_now

logger = logging.getLogger(__name__)

GENESIS_HASH = "GENESIS"
LEDGER_FILE_NAME = "audit.jsonl"


def compute_entry_hash(entry: AuditEntry) -> str:
    """Compute SHA-256 hash of an entry excluding its own hash field."""
    data = entry.model_dump(mode="json")
    data.pop("entry_hash", None)
    # previous_hash stays in: it is part of the chain
    serialized = json.dumps(data, sort_keys=True, ensure_ascii=True, default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _verify_chain(entries: List[Dict[str, Any]]) -> IntegrityReport:
    """Verify a list of raw entry dicts in order."""
    expected_previous_hash = GENESIS_HASH

    for idx, data in enumerate(entries):
        stored_hash = data.get("entry_hash")
        stored_previous = data.get("previous_hash", GENESIS_HASH)
        entry_id = data.get("entry_id", f"unknown_{idx}")

        if stored_previous != expected_previous_hash:
            return IntegrityReport(
                valid=False,
                total_entries=len(entries),
                break_at_index=idx,
                break_at_entry_id=entry_id,
                error_type="chain_break",
                error_details=(
                    f"Previous hash mismatch at entry {idx}: "
                    f"expected {expected_previous_hash[:16]}..., "
                    f"got {stored_previous[:16] if stored_previous else 'None'}..."
                ),
            )

        try:
            computed_hash = compute_entry_hash(AuditEntry.model_validate(data))
        except ValidationError as e:
            return IntegrityReport(
                valid=False,
                total_entries=len(entries),
                break_at_index=idx,
                break_at_entry_id=entry_id,
                error_type="json_parse_error",
                error_details=f"Invalid entry at {idx}: {e.error_count()} validation error(s)",
            )

        if stored_hash != computed_hash:
            return IntegrityReport(
                valid=False,
                total_entries=len(entries),
                break_at_index=idx,
                break_at_entry_id=entry_id,
                error_type="hash_mismatch",
                error_details=(
                    f"Hash mismatch at entry {idx} ({entry_id}): "
                    f"stored {stored_hash[:16] if stored_hash else 'None'}..., "
                    f"computed {computed_hash[:16]}..."
                ),
            )

        expected_previous_hash = stored_hash

    return IntegrityReport(valid=True, total_entries=len(entries))


class AuditLedger:
    """Append-only audit ledger.

    Usage:
        ledger = AuditLedger(Path("output/audit"))
        ledger.record_access(AuditOperation.ENCRYPT, AuditOutcome.SUCCESS,
                             field_type=FieldType.SSN, actor_key_generation=0)

        report = ledger.verify_integrity()
        if not report.valid:
            raise ValueError(f"Chain broken at {report.break_at_entry_id}")
    """

    def __init__(
        self,
        storage_dir: Optional[Path] = None,
        clock: Clock = utc_now,
        fsync: bool = True,
    ):
        """Initialize the ledger.

        Args:
            storage_dir: Directory for audit.jsonl; memory only if None.
            clock: Wall-clock source for entry timestamps.
            fsync: fsync the file after every appended entry.

        Raises:
            ValueError: If an existing ledger file cannot be parsed.
        """
        self.storage_dir = Path(storage_dir) if storage_dir is not None else None
        self.ledger_file = self.storage_dir / LEDGER_FILE_NAME if self.storage_dir else None
        self._clock = clock
        self.fsync = fsync
        self._lock = threading.Lock()
        self._entries: List[AuditEntry] = []

        if self.ledger_file is not None:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            self._entries = self.read_file(self.ledger_file)
            if self._entries:
                logger.info(f"Loaded {len(self._entries)} audit entries from {self.ledger_file}")

    @staticmethod
    def _generate_entry_id() -> str:
        return f"aud_{uuid.uuid4().hex[:12]}"

    @property
    def last_hash(self) -> str:
        if not self._entries:
            return GENESIS_HASH
        return self._entries[-1].entry_hash or GENESIS_HASH

    def record_access(
        self,
        operation: AuditOperation,
        outcome: AuditOutcome,
        field_type: Optional[FieldType] = None,
        actor_key_generation: Optional[int] = None,
        subject_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> AuditEntry:
        """Append an audit entry.

        Raises:
            IOError: If the persistent write fails (the entry is not kept).
        """
        with self._lock:
            entry = AuditEntry(
                entry_id=self._generate_entry_id(),
                operation=operation,
                field_type=field_type,
                timestamp=to_utc(self._clock()),
                actor_key_generation=actor_key_generation,
                outcome=outcome,
                subject_id=subject_id,
                detail=detail,
                previous_hash=self.last_hash,
            )
            entry.entry_hash = compute_entry_hash(entry)

            if self.ledger_file is not None:
                self._write(entry)
            self._entries.append(entry)

        logger.debug(
            f"Audit {entry.operation.value}/{entry.outcome.value} "
            f"subject={entry.subject_id} gen={entry.actor_key_generation}"
        )
        return entry

    def _write(self, entry: AuditEntry) -> None:
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"
        try:
            with open(self.ledger_file, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                if self.fsync:
                    os.fsync(f.fileno())
        except IOError as e:
            raise IOError(f"Failed to append to audit ledger: {e}") from e

    @property
    def entries(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def count(self) -> int:
        return len(self._entries)

    def get_by_id(self, entry_id: str) -> Optional[AuditEntry]:
        for entry in self.entries:
            if entry.entry_id == entry_id:
                return entry
        return None

    def query(self, filters: Optional[AuditQuery] = None) -> List[AuditEntry]:
        """Query entries by operation, field type, outcome, subject or time range."""
        return filter_entries(self.entries, filters)

    def verify_integrity(self) -> IntegrityReport:
        """Verify the in-memory hash chain."""
        return _verify_chain([e.model_dump(mode="json") for e in self.entries])

    @staticmethod
    def read_file(path: Path) -> List[AuditEntry]:
        """Parse a ledger file into entries.

        Raises:
            ValueError: If a line is not a valid entry.
        """
        path = Path(path)
        if not path.exists():
            return []
        entries = []
        with open(path, "r", encoding="utf-8") as f:
            for idx, line in enumerate(f):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(AuditEntry.model_validate_json(line))
                except ValidationError as e:
                    raise ValueError(f"Invalid audit entry at line {idx} of {path}: {e}") from e
        return entries

    @staticmethod
    def verify_file(path: Path) -> IntegrityReport:
        """Verify an on-disk ledger without loading it into a ledger instance."""
        path = Path(path)
        if path.is_dir():
            path = path / LEDGER_FILE_NAME
        if not path.exists():
            return IntegrityReport(valid=True, total_entries=0)

        raw: List[Dict[str, Any]] = []
        try:
            with open(path, "r", encoding="utf-8") as f:
                for idx, line in enumerate(f):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        raw.append(json.loads(line))
                    except json.JSONDecodeError as e:
                        return IntegrityReport(
                            valid=False,
                            total_entries=len(raw),
                            break_at_index=len(raw),
                            error_type="json_parse_error",
                            error_details=f"Failed to parse entry at line {idx}: {e}",
                        )
        except IOError as e:
            return IntegrityReport(
                valid=False,
                total_entries=0,
                error_type="io_error",
                error_details=f"Failed to read ledger: {e}",
            )

        return _verify_chain(raw)


def filter_entries(entries: List[AuditEntry], filters: Optional[AuditQuery] = None) -> List[AuditEntry]:
    """Apply an AuditQuery to a list of entries (with pagination)."""
    if filters is None:
        filters = AuditQuery()

    since = to_utc(filters.since) if filters.since else None
    until = to_utc(filters.until) if filters.until else None

    results = []
    for entry in entries:
        if filters.operation and entry.operation != filters.operation:
            continue
        if filters.field_type and entry.field_type != filters.field_type:
            continue
        if filters.outcome and entry.outcome != filters.outcome:
            continue
        if filters.subject_id and entry.subject_id != filters.subject_id:
            continue
        timestamp = to_utc(entry.timestamp)
        if since and timestamp < since:
            continue
        if until and timestamp > until:
            continue
        results.append(entry)

    return results[filters.offset : filters.offset + filters.limit]
