"""Protocols between the engine and its collaborators.

The audit ledger is split into a sink (append) and a reader (query and
verify) so callers that only record access need not depend on querying.
ExpirySweeper is what an external scheduler calls periodically.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from kyc_secure.schemas.audit_entry import (
        AuditEntry,
        AuditOperation,
        AuditOutcome,
        AuditQuery,
        IntegrityReport,
    )
    from kyc_secure.schemas.encrypted_record import FieldType


@runtime_checkable
class AuditSink(Protocol):
    """Protocol for append-only audit recording.

    Implementations must:
    - Chain each entry to its predecessor via previous_hash
    - Never store plaintext or key bytes
    """

    def record_access(
        self,
        operation: "AuditOperation",
        outcome: "AuditOutcome",
        field_type: Optional["FieldType"] = None,
        actor_key_generation: Optional[int] = None,
        subject_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> "AuditEntry":
        """Append an audit entry and return it with hashes populated."""
        ...


@runtime_checkable
class AuditReader(Protocol):
    """Protocol for querying and verifying audit entries."""

    def query(self, filters: Optional["AuditQuery"] = None) -> List["AuditEntry"]:
        """Return entries matching the filters (all entries if None)."""
        ...

    def verify_integrity(self) -> "IntegrityReport":
        """Walk the hash chain and report the first break, if any."""
        ...


@runtime_checkable
class ExpirySweeper(Protocol):
    """Protocol for components an external scheduler sweeps."""

    async def sweep_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Purge expired subjects and return their ids."""
        ...
