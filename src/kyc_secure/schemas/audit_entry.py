"""Audit and retention schemas.

Audit entries form a SHA-256 hash chain (same scheme as a tamper-evident
decision ledger): each entry stores the hash of its predecessor, and the
chain starts at GENESIS.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from kyc_secure.schemas.encrypted_record import FieldType
from kyc_secure.utils.clock import utc_now


class AuditOperation(str, Enum):
    """Operations recorded in the audit ledger."""

    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"
    ROTATE = "rotate"
    ACCESS_DENIED = "access_denied"
    PURGE = "purge"
    SEAL = "seal"
    VERIFY = "verify"
    CLEAR = "clear"
    TRACK = "track"


class AuditOutcome(str, Enum):
    """Outcome of an audited operation."""

    SUCCESS = "success"
    FAILURE = "failure"


class AuditEntry(BaseModel):
    """A single append-only audit entry. Never carries plaintext."""

    entry_id: str = Field(..., description="Unique identifier (aud_<12hex>)")
    operation: AuditOperation = Field(..., description="Audited operation")
    field_type: Optional[FieldType] = Field(None, description="Field category, if any")
    timestamp: datetime = Field(default_factory=utc_now, description="When it happened")
    actor_key_generation: Optional[int] = Field(
        None, description="Generation of the key used for the operation"
    )
    outcome: AuditOutcome = Field(..., description="success or failure")
    subject_id: Optional[str] = Field(None, description="Record or document id")
    detail: Optional[str] = Field(None, description="Non-sensitive detail")

    previous_hash: str = Field(default="GENESIS", description="Hash of previous entry")
    entry_hash: Optional[str] = Field(None, description="SHA-256 of this entry")


class AuditQuery(BaseModel):
    """Query parameters for searching the audit ledger."""

    operation: Optional[AuditOperation] = Field(None, description="Filter by operation")
    field_type: Optional[FieldType] = Field(None, description="Filter by field type")
    outcome: Optional[AuditOutcome] = Field(None, description="Filter by outcome")
    subject_id: Optional[str] = Field(None, description="Filter by subject")
    since: Optional[datetime] = Field(None, description="Entries at or after this time")
    until: Optional[datetime] = Field(None, description="Entries at or before this time")
    limit: int = Field(default=100, ge=1, le=10000, description="Max results")
    offset: int = Field(default=0, ge=0, description="Results offset")


class IntegrityReport(BaseModel):
    """Report from verifying the audit hash chain."""

    valid: bool = Field(..., description="Whether the chain is valid")
    total_entries: int = Field(..., description="Total entries checked")
    break_at_index: Optional[int] = Field(None, description="Index where chain breaks")
    break_at_entry_id: Optional[str] = Field(None, description="Entry id where chain breaks")
    error_type: Optional[str] = Field(
        None, description="'chain_break', 'hash_mismatch', 'json_parse_error', 'io_error'"
    )
    error_details: Optional[str] = Field(None, description="Detailed error message")
    verified_at: datetime = Field(default_factory=utc_now)


class RetentionRecord(BaseModel):
    """Expiry metadata for an encrypted record."""

    subject_id: str = Field(..., description="Field record id or document id")
    expires_at: datetime = Field(..., description="When the subject must be purged")
    created_at: datetime = Field(default_factory=utc_now)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
