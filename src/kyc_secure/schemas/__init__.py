"""Data models for encrypted records, proofs, audit entries and reports."""

from kyc_secure.schemas.audit_entry import (
    AuditEntry,
    AuditOperation,
    AuditOutcome,
    AuditQuery,
    IntegrityReport,
    RetentionRecord,
)
from kyc_secure.schemas.encrypted_record import (
    EncryptedChunk,
    EncryptedDocument,
    EncryptedField,
    EncryptedRecord,
    FieldType,
    RecordState,
    record_from_dict,
)
from kyc_secure.schemas.rotation_report import (
    RotationFailure,
    RotationReport,
    RotationStage,
    RotationStatus,
)
from kyc_secure.schemas.submission_proof import SubmissionProof

__all__ = [
    "AuditEntry",
    "AuditOperation",
    "AuditOutcome",
    "AuditQuery",
    "IntegrityReport",
    "RetentionRecord",
    "EncryptedChunk",
    "EncryptedDocument",
    "EncryptedField",
    "EncryptedRecord",
    "FieldType",
    "RecordState",
    "record_from_dict",
    "RotationFailure",
    "RotationReport",
    "RotationStage",
    "RotationStatus",
    "SubmissionProof",
]
