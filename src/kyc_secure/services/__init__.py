"""Engine services: batch coordination, record store, rotation, audit and retention.

Usage:
    from kyc_secure.services import KYCEncryptionEngine, EngineConfig

    engine = KYCEncryptionEngine(EngineConfig(max_concurrency=4))
    await engine.initialize(secret)
"""

from kyc_secure.services.audit_ledger import GENESIS_HASH, AuditLedger
from kyc_secure.services.batch import (
    BatchCoordinator,
    BatchReport,
    BatchResult,
    DocumentItem,
    FieldItem,
)
from kyc_secure.services.config import EngineConfig
from kyc_secure.services.engine import KYCEncryptionEngine
from kyc_secure.services.interfaces import AuditReader, AuditSink, ExpirySweeper
from kyc_secure.services.record_store import RecordStore
from kyc_secure.services.retention import RetentionRegistry
from kyc_secure.services.rotation import KeyRotationManager

__all__ = [
    # Config
    "EngineConfig",
    # Engine
    "KYCEncryptionEngine",
    # Batch
    "BatchCoordinator",
    "BatchReport",
    "BatchResult",
    "FieldItem",
    "DocumentItem",
    # Records and rotation
    "RecordStore",
    "KeyRotationManager",
    # Audit and retention
    "GENESIS_HASH",
    "AuditLedger",
    "RetentionRegistry",
    # Protocols
    "AuditSink",
    "AuditReader",
    "ExpirySweeper",
]
