"""
KYC Secure - client-side encryption engine for KYC onboarding.

Derives per-user keys, encrypts PII fields and identity documents before
they leave the client, rotates keys without data loss, seals submissions
with tamper-evident proofs, and keeps a hash-chained audit ledger.
"""

__version__ = "0.1.0"

from kyc_secure.schemas import FieldType
from kyc_secure.services.config import EngineConfig

__all__ = [
    "EngineConfig",
    "FieldType",
]
