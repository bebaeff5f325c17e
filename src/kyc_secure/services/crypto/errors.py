"""Exception hierarchy for the KYC encryption engine.

User-facing handling (owned by the calling UI layer) maps these to:
- WeakSecretError: re-prompt for a stronger secret
- EncryptionError: transient, try again
- DecryptionError: re-enter password or report data corruption
- RotationAbortedError: contact support, old key is still intact
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from kyc_secure.schemas.rotation_report import RotationReport
    from kyc_secure.services.batch import BatchResult


class CryptoError(Exception):
    """Base exception for cryptographic errors."""

    pass


class WeakSecretError(CryptoError):
    """Secret rejected by the secret policy."""

    def __init__(self, message: str, reasons: Optional[List[str]] = None):
        super().__init__(message)
        self.reasons = reasons or []


class EncryptionError(CryptoError):
    """Error during encryption (primitive failure, random source, timeout)."""

    pass


class DocumentTooLargeError(EncryptionError):
    """Document exceeds the configured maximum size."""

    pass


class DecryptionError(CryptoError):
    """Authentication failure: wrong key or tampered data.

    The message is deliberately generic. For documents, ``chunk_index``
    names the first chunk that failed verification.
    """

    def __init__(self, message: str = "Decryption failed", chunk_index: Optional[int] = None):
        super().__init__(message)
        self.chunk_index = chunk_index


class RotationAbortedError(CryptoError):
    """One or more records failed during key rotation.

    The session is left on the old key; ``report`` names the failed records.
    """

    def __init__(self, report: "RotationReport"):
        failed = ", ".join(f.record_id for f in report.failures) or "none"
        super().__init__(
            f"Key rotation {report.old_generation} -> {report.new_generation} "
            f"aborted; failed records: {failed}"
        )
        self.report = report


class BatchPartialFailure(CryptoError):
    """Some batch items failed. Successful results are still available."""

    def __init__(self, failed: List["BatchResult"], total: int):
        super().__init__(f"{len(failed)} of {total} batch items failed")
        self.failed = failed
        self.total = total


class SessionError(CryptoError):
    """Invalid session state (e.g. initializing twice)."""

    pass


class SessionNotInitializedError(SessionError):
    """Operation attempted before initialize() or after clear_session()."""

    pass


class RecordStateError(ValueError):
    """Illegal record lifecycle transition."""

    pass
