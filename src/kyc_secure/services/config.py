"""Configuration for the KYC encryption engine.

Work factors, chunk sizes, concurrency and proof windows are fixed per
deployment and documented here rather than inferred at runtime.
"""

from datetime import timedelta
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, field_validator


class EngineConfig(BaseModel):
    """Configuration for the KYC encryption engine.

    Attributes:
        kdf_n: scrypt CPU/memory cost (power of two)
        kdf_r: scrypt block size
        kdf_p: scrypt parallelization
        salt_size: Derivation salt size in bytes
        chunk_size: Plaintext chunk size for documents
        max_document_size: Largest accepted document in bytes
        max_concurrency: Concurrent items per batch
        proof_max_age_seconds: Submission proofs older than this fail verification
        proof_clock_skew_seconds: Tolerated future skew on proof timestamps
        primitive_timeout_seconds: Timeout for a single primitive call (None = no timeout)
        audit_dir: Directory for the persistent audit ledger (None = memory only)
        audit_fsync: fsync the ledger file after every entry
        secret_policy_path: Override for the secret policy YAML
        default_retention_days: Retention applied to new records (None = no expiry)

    Example:
        >>> config = EngineConfig(chunk_size=64 * 1024, max_concurrency=4)
    """

    kdf_n: int = 2**15
    kdf_r: int = 8
    kdf_p: int = 1
    salt_size: int = 16

    chunk_size: int = 64 * 1024
    max_document_size: int = 50 * 1024 * 1024

    max_concurrency: int = 8

    proof_max_age_seconds: int = 15 * 60
    proof_clock_skew_seconds: int = 30

    primitive_timeout_seconds: Optional[float] = 30.0

    audit_dir: Optional[Path] = None
    audit_fsync: bool = True
    secret_policy_path: Optional[Path] = None
    default_retention_days: Optional[int] = None

    model_config = {"extra": "forbid"}

    @field_validator("kdf_n")
    @classmethod
    def check_kdf_n(cls, v: int) -> int:
        """scrypt requires N to be a power of two greater than 1."""
        if v < 2 or v & (v - 1):
            raise ValueError(f"kdf_n must be a power of two > 1, got {v}")
        return v

    @field_validator("kdf_r", "kdf_p", "chunk_size", "max_document_size", "max_concurrency")
    @classmethod
    def check_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @field_validator("salt_size")
    @classmethod
    def check_salt_size(cls, v: int) -> int:
        if v < 16:
            raise ValueError(f"salt_size must be at least 16 bytes, got {v}")
        return v

    @field_validator("audit_dir", "secret_policy_path", mode="before")
    @classmethod
    def convert_path(cls, v):
        """Convert string paths to Path objects."""
        if isinstance(v, str):
            return Path(v)
        return v

    @property
    def proof_max_age(self) -> timedelta:
        return timedelta(seconds=self.proof_max_age_seconds)

    @property
    def proof_clock_skew(self) -> timedelta:
        return timedelta(seconds=self.proof_clock_skew_seconds)

    @property
    def default_retention(self) -> Optional[timedelta]:
        if self.default_retention_days is None:
            return None
        return timedelta(days=self.default_retention_days)

    @classmethod
    def from_env(cls, prefix: str = "KYC_ENGINE_") -> "EngineConfig":
        """Create config from environment variables.

        Environment variables:
            {prefix}KDF_N, {prefix}KDF_R, {prefix}KDF_P: scrypt parameters
            {prefix}CHUNK_SIZE: Document chunk size in bytes
            {prefix}MAX_DOCUMENT_SIZE: Maximum document size in bytes
            {prefix}MAX_CONCURRENCY: Batch concurrency cap
            {prefix}PROOF_MAX_AGE_SECONDS: Proof replay window
            {prefix}PRIMITIVE_TIMEOUT_SECONDS: Per-call timeout
            {prefix}AUDIT_DIR: Persistent audit ledger directory
            {prefix}AUDIT_FSYNC: "false"/"0"/"no" disables per-entry fsync
            {prefix}SECRET_POLICY_PATH: Secret policy YAML
            {prefix}DEFAULT_RETENTION_DAYS: Default retention period

        Args:
            prefix: Environment variable prefix (default: KYC_ENGINE_)

        Returns:
            EngineConfig with values from environment
        """
        import os

        int_fields = {
            "KDF_N": "kdf_n",
            "KDF_R": "kdf_r",
            "KDF_P": "kdf_p",
            "SALT_SIZE": "salt_size",
            "CHUNK_SIZE": "chunk_size",
            "MAX_DOCUMENT_SIZE": "max_document_size",
            "MAX_CONCURRENCY": "max_concurrency",
            "PROOF_MAX_AGE_SECONDS": "proof_max_age_seconds",
            "PROOF_CLOCK_SKEW_SECONDS": "proof_clock_skew_seconds",
            "DEFAULT_RETENTION_DAYS": "default_retention_days",
        }

        kwargs = {}
        for env_name, attr in int_fields.items():
            value = os.getenv(f"{prefix}{env_name}")
            if value:
                kwargs[attr] = int(value)

        timeout = os.getenv(f"{prefix}PRIMITIVE_TIMEOUT_SECONDS")
        if timeout:
            kwargs["primitive_timeout_seconds"] = (
                None if timeout.lower() == "none" else float(timeout)
            )

        audit_dir = os.getenv(f"{prefix}AUDIT_DIR")
        if audit_dir:
            kwargs["audit_dir"] = Path(audit_dir)

        audit_fsync = os.getenv(f"{prefix}AUDIT_FSYNC")
        if audit_fsync:
            kwargs["audit_fsync"] = audit_fsync.strip().lower() not in ("0", "false", "no", "off")

        policy_path = os.getenv(f"{prefix}SECRET_POLICY_PATH")
        if policy_path:
            kwargs["secret_policy_path"] = Path(policy_path)

        return cls(**kwargs)
