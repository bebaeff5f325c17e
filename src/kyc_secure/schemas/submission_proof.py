"""Submission proof schema."""

from datetime import datetime

from pydantic import BaseModel, Field


class SubmissionProof(BaseModel):
    """Hash + signature + timestamp binding an encrypted manifest.

    Serialized by the networking layer alongside the encrypted payload.
    """

    payload_hash: str = Field(..., description="Hex SHA-256 of the canonical manifest")
    signature: str = Field(..., description="Hex HMAC-SHA256 under the proof subkey")
    timestamp: datetime = Field(..., description="When the proof was generated (UTC)")
    key_generation: int = Field(..., ge=0, description="Generation of the signing key")
    entry_count: int = Field(default=0, ge=0, description="Number of manifest entries")

    model_config = {"extra": "forbid"}
