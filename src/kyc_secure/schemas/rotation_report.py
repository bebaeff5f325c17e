"""Key rotation report schema."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from kyc_secure.schemas.encrypted_record import FieldType


class RotationStatus(str, Enum):
    """Final status of a rotation attempt."""

    COMPLETED = "completed"
    ABORTED = "aborted"


class RotationStage(str, Enum):
    """Step at which a record failed during rotation."""

    DECRYPT = "decrypt"
    ENCRYPT = "encrypt"


class RotationFailure(BaseModel):
    """A record that could not be migrated."""

    record_id: str = Field(..., description="Field record id or document id")
    field_type: FieldType = Field(..., description="Field category of the record")
    stage: RotationStage = Field(..., description="Where the record failed")
    error: str = Field(..., description="Error class name and message")


class RotationReport(BaseModel):
    """Outcome of a key rotation attempt."""

    status: RotationStatus
    old_generation: int
    new_generation: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    migrated_record_ids: List[str] = Field(default_factory=list)
    failures: List[RotationFailure] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == RotationStatus.COMPLETED
