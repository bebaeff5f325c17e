"""Schemas for encrypted KYC records.

Key concepts:
- FieldType: closed set of KYC field categories, stored as authenticated metadata
- EncryptedField: a single encrypted PII value
- EncryptedChunk / EncryptedDocument: a chunked, encrypted identity document
- RecordState: lifecycle of a record (created -> active -> rotated/purged)

Records are immutable. Rotation produces new records with the same id and a
new key generation rather than editing ciphertext in place.
"""

import base64
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Tuple, Union

from kyc_secure.utils.clock import to_utc, utc_now


class FieldType(str, Enum):
    """KYC field categories."""

    FULL_NAME = "full_name"
    DATE_OF_BIRTH = "date_of_birth"
    NATIONAL_ID = "national_id"
    SSN = "national_id"  # alias
    TAX_ID = "tax_id"
    ADDRESS = "address"
    PHONE = "phone"
    EMAIL = "email"
    DOCUMENT = "document"


class RecordState(str, Enum):
    """Lifecycle state of a stored record version."""

    CREATED = "created"
    ACTIVE = "active"
    ROTATED = "rotated"
    PURGED = "purged"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


def generate_record_id() -> str:
    """Generate a unique id for an encrypted field."""
    return f"fld_{secrets.token_hex(8)}"


def generate_document_id() -> str:
    """Generate a unique id for an encrypted document."""
    return f"doc_{secrets.token_hex(8)}"


@dataclass(frozen=True)
class EncryptedField:
    """A single PII value encrypted with AES-256-GCM.

    Attributes:
        record_id: Logical record identifier (stable across rotations)
        field_type: KYC field category (authenticated, not secret)
        ciphertext: AEAD ciphertext including the 16-byte tag
        nonce: 12-byte nonce generated inside the cipher
        key_generation: Generation of the key that produced the ciphertext
        created_at: When this ciphertext was produced
    """

    record_id: str
    field_type: FieldType
    ciphertext: bytes
    nonce: bytes
    key_generation: int
    created_at: datetime = field(default_factory=utc_now)

    @property
    def subject_id(self) -> str:
        return self.record_id

    def to_dict(self) -> Dict:
        """Convert to a JSON-safe dictionary."""
        return {
            "kind": "field",
            "record_id": self.record_id,
            "field_type": self.field_type.value,
            "ciphertext": _b64(self.ciphertext),
            "nonce": _b64(self.nonce),
            "key_generation": self.key_generation,
            "created_at": to_utc(self.created_at).isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "EncryptedField":
        """Create from dictionary."""
        return cls(
            record_id=data["record_id"],
            field_type=FieldType(data["field_type"]),
            ciphertext=_unb64(data["ciphertext"]),
            nonce=_unb64(data["nonce"]),
            key_generation=int(data["key_generation"]),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(frozen=True)
class EncryptedChunk:
    """One encrypted chunk of a document."""

    index: int
    ciphertext: bytes
    nonce: bytes
    key_generation: int

    def to_dict(self) -> Dict:
        return {
            "index": self.index,
            "ciphertext": _b64(self.ciphertext),
            "nonce": _b64(self.nonce),
            "key_generation": self.key_generation,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "EncryptedChunk":
        return cls(
            index=int(data["index"]),
            ciphertext=_unb64(data["ciphertext"]),
            nonce=_unb64(data["nonce"]),
            key_generation=int(data["key_generation"]),
        )


@dataclass(frozen=True)
class EncryptedDocument:
    """An identity document encrypted as an ordered sequence of chunks.

    Attributes:
        document_id: Logical document identifier (stable across rotations)
        field_type: KYC field category (usually DOCUMENT)
        file_name: Original file name supplied by the upload layer
        total_size: Plaintext size in bytes
        chunk_count: Number of chunks (at least 1, even for empty files)
        chunks: Encrypted chunks, index 0..chunk_count-1
        key_generation: Generation of the key that produced the chunks
        fingerprint: Keyed HMAC of the plaintext, for integrity and dedupe
        created_at: When this ciphertext was produced
    """

    document_id: str
    field_type: FieldType
    file_name: str
    total_size: int
    chunk_count: int
    chunks: Tuple[EncryptedChunk, ...]
    key_generation: int
    fingerprint: bytes = b""
    created_at: datetime = field(default_factory=utc_now)

    @property
    def subject_id(self) -> str:
        return self.document_id

    @property
    def record_id(self) -> str:
        return self.document_id

    def to_dict(self) -> Dict:
        """Convert to a JSON-safe dictionary."""
        return {
            "kind": "document",
            "document_id": self.document_id,
            "field_type": self.field_type.value,
            "file_name": self.file_name,
            "total_size": self.total_size,
            "chunk_count": self.chunk_count,
            "chunks": [c.to_dict() for c in self.chunks],
            "key_generation": self.key_generation,
            "fingerprint": _b64(self.fingerprint),
            "created_at": to_utc(self.created_at).isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "EncryptedDocument":
        """Create from dictionary."""
        chunks: List[EncryptedChunk] = [
            EncryptedChunk.from_dict(c) for c in data.get("chunks", [])
        ]
        return cls(
            document_id=data["document_id"],
            field_type=FieldType(data["field_type"]),
            file_name=data["file_name"],
            total_size=int(data["total_size"]),
            chunk_count=int(data["chunk_count"]),
            chunks=tuple(chunks),
            key_generation=int(data["key_generation"]),
            fingerprint=_unb64(data.get("fingerprint", "")),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


EncryptedRecord = Union[EncryptedField, EncryptedDocument]


def record_from_dict(data: Dict) -> EncryptedRecord:
    """Deserialize either record kind from its ``to_dict`` form."""
    kind = data.get("kind")
    if kind == "field":
        return EncryptedField.from_dict(data)
    if kind == "document":
        return EncryptedDocument.from_dict(data)
    raise ValueError(f"Unknown record kind: {kind!r}")
