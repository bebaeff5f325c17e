"""Submission proofs for encrypted manifests.

A manifest is the set of encrypted records about to be submitted, either
a plain sequence of records or a mapping of labels to records (or lists of
records). Scalar mapping values are carried as non-secret metadata, and an
empty list is kept as an empty metadata value so its label still counts.

Canonical form:
- One entry per record, sorted by (label, record_id)
- Ciphertext is represented by its SHA-256 digest, nonces in base64
- JSON with sorted keys and compact separators

payload_hash = SHA-256(canonical bytes)
signature    = HMAC-SHA256(proof subkey, "payload_hash|timestamp|generation")
"""

import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from kyc_secure.schemas.encrypted_record import EncryptedDocument, EncryptedField
from kyc_secure.schemas.submission_proof import SubmissionProof
from kyc_secure.services.crypto.errors import EncryptionError, SessionError
from kyc_secure.services.crypto.key_derivation import KeyMaterial, KeyPurpose
from kyc_secure.utils.clock import Clock, timestamp_token, to_utc, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(minutes=15)
DEFAULT_CLOCK_SKEW = timedelta(seconds=30)
MANIFEST_VERSION = 1

Manifest = Union[Sequence[Any], Mapping[str, Any]]
_SCALARS = (str, int, float, bool, type(None))


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _nonce(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _record_entry(label: str, record: Union[EncryptedField, EncryptedDocument]) -> Dict[str, Any]:
    if isinstance(record, EncryptedField):
        return {
            "label": label,
            "kind": "field",
            "record_id": record.record_id,
            "field_type": record.field_type.value,
            "key_generation": record.key_generation,
            "nonce": _nonce(record.nonce),
            "ciphertext_sha256": _digest(record.ciphertext),
        }
    return {
        "label": label,
        "kind": "document",
        "record_id": record.document_id,
        "field_type": record.field_type.value,
        "key_generation": record.key_generation,
        "file_name": record.file_name,
        "total_size": record.total_size,
        "chunk_count": record.chunk_count,
        "fingerprint": record.fingerprint.hex(),
        "chunks": [
            {
                "index": c.index,
                "nonce": _nonce(c.nonce),
                "ciphertext_sha256": _digest(c.ciphertext),
            }
            for c in sorted(record.chunks, key=lambda c: c.index)
        ],
    }


def _is_record(value: Any) -> bool:
    return isinstance(value, (EncryptedField, EncryptedDocument))


def _collect(manifest: Manifest) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    entries: List[Dict[str, Any]] = []
    metadata: Dict[str, Any] = {}

    if isinstance(manifest, Mapping):
        for label, value in manifest.items():
            label = str(label)
            if _is_record(value):
                entries.append(_record_entry(label, value))
            elif isinstance(value, _SCALARS):
                metadata[label] = value
            elif isinstance(value, (list, tuple)) and not value:
                metadata[label] = []
            elif isinstance(value, Sequence) and all(_is_record(v) for v in value):
                entries.extend(_record_entry(label, v) for v in value)
            else:
                raise TypeError(f"Unsupported manifest value for {label!r}: {type(value).__name__}")
    elif isinstance(manifest, Sequence) and not isinstance(manifest, (str, bytes)):
        for value in manifest:
            if not _is_record(value):
                raise TypeError(f"Unsupported manifest item: {type(value).__name__}")
            entries.append(_record_entry("", value))
    else:
        raise TypeError(f"Manifest must be a sequence or mapping, got {type(manifest).__name__}")

    entries.sort(key=lambda e: (e["label"], e["record_id"]))
    return entries, metadata


def canonicalize(manifest: Manifest) -> bytes:
    """Serialize a manifest deterministically, independent of construction order."""
    entries, metadata = _collect(manifest)
    payload = {"version": MANIFEST_VERSION, "entries": entries, "metadata": metadata}
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode(
        "ascii"
    )


def _sign(subkey: bytes, payload_hash: str, timestamp: datetime, generation: int) -> str:
    message = f"{payload_hash}|{timestamp_token(timestamp)}|{generation}".encode("ascii")
    return hmac.new(subkey, message, hashlib.sha256).hexdigest()


class SubmissionProofGenerator:
    """Seals manifests and verifies seals against tampering and replay."""

    def __init__(
        self,
        max_age: timedelta = DEFAULT_MAX_AGE,
        clock_skew: timedelta = DEFAULT_CLOCK_SKEW,
        clock: Clock = utc_now,
    ):
        self.max_age = max_age
        self.clock_skew = clock_skew
        self._clock = clock

    def generate(self, manifest: Manifest, key: KeyMaterial) -> SubmissionProof:
        """Produce a SubmissionProof for the manifest under the given key.

        Raises:
            EncryptionError: If the manifest cannot be canonicalized or the key is retired.
        """
        try:
            canonical = canonicalize(manifest)
            subkey = key.subkey(KeyPurpose.PROOF)
        except (TypeError, ValueError, SessionError) as e:
            raise EncryptionError(f"Cannot seal manifest: {e}") from e

        payload_hash = _digest(canonical)
        timestamp = to_utc(self._clock())
        entry_count = len(_collect(manifest)[0])
        proof = SubmissionProof(
            payload_hash=payload_hash,
            signature=_sign(subkey, payload_hash, timestamp, key.generation),
            timestamp=timestamp,
            key_generation=key.generation,
            entry_count=entry_count,
        )
        logger.debug(f"Sealed manifest with {entry_count} entries (gen {key.generation})")
        return proof

    def verify(
        self,
        manifest: Manifest,
        proof: SubmissionProof,
        key: KeyMaterial,
        now: Optional[datetime] = None,
    ) -> bool:
        """Return True only for an unmodified, fresh manifest/proof pair.

        False on a hash or signature mismatch, a key of another generation,
        a retired key, a proof older than max_age, or a timestamp further in
        the future than clock_skew.
        """
        if key.is_zeroed or proof.key_generation != key.generation:
            return False

        now = to_utc(now or self._clock())
        timestamp = to_utc(proof.timestamp)
        age = now - timestamp
        if age > self.max_age or age < -self.clock_skew:
            logger.debug(f"Proof rejected: age {age.total_seconds():.1f}s outside window")
            return False

        try:
            payload_hash = _digest(canonicalize(manifest))
            expected = _sign(key.subkey(KeyPurpose.PROOF), proof.payload_hash, timestamp, key.generation)
        except (TypeError, ValueError, SessionError):
            return False

        hash_ok = hmac.compare_digest(payload_hash.encode("ascii"), proof.payload_hash.encode("utf-8"))
        signature_ok = hmac.compare_digest(expected.encode("ascii"), proof.signature.encode("utf-8"))
        return hash_ok and signature_ok
