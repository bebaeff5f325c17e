"""Chunked encryption for identity documents.

Each chunk is sealed independently with AES-256-GCM under the document
subkey. The associated data of every chunk binds:

    kyc-doc/v1|<document_id>|<field_type>|<generation>|<total_size>|<chunk_count>|<index>

so chunks cannot be reordered, dropped, duplicated, or spliced in from
another document without failing tag verification.

Progress is reported through a caller-supplied sink, invoked synchronously
between chunks with a monotonically increasing percentage.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from kyc_secure.schemas.encrypted_record import (
    EncryptedChunk,
    EncryptedDocument,
    FieldType,
    generate_document_id,
)
from kyc_secure.services.crypto.errors import (
    DecryptionError,
    DocumentTooLargeError,
    EncryptionError,
    SessionError,
)
from kyc_secure.services.crypto.field_cipher import NONCE_SIZE
from kyc_secure.services.crypto.key_derivation import KeyMaterial, KeyPurpose
from kyc_secure.utils.clock import Clock, RandomSource, secure_random, utc_now

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_MAX_DOCUMENT_SIZE = 50 * 1024 * 1024


@dataclass(frozen=True)
class ProgressEvent:
    """Progress after one chunk."""

    document_id: str
    chunk_index: int
    chunk_count: int
    percent: float


ProgressCallback = Callable[[ProgressEvent], None]


def chunk_associated_data(
    document_id: str,
    field_type: FieldType,
    generation: int,
    total_size: int,
    chunk_count: int,
    index: int,
) -> bytes:
    return (
        f"kyc-doc/v1|{document_id}|{field_type.value}|{generation}"
        f"|{total_size}|{chunk_count}|{index}"
    ).encode("utf-8")


def _emit(on_progress: Optional[ProgressCallback], document_id: str, index: int, count: int) -> None:
    if on_progress is None:
        return
    on_progress(
        ProgressEvent(
            document_id=document_id,
            chunk_index=index,
            chunk_count=count,
            percent=round((index + 1) * 100.0 / count, 2),
        )
    )


class DocumentCipher:
    """Encrypts and decrypts file byte buffers in fixed-size chunks.

    A zero-byte file becomes one empty chunk so it round-trips like any other.
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_document_size: int = DEFAULT_MAX_DOCUMENT_SIZE,
        random_source: RandomSource = secure_random,
        clock: Clock = utc_now,
    ):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
        self.chunk_size = chunk_size
        self.max_document_size = max_document_size
        self._random = random_source
        self._clock = clock

    def _nonce(self) -> bytes:
        try:
            nonce = self._random(NONCE_SIZE)
        except Exception as e:
            raise EncryptionError(f"Random source unavailable: {e}") from e
        if len(nonce) != NONCE_SIZE:
            raise EncryptionError(
                f"Random source returned {len(nonce)} bytes, expected {NONCE_SIZE}"
            )
        return nonce

    def fingerprint(self, data: bytes, key: KeyMaterial) -> bytes:
        """Keyed HMAC-SHA256 of the plaintext (content id without content)."""
        return hmac.new(key.subkey(KeyPurpose.FINGERPRINT), data, hashlib.sha256).digest()

    def encrypt(
        self,
        field_type: FieldType,
        data: bytes,
        key: KeyMaterial,
        file_name: str = "",
        on_progress: Optional[ProgressCallback] = None,
        document_id: Optional[str] = None,
    ) -> EncryptedDocument:
        """Encrypt a document.

        Args:
            field_type: KYC field category (usually DOCUMENT).
            data: File bytes.
            key: Active key material.
            file_name: Original file name (metadata only).
            on_progress: Optional sink called after each chunk.
            document_id: Logical id; generated if None (rotation reuses it).

        Returns:
            EncryptedDocument with chunks 0..chunk_count-1.

        Raises:
            DocumentTooLargeError: If data exceeds max_document_size.
            EncryptionError: On any other failure.
        """
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise EncryptionError(f"Document must be bytes, got {type(data).__name__}")
        data = bytes(data)
        total_size = len(data)
        if total_size > self.max_document_size:
            raise DocumentTooLargeError(
                f"Document is {total_size} bytes; maximum is {self.max_document_size}"
            )

        field_type = FieldType(field_type)
        document_id = document_id or generate_document_id()
        chunk_count = max(1, -(-total_size // self.chunk_size))

        try:
            aead = AESGCM(key.subkey(KeyPurpose.DOCUMENT))
            fingerprint = self.fingerprint(data, key)
        except SessionError as e:
            raise EncryptionError(str(e)) from e

        chunks: List[EncryptedChunk] = []
        for index in range(chunk_count):
            start = index * self.chunk_size
            plaintext = data[start:start + self.chunk_size]
            nonce = self._nonce()
            aad = chunk_associated_data(
                document_id, field_type, key.generation, total_size, chunk_count, index
            )
            try:
                ciphertext = aead.encrypt(nonce, plaintext, aad)
            except Exception as e:
                raise EncryptionError(f"Encryption failed at chunk {index}: {e}") from e
            chunks.append(
                EncryptedChunk(
                    index=index,
                    ciphertext=ciphertext,
                    nonce=nonce,
                    key_generation=key.generation,
                )
            )
            _emit(on_progress, document_id, index, chunk_count)

        logger.debug(
            f"Encrypted document {document_id}: {total_size} bytes in {chunk_count} chunk(s) "
            f"(gen {key.generation})"
        )
        return EncryptedDocument(
            document_id=document_id,
            field_type=field_type,
            file_name=file_name,
            total_size=total_size,
            chunk_count=chunk_count,
            chunks=tuple(chunks),
            key_generation=key.generation,
            fingerprint=fingerprint,
            created_at=self._clock(),
        )

    def _ordered_chunks(self, doc: EncryptedDocument) -> List[EncryptedChunk]:
        """Sort chunks by index and reject gaps, duplicates and count mismatches."""
        if doc.chunk_count < 1:
            raise DecryptionError(chunk_index=0)
        ordered = sorted(doc.chunks, key=lambda c: c.index)
        for expected, chunk in enumerate(ordered):
            if chunk.index != expected:
                # Duplicate or gap: the first expected index that is wrong
                raise DecryptionError(chunk_index=expected)
        if len(ordered) != doc.chunk_count:
            raise DecryptionError(chunk_index=min(len(ordered), doc.chunk_count))
        return ordered

    def decrypt(
        self,
        doc: EncryptedDocument,
        key: KeyMaterial,
        on_progress: Optional[ProgressCallback] = None,
    ) -> bytes:
        """Decrypt and reassemble a document.

        Every chunk tag is verified before the plaintext is returned. On the
        first failure nothing is returned and ``chunk_index`` names the chunk.

        Raises:
            DecryptionError: On any failure.
        """
        chunks = self._ordered_chunks(doc)

        try:
            aead = AESGCM(key.subkey(KeyPurpose.DOCUMENT))
            field_type = FieldType(doc.field_type)
        except (SessionError, ValueError):
            raise DecryptionError(chunk_index=0) from None

        parts: List[bytes] = []
        for chunk in chunks:
            aad = chunk_associated_data(
                doc.document_id,
                field_type,
                key.generation,
                doc.total_size,
                doc.chunk_count,
                chunk.index,
            )
            try:
                parts.append(aead.decrypt(chunk.nonce, chunk.ciphertext, aad))
            except (InvalidTag, ValueError, TypeError):
                parts.clear()
                raise DecryptionError(chunk_index=chunk.index) from None
            _emit(on_progress, doc.document_id, chunk.index, doc.chunk_count)

        data = b"".join(parts)
        parts.clear()
        if len(data) != doc.total_size:
            raise DecryptionError(chunk_index=doc.chunk_count - 1)

        if doc.fingerprint:
            try:
                expected = self.fingerprint(data, key)
            except SessionError:
                raise DecryptionError() from None
            if not hmac.compare_digest(expected, doc.fingerprint):
                raise DecryptionError()

        return data
