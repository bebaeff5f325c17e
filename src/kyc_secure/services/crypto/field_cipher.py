"""Field-level encryption for KYC PII values.

AES-256-GCM with a fresh 96-bit nonce per call. The nonce is generated
inside the cipher and never accepted from the caller.

Associated data: kyc-field/v1|<record_id>|<field_type>|<generation>

On decryption the generation in the associated data is taken from the key
being used, not from the record, so decrypting with a key of any other
generation fails tag verification. Every failure surfaces as the same
generic DecryptionError.
"""

import logging
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from kyc_secure.schemas.encrypted_record import EncryptedField, FieldType, generate_record_id
from kyc_secure.services.crypto.errors import DecryptionError, EncryptionError, SessionError
from kyc_secure.services.crypto.key_derivation import KeyMaterial, KeyPurpose
from kyc_secure.utils.clock import Clock, RandomSource, secure_random, utc_now

logger = logging.getLogger(__name__)

NONCE_SIZE = 12  # 96 bits (standard for GCM)
AUTH_TAG_SIZE = 16  # 128 bits


def field_associated_data(record_id: str, field_type: FieldType, generation: int) -> bytes:
    return f"kyc-field/v1|{record_id}|{field_type.value}|{generation}".encode("utf-8")


class FieldCipher:
    """Encrypts and decrypts individual PII strings.

    Example:
        >>> cipher = FieldCipher()
        >>> record = cipher.encrypt(FieldType.SSN, "123-45-6789", key)
        >>> cipher.decrypt(record, key)
        '123-45-6789'
    """

    def __init__(self, random_source: RandomSource = secure_random, clock: Clock = utc_now):
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

    def encrypt(
        self,
        field_type: FieldType,
        plaintext: str,
        key: KeyMaterial,
        record_id: Optional[str] = None,
    ) -> EncryptedField:
        """Encrypt a PII value.

        Args:
            field_type: KYC field category.
            plaintext: Value to encrypt.
            key: Active key material.
            record_id: Logical record id; generated if None (rotation reuses it).

        Returns:
            EncryptedField bound to the key's generation.

        Raises:
            EncryptionError: If the input is not a string, the key is retired,
                or the primitive fails.
        """
        if not isinstance(plaintext, str):
            raise EncryptionError(
                f"Field value must be a string, got {type(plaintext).__name__}"
            )
        field_type = FieldType(field_type)
        record_id = record_id or generate_record_id()

        try:
            subkey = key.subkey(KeyPurpose.FIELD)
        except SessionError as e:
            raise EncryptionError(str(e)) from e

        nonce = self._nonce()
        aad = field_associated_data(record_id, field_type, key.generation)
        try:
            ciphertext = AESGCM(subkey).encrypt(nonce, plaintext.encode("utf-8"), aad)
        except Exception as e:
            raise EncryptionError(f"Encryption failed: {e}") from e

        logger.debug(f"Encrypted {field_type.value} field {record_id} (gen {key.generation})")
        return EncryptedField(
            record_id=record_id,
            field_type=field_type,
            ciphertext=ciphertext,
            nonce=nonce,
            key_generation=key.generation,
            created_at=self._clock(),
        )

    def decrypt(self, record: EncryptedField, key: KeyMaterial) -> str:
        """Decrypt a PII value.

        Raises:
            DecryptionError: On any failure (wrong key, tampering, retired key).
        """
        try:
            subkey = key.subkey(KeyPurpose.FIELD)
            aad = field_associated_data(record.record_id, FieldType(record.field_type), key.generation)
            plaintext = AESGCM(subkey).decrypt(record.nonce, record.ciphertext, aad)
            return plaintext.decode("utf-8")
        except (InvalidTag, SessionError, ValueError, TypeError):
            # One generic error for every cause
            raise DecryptionError() from None
