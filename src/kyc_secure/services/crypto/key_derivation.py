"""Key derivation for KYC session keys.

A user secret plus a per-user salt is stretched with scrypt (memory-hard)
into a 256-bit master key. Purpose-specific subkeys for fields, documents,
submission proofs and fingerprints are then derived with HKDF-SHA256, so
each purpose is cryptographically independent of the others.

Design:
- Determinism: the same (secret, salt, work factor) always yields the same key
- Salt uniqueness: a fresh 16-byte salt per user keeps keys unlinkable
- Zeroing: key bytes live in bytearrays and are overwritten on retirement
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from kyc_secure.services.crypto.errors import EncryptionError, SessionError
from kyc_secure.services.crypto.secret_policy import SecretPolicy, SecretPolicyLoader
from kyc_secure.utils.clock import Clock, RandomSource, secure_random, utc_now

logger = logging.getLogger(__name__)


# Constants
KEY_SIZE = 32  # 256 bits
DEFAULT_SALT_SIZE = 16  # 128 bits
DEFAULT_SCRYPT_N = 2**15
DEFAULT_SCRYPT_R = 8
DEFAULT_SCRYPT_P = 1


class KeyPurpose(str, Enum):
    """HKDF context labels for purpose-separated subkeys."""

    FIELD = "kyc-secure/v1/field"
    DOCUMENT = "kyc-secure/v1/document"
    PROOF = "kyc-secure/v1/proof"
    FINGERPRINT = "kyc-secure/v1/fingerprint"


class KeyMaterial:
    """Symmetric key material for one key generation.

    Owned by the session context; ciphers hold a reference, never a copy.
    Once zeroed, every subkey request raises SessionError.

    Attributes:
        generation: Monotonically increasing key generation number
        salt: Derivation salt (not secret)
        created_at: When the key was derived
    """

    def __init__(
        self,
        key_bytes: bytes,
        generation: int,
        salt: bytes,
        created_at: Optional[datetime] = None,
    ):
        if len(key_bytes) != KEY_SIZE:
            raise ValueError(f"Key must be {KEY_SIZE} bytes, got {len(key_bytes)} bytes")
        if generation < 0:
            raise ValueError(f"Key generation must be >= 0, got {generation}")

        self._key = bytearray(key_bytes)
        self._subkeys: Dict[KeyPurpose, bytearray] = {}
        self._zeroed = False
        self.generation = generation
        self.salt = bytes(salt)
        self.created_at = created_at or utc_now()

    @property
    def key_id(self) -> str:
        return f"gen-{self.generation}"

    @property
    def is_zeroed(self) -> bool:
        return self._zeroed

    def key_bytes(self) -> bytes:
        """Return the master key bytes.

        Raises:
            SessionError: If the key has been zeroed.
        """
        if self._zeroed:
            raise SessionError(f"Key generation {self.generation} has been zeroed")
        return bytes(self._key)

    def subkey(self, purpose: KeyPurpose) -> bytes:
        """Return the HKDF-derived subkey for a purpose (cached).

        Raises:
            SessionError: If the key has been zeroed.
        """
        if self._zeroed:
            raise SessionError(f"Key generation {self.generation} has been zeroed")

        cached = self._subkeys.get(purpose)
        if cached is None:
            hkdf = HKDF(
                algorithm=hashes.SHA256(),
                length=KEY_SIZE,
                salt=self.salt,
                info=purpose.value.encode("ascii"),
            )
            cached = bytearray(hkdf.derive(bytes(self._key)))
            self._subkeys[purpose] = cached
        return bytes(cached)

    def zero(self) -> None:
        """Overwrite the master key and all cached subkeys with zeros."""
        for buf in [self._key, *self._subkeys.values()]:
            for i in range(len(buf)):
                buf[i] = 0
        self._subkeys.clear()
        self._zeroed = True
        logger.debug(f"Zeroed key material for generation {self.generation}")

    def __repr__(self) -> str:
        state = "zeroed" if self._zeroed else "live"
        return f"KeyMaterial(generation={self.generation}, {state})"


def generate_salt(size: int = DEFAULT_SALT_SIZE, random_source: RandomSource = secure_random) -> bytes:
    """Generate a fresh derivation salt.

    Raises:
        EncryptionError: If the random source fails.
    """
    try:
        salt = random_source(size)
    except Exception as e:
        raise EncryptionError(f"Random source unavailable: {e}") from e
    if len(salt) != size:
        raise EncryptionError(f"Random source returned {len(salt)} bytes, expected {size}")
    return salt


def derive_key_bytes(
    secret: str,
    salt: bytes,
    n: int = DEFAULT_SCRYPT_N,
    r: int = DEFAULT_SCRYPT_R,
    p: int = DEFAULT_SCRYPT_P,
) -> bytes:
    """Stretch a secret into 32 key bytes with scrypt.

    Args:
        secret: User secret (already checked against the secret policy).
        salt: Per-user derivation salt.
        n: scrypt CPU/memory cost.
        r: scrypt block size.
        p: scrypt parallelization.

    Returns:
        32 bytes of key material.
    """
    kdf = Scrypt(salt=salt, length=KEY_SIZE, n=n, r=r, p=p)
    return kdf.derive(secret.encode("utf-8"))


def derive_key_material(
    secret: str,
    salt: Optional[bytes] = None,
    generation: int = 0,
    *,
    n: int = DEFAULT_SCRYPT_N,
    r: int = DEFAULT_SCRYPT_R,
    p: int = DEFAULT_SCRYPT_P,
    salt_size: int = DEFAULT_SALT_SIZE,
    policy: Optional[SecretPolicy] = None,
    random_source: RandomSource = secure_random,
    clock: Clock = utc_now,
) -> KeyMaterial:
    """Check the secret and derive KeyMaterial for a generation.

    No network or disk I/O happens here beyond the (cached) policy load.

    Args:
        secret: User secret.
        salt: Existing salt for this user; a fresh one is generated if None.
        generation: Key generation number for the result.
        n, r, p: scrypt work factor.
        salt_size: Size of a freshly generated salt.
        policy: Secret policy; the packaged default if None.
        random_source: Secure random source for salt generation.
        clock: Wall-clock source for created_at.

    Returns:
        KeyMaterial for the given generation.

    Raises:
        WeakSecretError: If the secret violates the policy.
        EncryptionError: If salt generation fails.
    """
    (policy or SecretPolicyLoader.load()).check(secret)

    if salt is None:
        salt = generate_salt(salt_size, random_source)

    key_bytes = derive_key_bytes(secret, salt, n=n, r=r, p=p)
    material = KeyMaterial(key_bytes, generation=generation, salt=salt, created_at=clock())
    logger.info(f"Derived key material for generation {generation} (scrypt n={n}, r={r}, p={p})")
    return material
