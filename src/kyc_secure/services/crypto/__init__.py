"""Cryptographic core of the KYC engine.

Key derivation, secret policy, session key state, field and document
ciphers, and submission proofs.

Note: modules that use the `cryptography` library are lazy-loaded through
__getattr__, so importing the error types or the secret policy does not pull
in OpenSSL bindings.

Usage:
    from kyc_secure.services.crypto import (
        DecryptionError,
        FieldCipher,
        derive_key_material,
    )

    key = derive_key_material("Tr0ub4dor&3")
    record = FieldCipher().encrypt(FieldType.SSN, "123-45-6789", key)
"""

from kyc_secure.services.crypto.errors import (
    BatchPartialFailure,
    CryptoError,
    DecryptionError,
    DocumentTooLargeError,
    EncryptionError,
    RecordStateError,
    RotationAbortedError,
    SessionError,
    SessionNotInitializedError,
    WeakSecretError,
)
from kyc_secure.services.crypto.secret_policy import SecretPolicy, SecretPolicyLoader

# Lazy-loaded symbols (to avoid importing cryptography at module level)
_LAZY_SYMBOLS = {
    "KeyMaterial": "key_derivation",
    "KeyPurpose": "key_derivation",
    "derive_key_material": "key_derivation",
    "generate_salt": "key_derivation",
    "FieldCipher": "field_cipher",
    "DocumentCipher": "document_cipher",
    "ProgressEvent": "document_cipher",
    "SubmissionProofGenerator": "proof",
    "canonicalize": "proof",
    "SessionContext": "session",
    "run_primitive": "primitives",
}


def __getattr__(name: str):
    """Lazy-load cryptography-backed modules on first access."""
    module_name = _LAZY_SYMBOLS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    import importlib

    module = importlib.import_module(f"{__name__}.{module_name}")
    return getattr(module, name)


__all__ = [
    # Errors
    "CryptoError",
    "WeakSecretError",
    "EncryptionError",
    "DocumentTooLargeError",
    "DecryptionError",
    "RotationAbortedError",
    "BatchPartialFailure",
    "SessionError",
    "SessionNotInitializedError",
    "RecordStateError",
    # Secret policy
    "SecretPolicy",
    "SecretPolicyLoader",
    # Lazy
    *_LAZY_SYMBOLS,
]
