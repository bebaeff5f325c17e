"""
Pytest fixtures for the KYC encryption engine tests.
Fast scrypt work factor and small chunks keep the suite quick.
"""

from datetime import datetime, timedelta, timezone

import pytest

from kyc_secure.services.config import EngineConfig
from kyc_secure.services.crypto.key_derivation import derive_key_material
from kyc_secure.services.crypto.secret_policy import SecretPolicyLoader
from kyc_secure.services.engine import KYCEncryptionEngine

FAST_KDF_N = 2**10
TEST_SECRET = "Tr0ub4dor&3"
NEW_SECRET = "N3wSecret!9"
FIXED_SALT = bytes(range(16))


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def clear_policy_cache():
    """Each test starts from the packaged secret policy."""
    SecretPolicyLoader.clear_cache()
    yield
    SecretPolicyLoader.clear_cache()


@pytest.fixture
def fast_config() -> EngineConfig:
    return EngineConfig(
        kdf_n=FAST_KDF_N,
        chunk_size=16,
        max_document_size=4096,
        max_concurrency=4,
        primitive_timeout_seconds=10.0,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def engine(fast_config) -> KYCEncryptionEngine:
    return KYCEncryptionEngine(fast_config)


@pytest.fixture
def make_key():
    """Factory for KeyMaterial with the fast work factor."""

    def _make(secret: str = TEST_SECRET, salt: bytes = FIXED_SALT, generation: int = 0):
        return derive_key_material(secret, salt, generation, n=FAST_KDF_N)

    return _make


@pytest.fixture
def key(make_key):
    return make_key()
