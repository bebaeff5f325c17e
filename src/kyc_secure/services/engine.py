"""KYC Encryption & Secure Submission Engine.

Facade the onboarding UI calls into. One engine instance per user session:

    engine = KYCEncryptionEngine(EngineConfig.from_env())
    await engine.initialize("Tr0ub4dor&3")

    ssn = await engine.encrypt_field(FieldType.SSN, "123-45-6789")
    passport = await engine.encrypt_document(
        FieldType.DOCUMENT, file_bytes, on_progress=render, file_name="passport.jpg"
    )
    proof = await engine.generate_proof({"ssn": ssn, "passport": passport})

    engine.clear_session()  # on logout

Every operation appends an audit entry. Crypto primitives run in worker
threads so the event loop is never blocked by scrypt or AES-GCM.
"""

import hmac
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, List, Optional, Sequence

from kyc_secure.schemas.audit_entry import (
    AuditEntry,
    AuditOperation,
    AuditOutcome,
    AuditQuery,
    IntegrityReport,
    RetentionRecord,
)
from kyc_secure.schemas.encrypted_record import (
    EncryptedDocument,
    EncryptedField,
    EncryptedRecord,
    FieldType,
    RecordState,
)
from kyc_secure.schemas.rotation_report import RotationReport
from kyc_secure.schemas.submission_proof import SubmissionProof
from kyc_secure.services.audit_ledger import AuditLedger
from kyc_secure.services.batch import (
    BatchCoordinator,
    BatchReport,
    DocumentItem,
    FieldItem,
    ResultCallback,
)
from kyc_secure.services.config import EngineConfig
from kyc_secure.services.crypto.document_cipher import (
    DocumentCipher,
    ProgressCallback,
    ProgressEvent,
)
from kyc_secure.services.crypto.errors import (
    DecryptionError,
    EncryptionError,
    SessionError,
)
from kyc_secure.services.crypto.field_cipher import FieldCipher
from kyc_secure.services.crypto.key_derivation import KeyMaterial, derive_key_material
from kyc_secure.services.crypto.primitives import run_primitive
from kyc_secure.services.crypto.proof import Manifest, SubmissionProofGenerator
from kyc_secure.services.crypto.secret_policy import SecretPolicy, SecretPolicyLoader
from kyc_secure.services.crypto.session import SessionContext
from kyc_secure.services.record_store import RecordStore
from kyc_secure.services.retention import RetentionRegistry
from kyc_secure.services.rotation import KeyRotationManager
from kyc_secure.utils.clock import Clock, RandomSource, secure_random, to_utc, utc_now

logger = logging.getLogger(__name__)


class _ProgressRelay:
    """Forwards progress events from a cipher thread until closed."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self._callback = callback
        self._closed = threading.Event()

    def __call__(self, event: ProgressEvent) -> None:
        if self._callback is not None and not self._closed.is_set():
            self._callback(event)

    def close(self) -> None:
        self._closed.set()


class KYCEncryptionEngine:
    """Client-side encryption engine for KYC submissions."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        ledger: Optional[AuditLedger] = None,
        policy: Optional[SecretPolicy] = None,
        random_source: RandomSource = secure_random,
        clock: Clock = utc_now,
    ):
        """Initialize the engine (no key yet; call ``initialize``).

        Args:
            config: Engine configuration (defaults if None).
            ledger: Audit ledger; one is created from config.audit_dir if None.
            policy: Secret policy; loaded from config.secret_policy_path if None.
            random_source: Secure random source for salts and nonces.
            clock: Wall-clock source.
        """
        self.config = config or EngineConfig()
        self.policy = policy or SecretPolicyLoader.load(self.config.secret_policy_path)
        self._ledger = ledger if ledger is not None else AuditLedger(
            self.config.audit_dir, clock, fsync=self.config.audit_fsync
        )
        self._random = random_source
        self._clock = clock

        self.session = SessionContext()
        self.store = RecordStore()
        self.retention = RetentionRegistry(clock)
        self.field_cipher = FieldCipher(random_source, clock)
        self.document_cipher = DocumentCipher(
            chunk_size=self.config.chunk_size,
            max_document_size=self.config.max_document_size,
            random_source=random_source,
            clock=clock,
        )
        self.proofs = SubmissionProofGenerator(
            max_age=self.config.proof_max_age,
            clock_skew=self.config.proof_clock_skew,
            clock=clock,
        )
        self.coordinator = BatchCoordinator(self.config.max_concurrency)
        self.rotation = KeyRotationManager(
            session=self.session,
            store=self.store,
            field_cipher=self.field_cipher,
            document_cipher=self.document_cipher,
            coordinator=self.coordinator,
            policy=self.policy,
            config=self.config,
            audit=self._ledger,
            random_source=random_source,
            clock=clock,
        )

    async def __aenter__(self) -> "KYCEncryptionEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.clear_session()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @property
    def _timeout(self) -> Optional[float]:
        return self.config.primitive_timeout_seconds

    def _audit(
        self,
        operation: AuditOperation,
        outcome: AuditOutcome,
        field_type: Optional[FieldType] = None,
        generation: Optional[int] = None,
        subject_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> AuditEntry:
        return self._ledger.record_access(
            operation,
            outcome,
            field_type=field_type,
            actor_key_generation=generation,
            subject_id=subject_id,
            detail=detail,
        )

    def _register(self, record: EncryptedRecord, retention: Optional[timedelta]) -> None:
        self.store.add(record)
        ttl = retention if retention is not None else self.config.default_retention
        if ttl is not None:
            self.retention.set_retention(record.record_id, ttl)

    def _deny_if_purged(self, record: EncryptedRecord) -> None:
        if self.store.is_purged(record.record_id):
            self._audit(
                AuditOperation.ACCESS_DENIED,
                AuditOutcome.FAILURE,
                field_type=record.field_type,
                subject_id=record.record_id,
                detail="record purged",
            )
            raise DecryptionError()

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self.session.is_initialized

    @property
    def generation(self) -> int:
        """Active key generation.

        Raises:
            SessionNotInitializedError: If the session has no key.
        """
        return self.session.generation

    @property
    def salt(self) -> bytes:
        """Derivation salt of the active key (persist it to re-derive next login)."""
        return self.session.active_key().salt

    async def initialize(
        self, secret: str, salt: Optional[bytes] = None, generation: int = 0
    ) -> KeyMaterial:
        """Derive the session key from a user secret.

        Args:
            secret: User secret.
            salt: The user's existing salt; a fresh one is generated if None.
            generation: Generation to resume at (after an earlier rotation).

        Returns:
            The active KeyMaterial (owned by the session).

        Raises:
            WeakSecretError: If the secret violates the policy.
            SessionError: If the session is already initialized.
            EncryptionError: If salt generation or derivation fails.
        """
        if self.session.is_initialized:
            raise SessionError("Session already initialized; clear it first")
        self.policy.check(secret)

        key = await run_primitive(
            self._derive, secret, salt, generation,
            timeout=self._timeout, error_cls=EncryptionError,
        )
        try:
            self.session.install(key)
        except SessionError:
            key.zero()
            raise
        logger.info(f"Session initialized at key generation {generation}")
        return key

    def _derive(self, secret: str, salt: Optional[bytes], generation: int) -> KeyMaterial:
        return derive_key_material(
            secret,
            salt,
            generation,
            n=self.config.kdf_n,
            r=self.config.kdf_r,
            p=self.config.kdf_p,
            salt_size=self.config.salt_size,
            policy=self.policy,
            random_source=self._random,
            clock=self._clock,
        )

    def clear_session(self) -> None:
        """Zero all in-memory key material immediately (logout)."""
        generation = self.session.generation if self.session.is_initialized else None
        self.session.clear()
        self._audit(AuditOperation.CLEAR, AuditOutcome.SUCCESS, generation=generation)

    # -------------------------------------------------------------------------
    # Fields
    # -------------------------------------------------------------------------

    async def encrypt_field(
        self,
        field_type: FieldType,
        value: str,
        retention: Optional[timedelta] = None,
    ) -> EncryptedField:
        """Encrypt one PII value under the active key.

        Raises:
            SessionNotInitializedError: If the session has no key.
            EncryptionError: If encryption fails.
        """
        field_type = FieldType(field_type)
        async with self.session.lease() as key:
            try:
                record = await run_primitive(
                    self.field_cipher.encrypt, field_type, value, key,
                    timeout=self._timeout, error_cls=EncryptionError,
                )
            except EncryptionError as e:
                self._audit(
                    AuditOperation.ENCRYPT, AuditOutcome.FAILURE,
                    field_type=field_type, generation=key.generation, detail=type(e).__name__,
                )
                raise

            # Registered under the lease so a rotation cannot miss it
            self._register(record, retention)
        self._audit(
            AuditOperation.ENCRYPT, AuditOutcome.SUCCESS,
            field_type=field_type, generation=record.key_generation, subject_id=record.record_id,
        )
        return record

    async def decrypt_field(self, record: EncryptedField) -> str:
        """Decrypt one PII value.

        Raises:
            SessionNotInitializedError: If the session has no key.
            DecryptionError: Wrong key, tampered record, or purged record.
        """
        async with self.session.lease() as key:
            self._deny_if_purged(record)
            try:
                value = await run_primitive(
                    self.field_cipher.decrypt, record, key,
                    timeout=self._timeout, error_cls=DecryptionError,
                )
            except DecryptionError:
                self._audit(
                    AuditOperation.DECRYPT, AuditOutcome.FAILURE,
                    field_type=record.field_type, generation=key.generation,
                    subject_id=record.record_id,
                )
                raise

            self._audit(
                AuditOperation.DECRYPT, AuditOutcome.SUCCESS,
                field_type=record.field_type, generation=key.generation,
                subject_id=record.record_id,
            )
        return value

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    async def encrypt_document(
        self,
        field_type: FieldType,
        data: bytes,
        on_progress: Optional[ProgressCallback] = None,
        file_name: str = "",
        retention: Optional[timedelta] = None,
    ) -> EncryptedDocument:
        """Encrypt a document in chunks, reporting progress after each chunk.

        ``on_progress`` is called from the worker thread running the cipher.
        A timed-out cipher thread cannot be stopped and may keep running, but
        no progress event reaches ``on_progress`` once this call has returned
        or raised.

        Raises:
            SessionNotInitializedError: If the session has no key.
            DocumentTooLargeError: If the document exceeds max_document_size.
            EncryptionError: If encryption fails.
        """
        field_type = FieldType(field_type)
        relay = _ProgressRelay(on_progress)
        async with self.session.lease() as key:
            try:
                doc = await run_primitive(
                    self.document_cipher.encrypt, field_type, data, key, file_name, relay,
                    timeout=self._timeout, error_cls=EncryptionError,
                )
            except EncryptionError as e:
                self._audit(
                    AuditOperation.ENCRYPT, AuditOutcome.FAILURE,
                    field_type=field_type, generation=key.generation, detail=type(e).__name__,
                )
                raise
            finally:
                relay.close()

            self._register(doc, retention)
        self._audit(
            AuditOperation.ENCRYPT, AuditOutcome.SUCCESS,
            field_type=field_type, generation=doc.key_generation, subject_id=doc.document_id,
            detail=f"{doc.total_size} bytes, {doc.chunk_count} chunk(s)",
        )
        return doc

    async def decrypt_document(
        self,
        doc: EncryptedDocument,
        on_progress: Optional[ProgressCallback] = None,
    ) -> bytes:
        """Decrypt and reassemble a document.

        ``on_progress`` is called from the worker thread and, as for
        ``encrypt_document``, stops receiving events once this call returns
        or raises.

        Raises:
            SessionNotInitializedError: If the session has no key.
            DecryptionError: On the first failing chunk (``chunk_index`` set),
                or if the document was purged.
        """
        relay = _ProgressRelay(on_progress)
        async with self.session.lease() as key:
            self._deny_if_purged(doc)
            try:
                data = await run_primitive(
                    self.document_cipher.decrypt, doc, key, relay,
                    timeout=self._timeout, error_cls=DecryptionError,
                )
            except DecryptionError as e:
                detail = f"chunk {e.chunk_index}" if e.chunk_index is not None else None
                self._audit(
                    AuditOperation.DECRYPT, AuditOutcome.FAILURE,
                    field_type=doc.field_type, generation=key.generation,
                    subject_id=doc.document_id, detail=detail,
                )
                raise
            finally:
                relay.close()

            self._audit(
                AuditOperation.DECRYPT, AuditOutcome.SUCCESS,
                field_type=doc.field_type, generation=key.generation, subject_id=doc.document_id,
            )
        return data

    async def track_records(
        self,
        records: Sequence[EncryptedRecord],
        retention: Optional[timedelta] = None,
    ) -> List[str]:
        """Adopt records encrypted in an earlier session so rotation migrates them.

        Each record must authenticate under a key this session holds; it is
        decrypted once to prove that, and the plaintext is discarded. Ids the
        store already holds are skipped.

        Returns:
            Ids newly added to the store.

        Raises:
            SessionNotInitializedError: If the session has no key.
            DecryptionError: If a record was purged, belongs to a generation
                this session does not hold, or fails authentication. Records
                before it in ``records`` stay tracked.
        """
        tracked: List[str] = []
        async with self.session.lease():
            for record in records:
                self._deny_if_purged(record)
                if record.record_id in self.store:
                    continue

                key = self.session.key_for_generation(record.key_generation)
                try:
                    if key is None:
                        raise DecryptionError()
                    if isinstance(record, EncryptedDocument):
                        await run_primitive(
                            self.document_cipher.decrypt, record, key, None,
                            timeout=self._timeout, error_cls=DecryptionError,
                        )
                    else:
                        await run_primitive(
                            self.field_cipher.decrypt, record, key,
                            timeout=self._timeout, error_cls=DecryptionError,
                        )
                except DecryptionError:
                    self._audit(
                        AuditOperation.TRACK, AuditOutcome.FAILURE,
                        field_type=record.field_type, generation=record.key_generation,
                        subject_id=record.record_id,
                    )
                    raise

                self._register(record, retention)
                tracked.append(record.record_id)
                self._audit(
                    AuditOperation.TRACK, AuditOutcome.SUCCESS,
                    field_type=record.field_type, generation=record.key_generation,
                    subject_id=record.record_id,
                )

        if tracked:
            logger.info(f"Tracking {len(tracked)} restored record(s)")
        return tracked

    async def find_duplicate_documents(self, data: bytes) -> List[str]:
        """Return ids of stored documents whose plaintext equals ``data``.

        Compares keyed fingerprints, so no document is decrypted.
        """
        async with self.session.lease() as key:
            fingerprint = await run_primitive(
                self.document_cipher.fingerprint, bytes(data), key,
                timeout=self._timeout, error_cls=EncryptionError,
            )
            generation = key.generation

        matches = []
        for record in self.store.active_records():
            if not isinstance(record, EncryptedDocument) or record.key_generation != generation:
                continue
            if hmac.compare_digest(record.fingerprint, fingerprint):
                matches.append(record.document_id)
        return matches

    # -------------------------------------------------------------------------
    # Rotation
    # -------------------------------------------------------------------------

    async def rotate(self, new_secret: str) -> RotationReport:
        """Rotate to a key derived from ``new_secret`` and migrate every record.

        Raises:
            WeakSecretError: If the new secret violates the policy.
            RotationAbortedError: If any record failed; the old key stays active.
        """
        return await self.rotation.rotate(new_secret)

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    async def _encrypt_item(self, item: Any) -> EncryptedRecord:
        if isinstance(item, FieldItem):
            return await self.encrypt_field(item.field_type, item.value)
        if isinstance(item, DocumentItem):
            return await self.encrypt_document(item.field_type, item.data, file_name=item.file_name)
        raise EncryptionError(f"Unsupported batch item: {type(item).__name__}")

    async def _decrypt_item(self, record: Any) -> Any:
        if isinstance(record, EncryptedField):
            return await self.decrypt_field(record)
        if isinstance(record, EncryptedDocument):
            return await self.decrypt_document(record)
        raise DecryptionError()

    async def encrypt_batch(
        self,
        items: Sequence[Any],
        on_result: Optional[ResultCallback] = None,
    ) -> BatchReport:
        """Encrypt FieldItem/DocumentItem inputs concurrently; one result per item."""
        return await self.coordinator.run(items, self._encrypt_item, on_result)

    async def decrypt_batch(
        self,
        records: Sequence[EncryptedRecord],
        on_result: Optional[ResultCallback] = None,
    ) -> BatchReport:
        """Decrypt records concurrently; one result per record."""
        return await self.coordinator.run(records, self._decrypt_item, on_result)

    # -------------------------------------------------------------------------
    # Proofs
    # -------------------------------------------------------------------------

    async def generate_proof(self, manifest: Manifest) -> SubmissionProof:
        """Seal an encrypted manifest before submission.

        Raises:
            SessionNotInitializedError: If the session has no key.
            EncryptionError: If the manifest cannot be sealed.
        """
        async with self.session.lease() as key:
            proof = await run_primitive(
                self.proofs.generate, manifest, key,
                timeout=self._timeout, error_cls=EncryptionError,
            )
        self._audit(
            AuditOperation.SEAL, AuditOutcome.SUCCESS,
            generation=proof.key_generation, detail=f"{proof.entry_count} entries",
        )
        return proof

    async def verify_proof(
        self,
        manifest: Manifest,
        proof: SubmissionProof,
        now: Optional[datetime] = None,
    ) -> bool:
        """Return True only for an unmodified, fresh manifest/proof pair."""
        async with self.session.lease() as key:
            valid = await run_primitive(
                self.proofs.verify, manifest, proof, key, now,
                timeout=self._timeout, error_cls=DecryptionError,
            )
            generation = key.generation
        self._audit(
            AuditOperation.VERIFY,
            AuditOutcome.SUCCESS if valid else AuditOutcome.FAILURE,
            generation=generation,
        )
        return valid

    # -------------------------------------------------------------------------
    # Records, retention, audit
    # -------------------------------------------------------------------------

    def get_record(self, record_id: str) -> Optional[EncryptedRecord]:
        """Current ciphertext for a record id (None if unknown or purged)."""
        return self.store.get(record_id)

    def record_state(self, record_id: str) -> Optional[RecordState]:
        return self.store.state(record_id)

    @property
    def records(self) -> List[EncryptedRecord]:
        return self.store.active_records()

    def set_retention(self, subject_id: str, ttl: timedelta) -> RetentionRecord:
        """Expire a stored record ``ttl`` from now.

        Raises:
            KeyError: If the subject is unknown or already purged.
        """
        if subject_id not in self.store or self.store.is_purged(subject_id):
            raise KeyError(subject_id)
        return self.retention.set_retention(subject_id, ttl)

    async def sweep_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Purge expired records and any key material they alone referenced.

        Called periodically by an external scheduler.

        Returns:
            Purged subject ids.
        """
        now = to_utc(now or self._clock())
        purged: List[str] = []
        async with self.session.exclusive():
            for record in self.retention.expired(now):
                subject_id = record.subject_id
                stored = self.store.get(subject_id)
                if self.store.purge(subject_id):
                    purged.append(subject_id)
                    self._audit(
                        AuditOperation.PURGE, AuditOutcome.SUCCESS,
                        field_type=stored.field_type if stored else None,
                        generation=stored.key_generation if stored else None,
                        subject_id=subject_id,
                    )
                self.retention.remove(subject_id)
            self.session.zero_unreferenced(self.store.referenced_generations())

        if purged:
            logger.info(f"Retention sweep purged {len(purged)} record(s)")
        return purged

    @property
    def ledger(self) -> AuditLedger:
        return self._ledger

    def record_access(
        self,
        operation: AuditOperation,
        field_type: Optional[FieldType],
        outcome: AuditOutcome,
        subject_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> AuditEntry:
        """Append an audit entry for an access made outside the engine."""
        generation = self.session.generation if self.session.is_initialized else None
        return self._audit(operation, outcome, field_type, generation, subject_id, detail)

    def audit_entries(self, filters: Optional[AuditQuery] = None) -> List[AuditEntry]:
        return self._ledger.query(filters)

    def verify_audit(self) -> IntegrityReport:
        return self._ledger.verify_integrity()
