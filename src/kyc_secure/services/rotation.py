"""Key rotation with all-or-nothing migration.

Steps:
1. Check the new secret against the policy
2. Take the session's exclusive gate (new leases wait, in-flight ones drain)
3. Derive generation N+1 from the new secret with a fresh salt
4. Decrypt every active record under its key and re-encrypt under N+1,
   building new records with the same ids
5. Commit synchronously: swap all records, activate N+1, zero N

If any record fails in step 4 (or the rotation is cancelled), nothing is
swapped: every record stays under generation N, the old key stays live, and
the new key is zeroed.
"""

import logging
from typing import Dict, Optional

from kyc_secure.schemas.audit_entry import AuditOperation, AuditOutcome
from kyc_secure.schemas.encrypted_record import EncryptedDocument, EncryptedRecord
from kyc_secure.schemas.rotation_report import (
    RotationFailure,
    RotationReport,
    RotationStage,
    RotationStatus,
)
from kyc_secure.services.batch import BatchCoordinator
from kyc_secure.services.config import EngineConfig
from kyc_secure.services.crypto.document_cipher import DocumentCipher
from kyc_secure.services.crypto.errors import (
    DecryptionError,
    EncryptionError,
    RotationAbortedError,
)
from kyc_secure.services.crypto.field_cipher import FieldCipher
from kyc_secure.services.crypto.key_derivation import KeyMaterial, derive_key_material
from kyc_secure.services.crypto.primitives import run_primitive
from kyc_secure.services.crypto.secret_policy import SecretPolicy
from kyc_secure.services.crypto.session import SessionContext
from kyc_secure.services.interfaces import AuditSink
from kyc_secure.services.record_store import RecordStore
from kyc_secure.utils.clock import Clock, RandomSource, secure_random, utc_now

logger = logging.getLogger(__name__)


class _StageFailure(Exception):
    """Wraps a per-record failure with the rotation stage it happened in."""

    def __init__(self, stage: RotationStage, error: BaseException):
        super().__init__(f"{stage.value}: {type(error).__name__}")
        self.stage = stage
        self.error = error


class KeyRotationManager:
    """Rotates a session to a new secret, migrating every stored record."""

    def __init__(
        self,
        session: SessionContext,
        store: RecordStore,
        field_cipher: FieldCipher,
        document_cipher: DocumentCipher,
        coordinator: BatchCoordinator,
        policy: SecretPolicy,
        config: Optional[EngineConfig] = None,
        audit: Optional[AuditSink] = None,
        random_source: RandomSource = secure_random,
        clock: Clock = utc_now,
    ):
        self.session = session
        self.store = store
        self.field_cipher = field_cipher
        self.document_cipher = document_cipher
        self.coordinator = coordinator
        self.policy = policy
        self.config = config or EngineConfig()
        self.audit = audit
        self._random = random_source
        self._clock = clock

    def _derive(self, secret: str, generation: int) -> KeyMaterial:
        return derive_key_material(
            secret,
            None,
            generation,
            n=self.config.kdf_n,
            r=self.config.kdf_r,
            p=self.config.kdf_p,
            salt_size=self.config.salt_size,
            policy=self.policy,
            random_source=self._random,
            clock=self._clock,
        )

    async def _migrate(self, record: EncryptedRecord, new_key: KeyMaterial) -> EncryptedRecord:
        timeout = self.config.primitive_timeout_seconds
        old_key = self.session.key_for_generation(record.key_generation)

        try:
            if old_key is None:
                raise DecryptionError()
            if isinstance(record, EncryptedDocument):
                plaintext = await run_primitive(
                    self.document_cipher.decrypt, record, old_key,
                    timeout=timeout, error_cls=DecryptionError,
                )
            else:
                plaintext = await run_primitive(
                    self.field_cipher.decrypt, record, old_key,
                    timeout=timeout, error_cls=DecryptionError,
                )
        except Exception as e:
            raise _StageFailure(RotationStage.DECRYPT, e) from e

        try:
            if isinstance(record, EncryptedDocument):
                return await run_primitive(
                    self._encrypt_document, record, plaintext, new_key,
                    timeout=timeout, error_cls=EncryptionError,
                )
            return await run_primitive(
                self.field_cipher.encrypt, record.field_type, plaintext, new_key, record.record_id,
                timeout=timeout, error_cls=EncryptionError,
            )
        except Exception as e:
            raise _StageFailure(RotationStage.ENCRYPT, e) from e

    def _encrypt_document(
        self, record: EncryptedDocument, data: bytes, new_key: KeyMaterial
    ) -> EncryptedDocument:
        return self.document_cipher.encrypt(
            record.field_type,
            data,
            new_key,
            file_name=record.file_name,
            document_id=record.document_id,
        )

    def _record_audit(self, report: RotationReport, outcome: AuditOutcome, detail: str) -> None:
        if self.audit is None:
            return
        self.audit.record_access(
            AuditOperation.ROTATE,
            outcome,
            actor_key_generation=report.old_generation,
            detail=detail,
        )

    async def rotate(self, new_secret: str) -> RotationReport:
        """Rotate the session key to one derived from ``new_secret``.

        Returns:
            RotationReport with status COMPLETED.

        Raises:
            WeakSecretError: If the new secret violates the policy.
            SessionNotInitializedError: If the session has no key.
            RotationAbortedError: If any record failed to migrate. The session
                is left exactly as it was before the call.
        """
        self.policy.check(new_secret)
        self.session.active_key()

        async with self.session.exclusive():
            old_key = self.session.active_key()
            report = RotationReport(
                status=RotationStatus.ABORTED,
                old_generation=old_key.generation,
                new_generation=old_key.generation + 1,
                started_at=self._clock(),
            )
            logger.info(
                f"Key rotation {report.old_generation} -> {report.new_generation} started"
            )

            new_key = await run_primitive(
                self._derive, new_secret, report.new_generation,
                timeout=self.config.primitive_timeout_seconds, error_cls=EncryptionError,
            )

            committed = False
            try:
                records = self.store.active_records()

                async def migrate(record: EncryptedRecord) -> EncryptedRecord:
                    return await self._migrate(record, new_key)

                batch = await self.coordinator.run(records, migrate)

                for result in batch.failed:
                    record = result.item
                    error = result.error
                    stage = RotationStage.DECRYPT
                    if isinstance(error, _StageFailure):
                        stage, error = error.stage, error.error
                    report.failures.append(
                        RotationFailure(
                            record_id=record.record_id,
                            field_type=record.field_type,
                            stage=stage,
                            error=f"{type(error).__name__}: {error}",
                        )
                    )

                report.completed_at = self._clock()
                if report.failures:
                    logger.error(
                        f"Key rotation aborted: {len(report.failures)} of {len(records)} "
                        f"record(s) failed; staying on generation {report.old_generation}"
                    )
                    self._record_audit(
                        report, AuditOutcome.FAILURE, f"{len(report.failures)} record(s) failed"
                    )
                    raise RotationAbortedError(report)

                # Commit: no awaits from here on
                replacements: Dict[str, EncryptedRecord] = {
                    r.item.record_id: r.value for r in batch.succeeded
                }
                self.store.replace_all(replacements)
                self.session.activate(new_key)
                committed = True
                self.session.zero_unreferenced(self.store.referenced_generations())

                report.status = RotationStatus.COMPLETED
                report.migrated_record_ids = sorted(replacements)
                logger.info(
                    f"Key rotation {report.old_generation} -> {report.new_generation} completed "
                    f"({len(replacements)} record(s) migrated)"
                )
                self._record_audit(
                    report, AuditOutcome.SUCCESS, f"{len(replacements)} record(s) migrated"
                )
                return report
            finally:
                if not committed:
                    new_key.zero()
