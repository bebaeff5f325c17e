"""End-to-end flows through the engine: onboarding, rotation, submission."""

import dataclasses
import json

import pytest

from kyc_secure.schemas.audit_entry import AuditOperation, AuditOutcome, AuditQuery
from kyc_secure.schemas.encrypted_record import FieldType, record_from_dict
from kyc_secure.services.audit_ledger import AuditLedger
from kyc_secure.services.batch import DocumentItem, FieldItem
from kyc_secure.services.config import EngineConfig
from kyc_secure.services.crypto.errors import (
    BatchPartialFailure,
    DecryptionError,
    EncryptionError,
    RotationAbortedError,
)
from kyc_secure.services.crypto.field_cipher import FieldCipher
from kyc_secure.services.crypto.key_derivation import derive_key_material
from kyc_secure.services.engine import KYCEncryptionEngine


class TestOnboardingScenario:
    """A user onboards, stores an SSN, rotates their secret, and the old secret stops working."""

    @pytest.mark.asyncio
    async def test_ssn_survives_rotation(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        old_salt = engine.salt

        record = await engine.encrypt_field(FieldType.SSN, "123-45-6789")

        # What the networking layer would ship and later hand back
        wire = json.dumps(record.to_dict())
        restored = record_from_dict(json.loads(wire))
        assert restored == record
        assert "123-45-6789" not in wire
        assert await engine.decrypt_field(restored) == "123-45-6789"

        report = await engine.rotate("N3wSecret!9")
        assert report.succeeded

        migrated = engine.get_record(record.record_id)
        assert migrated.key_generation == 1
        assert await engine.decrypt_field(migrated) == "123-45-6789"

        # Re-deriving the old key from the old secret is useless against migrated data
        old_key = derive_key_material("Tr0ub4dor&3", old_salt, 0, n=2**10)
        with pytest.raises(DecryptionError):
            FieldCipher().decrypt(migrated, old_key)

        # Forcing the old generation on the new ciphertext fails as well
        old_key_at_new_generation = derive_key_material("Tr0ub4dor&3", old_salt, 1, n=2**10)
        with pytest.raises(DecryptionError):
            FieldCipher().decrypt(migrated, old_key_at_new_generation)


class TestRotationAtomicity:
    @pytest.mark.asyncio
    async def test_mixed_records_all_or_nothing(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        fields = [
            await engine.encrypt_field(FieldType.FULL_NAME, "Jane Doe"),
            await engine.encrypt_field(FieldType.DATE_OF_BIRTH, "1990-04-01"),
            await engine.encrypt_field(FieldType.ADDRESS, "Bahnhofstrasse 1, Zurich"),
        ]
        doc = await engine.encrypt_document(FieldType.DOCUMENT, b"\x89PNG" + bytes(200))

        # Corrupt the last chunk of the document
        chunks = list(doc.chunks)
        chunks[-1] = dataclasses.replace(chunks[-1], nonce=bytes(12))
        engine.store._slots[doc.document_id].record = dataclasses.replace(doc, chunks=tuple(chunks))

        with pytest.raises(RotationAbortedError) as exc_info:
            await engine.rotate("N3wSecret!9")

        assert [f.record_id for f in exc_info.value.report.failures] == [doc.document_id]
        assert engine.generation == 0
        for original in fields:
            assert engine.get_record(original.record_id) == original
        assert [await engine.decrypt_field(f) for f in fields] == [
            "Jane Doe",
            "1990-04-01",
            "Bahnhofstrasse 1, Zurich",
        ]


class TestBatchSubmission:
    @pytest.mark.asyncio
    async def test_one_bad_item_does_not_sink_the_batch(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        items = [
            FieldItem(FieldType.FULL_NAME, "Jane Doe"),
            FieldItem(FieldType.EMAIL, "jane@example.com"),
            FieldItem(FieldType.SSN, 12345),
            FieldItem(FieldType.PHONE, "+41 79 000 00 00"),
            DocumentItem(FieldType.DOCUMENT, b"passport scan", file_name="passport.jpg"),
        ]
        delivered = []

        report = await engine.encrypt_batch(items, on_result=delivered.append)

        assert len(report) == 5
        assert [r.index for r in report] == [0, 1, 2, 3, 4]
        assert [r.index for r in report.failed] == [2]
        assert isinstance(report[2].error, EncryptionError)
        assert sorted(r.index for r in delivered) == [0, 1, 2, 3, 4]
        assert len(engine.records) == 4

        with pytest.raises(BatchPartialFailure) as exc_info:
            report.raise_for_failures()
        assert exc_info.value.total == 5

        decrypted = await engine.decrypt_batch([r.value for r in report.succeeded])
        assert [r.value for r in decrypted] == [
            "Jane Doe",
            "jane@example.com",
            "+41 79 000 00 00",
            b"passport scan",
        ]

    @pytest.mark.asyncio
    async def test_batch_respects_concurrency_cap(self):
        engine = KYCEncryptionEngine(EngineConfig(kdf_n=2**10, max_concurrency=1))
        await engine.initialize("Tr0ub4dor&3")

        report = await engine.encrypt_batch(
            [FieldItem(FieldType.EMAIL, f"user{i}@example.com") for i in range(6)]
        )
        assert report.all_succeeded
        assert len({r.value.record_id for r in report}) == 6


class TestPersistentLedger:
    @pytest.mark.asyncio
    async def test_full_flow_leaves_a_verifiable_trail(self, fast_config, tmp_path):
        config = fast_config.model_copy(update={"audit_dir": tmp_path / "audit"})

        async with KYCEncryptionEngine(config) as engine:
            await engine.initialize("Tr0ub4dor&3")
            ssn = await engine.encrypt_field(FieldType.SSN, "123-45-6789")
            passport = await engine.encrypt_document(
                FieldType.DOCUMENT, b"passport scan", file_name="passport.jpg"
            )
            await engine.rotate("N3wSecret!9")

            manifest = {
                "ssn": engine.get_record(ssn.record_id),
                "passport": engine.get_record(passport.document_id),
                "country": "CH",
            }
            proof = await engine.generate_proof(manifest)
            assert await engine.verify_proof(manifest, proof)

        report = AuditLedger.verify_file(tmp_path / "audit")
        assert report.valid
        # encrypt x2, rotate, seal, verify, clear
        assert report.total_entries == 6

        # A later session appends to the same chain
        reopened = AuditLedger(tmp_path / "audit")
        assert len(reopened) == 6
        reopened.record_access(AuditOperation.DECRYPT, AuditOutcome.SUCCESS, field_type=FieldType.SSN)
        assert AuditLedger.verify_file(tmp_path / "audit").valid

        rotations = reopened.query(AuditQuery(operation=AuditOperation.ROTATE))
        assert [e.actor_key_generation for e in rotations] == [0]
