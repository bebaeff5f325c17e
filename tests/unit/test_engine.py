"""Unit tests for the KYCEncryptionEngine facade."""

import asyncio
import dataclasses
import json
import time
from datetime import timedelta

import pytest

from kyc_secure.schemas.audit_entry import AuditOperation, AuditOutcome, AuditQuery
from kyc_secure.schemas.encrypted_record import FieldType, RecordState, record_from_dict
from kyc_secure.services.audit_ledger import LEDGER_FILE_NAME, AuditLedger
from kyc_secure.services.config import EngineConfig
from kyc_secure.services.crypto.document_cipher import ProgressEvent
from kyc_secure.services.crypto.errors import (
    DecryptionError,
    DocumentTooLargeError,
    EncryptionError,
    SessionError,
    SessionNotInitializedError,
    WeakSecretError,
)
from kyc_secure.services.engine import KYCEncryptionEngine
from kyc_secure.services.interfaces import ExpirySweeper

FAST = dict(kdf_n=2**10, chunk_size=16, max_document_size=4096, max_concurrency=4)


class TestSession:
    @pytest.mark.asyncio
    async def test_initialize(self, engine):
        key = await engine.initialize("Tr0ub4dor&3")

        assert engine.is_initialized
        assert engine.generation == 0
        assert engine.salt == key.salt
        assert len(engine.salt) == 16

    @pytest.mark.asyncio
    async def test_initialize_twice(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        with pytest.raises(SessionError):
            await engine.initialize("N3wSecret!9")
        assert engine.generation == 0

    @pytest.mark.asyncio
    async def test_weak_secret(self, engine):
        with pytest.raises(WeakSecretError):
            await engine.initialize("password123")
        assert not engine.is_initialized

    @pytest.mark.asyncio
    async def test_operations_need_a_session(self, engine):
        with pytest.raises(SessionNotInitializedError):
            await engine.encrypt_field(FieldType.SSN, "123-45-6789")
        with pytest.raises(SessionNotInitializedError):
            await engine.encrypt_document(FieldType.DOCUMENT, b"scan")
        with pytest.raises(SessionNotInitializedError):
            await engine.generate_proof({})
        with pytest.raises(SessionNotInitializedError):
            engine.generation

    @pytest.mark.asyncio
    async def test_clear_session(self, engine):
        key = await engine.initialize("Tr0ub4dor&3")
        record = await engine.encrypt_field(FieldType.SSN, "123-45-6789")

        engine.clear_session()

        assert key.is_zeroed
        assert not engine.is_initialized
        with pytest.raises(SessionNotInitializedError):
            await engine.decrypt_field(record)
        assert engine.audit_entries(AuditQuery(operation=AuditOperation.CLEAR))[0].actor_key_generation == 0

    @pytest.mark.asyncio
    async def test_context_manager_clears(self, fast_config):
        async with KYCEncryptionEngine(fast_config) as engine:
            key = await engine.initialize("Tr0ub4dor&3")
        assert key.is_zeroed

    @pytest.mark.asyncio
    async def test_reinitialize_after_clear(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        engine.clear_session()
        await engine.initialize("Tr0ub4dor&3")
        assert engine.is_initialized

    @pytest.mark.asyncio
    async def test_same_salt_across_sessions(self, fast_config):
        first = KYCEncryptionEngine(fast_config)
        await first.initialize("Tr0ub4dor&3")
        record = await first.encrypt_field(FieldType.EMAIL, "jane@example.com")
        salt = first.salt
        first.clear_session()

        second = KYCEncryptionEngine(fast_config)
        await second.initialize("Tr0ub4dor&3", salt=salt)
        assert await second.decrypt_field(record) == "jane@example.com"

    @pytest.mark.asyncio
    async def test_wrong_secret_cannot_decrypt(self, fast_config):
        first = KYCEncryptionEngine(fast_config)
        await first.initialize("Tr0ub4dor&3")
        record = await first.encrypt_field(FieldType.EMAIL, "jane@example.com")

        second = KYCEncryptionEngine(fast_config)
        await second.initialize("N3wSecret!9", salt=first.salt)
        with pytest.raises(DecryptionError):
            await second.decrypt_field(record)

    @pytest.mark.asyncio
    async def test_resume_at_generation(self, fast_config):
        first = KYCEncryptionEngine(fast_config)
        await first.initialize("Tr0ub4dor&3")
        await first.rotate("N3wSecret!9")
        record = await first.encrypt_field(FieldType.PHONE, "+41 79 000 00 00")

        second = KYCEncryptionEngine(fast_config)
        await second.initialize("N3wSecret!9", salt=first.salt, generation=first.generation)
        assert await second.decrypt_field(record) == "+41 79 000 00 00"


class TestFields:
    @pytest.mark.asyncio
    async def test_roundtrip(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        record = await engine.encrypt_field(FieldType.SSN, "123-45-6789")

        assert record.field_type == FieldType.NATIONAL_ID
        assert record.key_generation == 0
        assert engine.record_state(record.record_id) == RecordState.ACTIVE
        assert await engine.decrypt_field(record) == "123-45-6789"

    @pytest.mark.asyncio
    async def test_accepts_field_type_value(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        record = await engine.encrypt_field("email", "jane@example.com")
        assert record.field_type == FieldType.EMAIL

    @pytest.mark.asyncio
    async def test_non_string_value(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        with pytest.raises(EncryptionError):
            await engine.encrypt_field(FieldType.SSN, 123456789)

        failures = engine.audit_entries(AuditQuery(outcome=AuditOutcome.FAILURE))
        assert [e.operation for e in failures] == [AuditOperation.ENCRYPT]

    @pytest.mark.asyncio
    async def test_random_source_failure(self, fast_config):
        def broken_random(size):
            raise OSError("entropy source unavailable")

        engine = KYCEncryptionEngine(fast_config, random_source=broken_random)
        await engine.initialize("Tr0ub4dor&3", salt=bytes(range(16)))

        with pytest.raises(EncryptionError):
            await engine.encrypt_field(FieldType.SSN, "123-45-6789")
        assert engine.records == []

    @pytest.mark.asyncio
    async def test_timeout(self, monkeypatch):
        engine = KYCEncryptionEngine(EngineConfig(**FAST, primitive_timeout_seconds=0.05))
        await engine.initialize("Tr0ub4dor&3")

        def slow_encrypt(*args):
            time.sleep(0.5)

        monkeypatch.setattr(engine.field_cipher, "encrypt", slow_encrypt)

        with pytest.raises(EncryptionError, match="timed out"):
            await engine.encrypt_field(FieldType.SSN, "123-45-6789")
        assert engine.session.active_leases == 0

    @pytest.mark.asyncio
    async def test_decrypt_timeout_is_decryption_error(self, monkeypatch):
        engine = KYCEncryptionEngine(EngineConfig(**FAST, primitive_timeout_seconds=0.05))
        await engine.initialize("Tr0ub4dor&3")
        record = await engine.encrypt_field(FieldType.SSN, "123-45-6789")

        monkeypatch.setattr(engine.field_cipher, "decrypt", lambda *args: time.sleep(0.5))

        with pytest.raises(DecryptionError):
            await engine.decrypt_field(record)

    @pytest.mark.asyncio
    async def test_concurrent_encryptions(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        values = [f"user{i}@example.com" for i in range(20)]

        records = await asyncio.gather(
            *(engine.encrypt_field(FieldType.EMAIL, v) for v in values)
        )

        assert len({r.record_id for r in records}) == 20
        assert len({r.nonce for r in records}) == 20
        assert [await engine.decrypt_field(r) for r in records] == values


class TestDocuments:
    @pytest.mark.asyncio
    async def test_progress(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        data = bytes(range(100))
        events = []

        doc = await engine.encrypt_document(
            FieldType.DOCUMENT, data, on_progress=events.append, file_name="id.png"
        )

        assert doc.chunk_count == 7
        assert [e.chunk_index for e in events] == list(range(7))
        assert events[-1].percent == 100.0

        events.clear()
        assert await engine.decrypt_document(doc, on_progress=events.append) == data
        assert len(events) == 7

    @pytest.mark.asyncio
    async def test_too_large(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        with pytest.raises(DocumentTooLargeError):
            await engine.encrypt_document(FieldType.DOCUMENT, b"\x00" * 4097)
        assert engine.records == []

    @pytest.mark.asyncio
    async def test_failed_chunk_is_audited(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        doc = await engine.encrypt_document(FieldType.DOCUMENT, bytes(64))
        chunks = list(doc.chunks)
        chunks[2] = dataclasses.replace(chunks[2], ciphertext=b"\x00" * len(chunks[2].ciphertext))
        broken = dataclasses.replace(doc, chunks=tuple(chunks))

        with pytest.raises(DecryptionError) as exc_info:
            await engine.decrypt_document(broken)

        assert exc_info.value.chunk_index == 2
        failures = engine.audit_entries(AuditQuery(outcome=AuditOutcome.FAILURE))
        assert failures[0].detail == "chunk 2"

    @pytest.mark.asyncio
    async def test_find_duplicates(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        first = await engine.encrypt_document(FieldType.DOCUMENT, b"passport scan")
        await engine.encrypt_document(FieldType.DOCUMENT, b"utility bill")

        assert await engine.find_duplicate_documents(b"passport scan") == [first.document_id]
        assert await engine.find_duplicate_documents(b"unknown") == []

    @pytest.mark.asyncio
    async def test_no_progress_after_timeout(self, monkeypatch):
        engine = KYCEncryptionEngine(EngineConfig(**FAST, primitive_timeout_seconds=0.05))
        await engine.initialize("Tr0ub4dor&3")
        events = []

        def slow_encrypt(field_type, data, key, file_name, on_progress):
            time.sleep(0.2)
            on_progress(ProgressEvent(document_id="doc_late", chunk_index=0, chunk_count=1, percent=100.0))

        monkeypatch.setattr(engine.document_cipher, "encrypt", slow_encrypt)

        with pytest.raises(EncryptionError, match="timed out"):
            await engine.encrypt_document(FieldType.DOCUMENT, b"scan", on_progress=events.append)

        await asyncio.sleep(0.4)
        assert events == []


class TestRestoredRecords:
    """Records persisted by an earlier session and handed back to a new one."""

    @staticmethod
    async def restore(fast_config, secret="Tr0ub4dor&3"):
        first = KYCEncryptionEngine(fast_config)
        await first.initialize("Tr0ub4dor&3")
        ssn = await first.encrypt_field(FieldType.SSN, "123-45-6789")
        scan = await first.encrypt_document(FieldType.DOCUMENT, b"passport scan bytes")
        saved = json.dumps([ssn.to_dict(), scan.to_dict()])
        salt = first.salt
        first.clear_session()

        second = KYCEncryptionEngine(fast_config)
        await second.initialize(secret, salt=salt)
        return second, [record_from_dict(d) for d in json.loads(saved)]

    @pytest.mark.asyncio
    async def test_rotation_migrates_tracked_records(self, fast_config):
        engine, (ssn, scan) = await self.restore(fast_config)
        assert engine.records == []

        assert await engine.track_records([ssn, scan]) == [ssn.record_id, scan.record_id]
        report = await engine.rotate("N3wSecret!9")

        assert set(report.migrated_record_ids) == {ssn.record_id, scan.record_id}
        assert engine.generation == 1
        migrated = engine.get_record(ssn.record_id)
        assert migrated.key_generation == 1
        assert await engine.decrypt_field(migrated) == "123-45-6789"
        assert await engine.decrypt_document(engine.get_record(scan.record_id)) == b"passport scan bytes"

    @pytest.mark.asyncio
    async def test_tracking_is_idempotent(self, fast_config):
        engine, (ssn, scan) = await self.restore(fast_config)

        await engine.track_records([ssn])
        assert await engine.track_records([ssn, scan]) == [scan.record_id]
        assert len(engine.records) == 2
        tracked = engine.audit_entries(AuditQuery(operation=AuditOperation.TRACK))
        assert [e.subject_id for e in tracked] == [ssn.record_id, scan.record_id]

    @pytest.mark.asyncio
    async def test_wrong_key_is_rejected(self, fast_config):
        engine, (ssn, _) = await self.restore(fast_config, secret="N3wSecret!9")

        with pytest.raises(DecryptionError):
            await engine.track_records([ssn])

        assert engine.records == []
        failures = engine.audit_entries(
            AuditQuery(operation=AuditOperation.TRACK, outcome=AuditOutcome.FAILURE)
        )
        assert [e.subject_id for e in failures] == [ssn.record_id]

    @pytest.mark.asyncio
    async def test_tampered_record_is_rejected(self, fast_config):
        engine, (ssn, scan) = await self.restore(fast_config)
        tampered = dataclasses.replace(ssn, ciphertext=bytes(len(ssn.ciphertext)))

        with pytest.raises(DecryptionError):
            await engine.track_records([scan, tampered])

        assert [r.record_id for r in engine.records] == [scan.record_id]

    @pytest.mark.asyncio
    async def test_unknown_generation_is_rejected(self, fast_config):
        engine, (ssn, _) = await self.restore(fast_config)
        future = dataclasses.replace(ssn, key_generation=7)

        with pytest.raises(DecryptionError):
            await engine.track_records([future])
        assert engine.records == []


class TestRetention:
    def test_engine_is_an_expiry_sweeper(self, engine):
        assert isinstance(engine, ExpirySweeper)

    @pytest.mark.asyncio
    async def test_sweep_purges_expired(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        short = await engine.encrypt_field(FieldType.SSN, "123-45-6789", retention=timedelta(hours=1))
        kept = await engine.encrypt_field(FieldType.EMAIL, "jane@example.com")

        now = engine.retention.get(short.record_id).expires_at
        assert await engine.sweep_expired(now - timedelta(seconds=1)) == []
        assert await engine.sweep_expired(now) == [short.record_id]

        assert engine.record_state(short.record_id) == RecordState.PURGED
        assert engine.get_record(short.record_id) is None
        assert engine.records == [kept]
        assert engine.retention.get(short.record_id) is None

        purges = engine.audit_entries(AuditQuery(operation=AuditOperation.PURGE))
        assert [e.subject_id for e in purges] == [short.record_id]

    @pytest.mark.asyncio
    async def test_purged_record_is_denied(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        record = await engine.encrypt_field(FieldType.SSN, "123-45-6789", retention=timedelta(minutes=5))
        await engine.sweep_expired(engine.retention.get(record.record_id).expires_at)

        with pytest.raises(DecryptionError):
            await engine.decrypt_field(record)

        denied = engine.audit_entries(AuditQuery(operation=AuditOperation.ACCESS_DENIED))
        assert len(denied) == 1
        assert denied[0].subject_id == record.record_id

    @pytest.mark.asyncio
    async def test_set_retention(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        record = await engine.encrypt_field(FieldType.SSN, "123-45-6789")

        retention = engine.set_retention(record.record_id, timedelta(days=30))
        assert retention.subject_id == record.record_id

        with pytest.raises(KeyError):
            engine.set_retention("fld_unknown", timedelta(days=30))

    @pytest.mark.asyncio
    async def test_default_retention(self):
        engine = KYCEncryptionEngine(EngineConfig(**FAST, default_retention_days=90))
        await engine.initialize("Tr0ub4dor&3")
        record = await engine.encrypt_field(FieldType.SSN, "123-45-6789")

        retention = engine.retention.get(record.record_id)
        assert retention.expires_at - retention.created_at == timedelta(days=90)


class TestProofs:
    @pytest.mark.asyncio
    async def test_generate_and_verify(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        ssn = await engine.encrypt_field(FieldType.SSN, "123-45-6789")
        manifest = {"ssn": ssn, "country": "CH"}

        proof = await engine.generate_proof(manifest)

        assert proof.entry_count == 1
        assert await engine.verify_proof(manifest, proof)
        assert not await engine.verify_proof({"ssn": ssn, "country": "DE"}, proof)

        outcomes = [e.outcome for e in engine.audit_entries(AuditQuery(operation=AuditOperation.VERIFY))]
        assert outcomes == [AuditOutcome.SUCCESS, AuditOutcome.FAILURE]
        assert len(engine.audit_entries(AuditQuery(operation=AuditOperation.SEAL))) == 1


class TestAudit:
    @pytest.mark.asyncio
    async def test_every_operation_is_recorded(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        record = await engine.encrypt_field(FieldType.SSN, "123-45-6789")
        await engine.decrypt_field(record)

        entries = engine.audit_entries()
        assert [(e.operation, e.outcome) for e in entries] == [
            (AuditOperation.ENCRYPT, AuditOutcome.SUCCESS),
            (AuditOperation.DECRYPT, AuditOutcome.SUCCESS),
        ]
        assert all(e.subject_id == record.record_id for e in entries)
        assert all(e.field_type == FieldType.NATIONAL_ID for e in entries)
        assert engine.verify_audit().valid

    @pytest.mark.asyncio
    async def test_no_plaintext_in_ledger(self, fast_config, tmp_path):
        ledger = AuditLedger(tmp_path)
        engine = KYCEncryptionEngine(fast_config, ledger=ledger)
        await engine.initialize("Tr0ub4dor&3")
        record = await engine.encrypt_field(FieldType.SSN, "123-45-6789")
        await engine.decrypt_field(record)
        await engine.encrypt_document(FieldType.DOCUMENT, b"CONFIDENTIAL PASSPORT")

        text = (tmp_path / LEDGER_FILE_NAME).read_text(encoding="utf-8")
        assert "123-45-6789" not in text
        assert "CONFIDENTIAL" not in text
        assert "Tr0ub4dor&3" not in text
        assert len(text.strip().splitlines()) == 3
        assert all(json.loads(line)["entry_hash"] for line in text.splitlines())

    def test_ledger_fsync_follows_config(self, tmp_path):
        engine = KYCEncryptionEngine(EngineConfig(**FAST, audit_dir=tmp_path, audit_fsync=False))
        assert engine.ledger.fsync is False
        assert KYCEncryptionEngine(EngineConfig(**FAST)).ledger.fsync is True

    @pytest.mark.asyncio
    async def test_external_access(self, engine):
        await engine.initialize("Tr0ub4dor&3")
        entry = engine.record_access(
            AuditOperation.DECRYPT, FieldType.ADDRESS, AuditOutcome.SUCCESS, detail="export"
        )

        assert entry.actor_key_generation == 0
        assert engine.ledger.get_by_id(entry.entry_id) == entry
