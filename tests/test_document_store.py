import io
import logging
import os
import stat
import threading
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine, select

from app.taxvault.config import VaultSettings
from app.taxvault.db import make_engine, make_sessionmaker, transaction
from app.taxvault.errors import (
    ComplianceViolation,
    DuplicateContent,
    IntegrityViolation,
    NotFound,
    UnsupportedType,
)
from app.taxvault.hashing import fingerprint
from app.taxvault.ledger import AuditFilter, AuditLedger, Origin
from app.taxvault.models import AuditAction, Base, Document, LockState
from app.taxvault.storage import LocalStorage
from app.taxvault.store import DocumentStore

PDF_10 = b"%PDF-1.4\n%"
T0 = datetime(2025, 1, 15, 10, 0, 0)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def vault(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path/'vault.db'}")
    Base.metadata.create_all(bind=engine)
    sm = make_sessionmaker(engine)
    clock = FakeClock(T0)
    settings = VaultSettings(storage_dir=tmp_path / "uploads", export_dir=tmp_path / "exports")
    storage = LocalStorage(root=settings.storage_dir)
    ledger = AuditLedger(sm, clock=clock)
    store = DocumentStore(sm, storage, ledger, settings, clock=clock)
    yield SimpleNamespace(
        engine=engine, sm=sm, clock=clock, settings=settings, storage=storage, ledger=ledger, store=store
    )
    engine.dispose()


def _stored_files(v) -> list:
    root = v.settings.storage_dir
    if not root.exists():
        return []
    return sorted(p for p in root.iterdir() if p.is_file())


def _document_count(v) -> int:
    with v.sm() as s:
        return len(s.scalars(select(Document)).all())


def test_ingest_ten_byte_pdf_locks_and_records_upload(vault):
    doc = vault.store.ingest(
        io.BytesIO(PDF_10), "rechnung.pdf", "application/pdf", "7", origin=Origin("10.0.0.5", "pytest")
    )

    assert doc.size_bytes == 10
    assert doc.fingerprint == fingerprint(io.BytesIO(PDF_10))
    assert doc.lock_state is LockState.LOCKED
    assert doc.kind == "PDF"
    assert doc.ingested_at == T0
    assert doc.retention_expiry == datetime(2035, 1, 15, 10, 0, 0)
    assert vault.store.days_remaining(doc) == 3652
    assert doc.owner_actor_id == "7"

    files = _stored_files(vault)
    assert len(files) == 1
    assert files[0].name == doc.stored_name
    assert stat.S_IMODE(os.stat(files[0]).st_mode) == 0o444

    entries = vault.ledger.query()
    assert len(entries) == 1
    e = entries[0]
    assert e.action == AuditAction.UPLOADED.value
    assert e.actor_id == "7"
    assert e.document_id == doc.id
    assert e.fingerprint == doc.fingerprint
    assert e.ip_address == "10.0.0.5"
    assert e.user_agent == "pytest"
    assert e.attributes == {"originalName": "rechnung.pdf", "fileSize": 10}


def test_ingest_accepts_xml_with_charset_parameter(vault):
    doc = vault.store.ingest(io.BytesIO(b"<a/>"), "beleg.xml", "text/xml; charset=utf-8", "1")
    assert doc.mime_type == "text/xml"
    assert doc.kind == "XML"


def test_ingest_rejects_unsupported_type(vault):
    with pytest.raises(UnsupportedType):
        vault.store.ingest(io.BytesIO(b"hello"), "notes.txt", "text/plain", "1")
    assert _stored_files(vault) == []
    assert _document_count(vault) == 0
    assert vault.ledger.count() == 0


def test_duplicate_content_is_rejected_with_existing_id(vault):
    first = vault.store.ingest(io.BytesIO(PDF_10), "a.pdf", "application/pdf", "1")

    with pytest.raises(DuplicateContent) as exc:
        vault.store.ingest(io.BytesIO(PDF_10), "b.pdf", "application/pdf", "2")

    assert exc.value.status_code == 409
    assert exc.value.details["existingDocument"] == first.id
    assert _document_count(vault) == 1
    assert len(_stored_files(vault)) == 1
    assert vault.ledger.count(AuditFilter(action=AuditAction.UPLOADED)) == 1


def test_concurrent_identical_ingests_store_exactly_one_document(vault):
    barrier = threading.Barrier(4)
    results: list = []
    lock = threading.Lock()

    def worker(n: int) -> None:
        barrier.wait()
        try:
            doc = vault.store.ingest(io.BytesIO(PDF_10), f"copy-{n}.pdf", "application/pdf", str(n))
            outcome = ("ok", doc.id)
        except DuplicateContent as e:
            outcome = ("dup", e.details["existingDocument"])
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [r for r in results if r[0] == "ok"]
    assert len(results) == 4
    assert len(winners) == 1
    assert all(r[1] == winners[0][1] for r in results)
    assert _document_count(vault) == 1
    assert len(_stored_files(vault)) == 1


def test_fetch_content_returns_verified_bytes_and_records_intent(vault):
    doc = vault.store.ingest(io.BytesIO(PDF_10), "a.pdf", "application/pdf", "1")

    data, fetched = vault.store.fetch_content(doc.id, "2")
    assert data == PDF_10
    assert fetched.id == doc.id

    vault.store.fetch_content(doc.id, "3", intent=AuditAction.VIEWED)

    actions = [e.action for e in vault.ledger.chronological()]
    assert actions == ["UPLOADED", "DOWNLOADED", "VIEWED"]


def test_fetch_content_rejects_non_fetch_intent(vault):
    doc = vault.store.ingest(io.BytesIO(PDF_10), "a.pdf", "application/pdf", "1")
    with pytest.raises(ValueError):
        vault.store.fetch_content(doc.id, "1", intent=AuditAction.EXPORT_GENERATED)


def test_view_records_viewed_entry(vault):
    doc = vault.store.ingest(io.BytesIO(PDF_10), "a.pdf", "application/pdf", "1")
    viewed = vault.store.view(doc.id, "5")
    assert viewed.id == doc.id
    assert vault.ledger.count(AuditFilter(action="VIEWED", actor_id="5", document_id=doc.id)) == 1


def test_get_unknown_document_raises_not_found(vault):
    with pytest.raises(NotFound):
        vault.store.get("does-not-exist")


def test_tampered_content_raises_integrity_violation_and_alerts(vault, caplog):
    doc = vault.store.ingest(io.BytesIO(PDF_10), "a.pdf", "application/pdf", "1")
    path = vault.settings.storage_dir / doc.stored_name
    os.chmod(path, 0o644)
    path.write_bytes(b"%PDF-1.4\n!")

    with caplog.at_level(logging.CRITICAL, logger="app.taxvault.alerts"):
        with pytest.raises(IntegrityViolation) as exc:
            vault.store.fetch_content(doc.id, "1")

    assert exc.value.status_code == 500
    assert "tampering" in exc.value.message
    assert any("SECURITY ALERT" in r.getMessage() and doc.id in r.getMessage() for r in caplog.records)
    # no DOWNLOADED entry for content that was never delivered
    assert vault.ledger.count(AuditFilter(action="DOWNLOADED")) == 0


def test_missing_content_raises_integrity_violation(vault):
    doc = vault.store.ingest(io.BytesIO(PDF_10), "a.pdf", "application/pdf", "1")
    (vault.settings.storage_dir / doc.stored_name).unlink()

    with pytest.raises(IntegrityViolation):
        vault.store.fetch_content(doc.id, "1")


def test_delete_before_expiry_is_a_compliance_violation(vault):
    doc = vault.store.ingest(io.BytesIO(PDF_10), "a.pdf", "application/pdf", "1")
    vault.clock.advance(days=30)

    with pytest.raises(ComplianceViolation) as exc:
        vault.store.attempt_delete(doc.id, "1")

    assert exc.value.status_code == 403
    assert exc.value.details["retentionExpiryDate"] == doc.retention_expiry
    assert exc.value.details["daysUntilExpiry"] == 3652 - 30
    assert "retention period" in exc.value.message

    data, _ = vault.store.fetch_content(doc.id, "1")
    assert data == PDF_10


def test_delete_after_expiry_is_still_blocked_by_lock(vault):
    doc = vault.store.ingest(io.BytesIO(PDF_10), "a.pdf", "application/pdf", "1")
    vault.clock.now = doc.retention_expiry

    with pytest.raises(ComplianceViolation) as exc:
        vault.store.attempt_delete(doc.id, "1")

    assert "Locked documents cannot be deleted" in exc.value.message
    assert exc.value.details["daysUntilExpiry"] == 0
    assert vault.store.get(doc.id).id == doc.id


def test_purge_after_expiry_keeps_audit_trail(vault, monkeypatch):
    monkeypatch.setattr("app.taxvault.store.LOCKING_STATES", frozenset())
    doc = vault.store.ingest(io.BytesIO(PDF_10), "a.pdf", "application/pdf", "1")
    vault.clock.now = doc.retention_expiry + timedelta(days=1)

    vault.store.attempt_delete(doc.id, "1")

    with pytest.raises(NotFound):
        vault.store.get(doc.id)
    assert _stored_files(vault) == []
    assert vault.ledger.count(AuditFilter(document_id=doc.id)) == 1


def test_document_rows_cannot_be_updated(vault):
    doc = vault.store.ingest(io.BytesIO(PDF_10), "a.pdf", "application/pdf", "1")

    with pytest.raises(ComplianceViolation):
        with transaction(vault.sm) as s:
            row = s.get(Document, doc.id)
            row.original_name = "renamed.pdf"

    assert vault.store.get(doc.id).original_name == "a.pdf"


def test_list_is_newest_first(vault):
    a = vault.store.ingest(io.BytesIO(b"<a/>"), "a.xml", "application/xml", "1")
    vault.clock.advance(minutes=5)
    b = vault.store.ingest(io.BytesIO(b"<b/>"), "b.xml", "application/xml", "1")

    assert [d.id for d in vault.store.list()] == [b.id, a.id]
    assert [d.id for d in vault.store.chronological()] == [a.id, b.id]


def test_ingest_succeeds_when_audit_append_fails(vault, tmp_path):
    broken = create_engine(f"sqlite:///{tmp_path/'missing-dir'/'audit.db'}")
    failures = []
    ledger = AuditLedger(make_sessionmaker(broken), on_error=failures.append)
    store = DocumentStore(vault.sm, vault.storage, ledger, vault.settings, clock=vault.clock)

    doc = store.ingest(io.BytesIO(PDF_10), "a.pdf", "application/pdf", "1")

    assert store.get(doc.id).fingerprint == doc.fingerprint
    assert len(failures) == 1
    assert failures[0].action == "UPLOADED"
    assert failures[0].document_id == doc.id
    assert list(ledger.failures) == failures


def test_attempt_delete_accepts_explicit_now(vault):
    doc = vault.store.ingest(io.BytesIO(PDF_10), "a.pdf", "application/pdf", "1")

    with pytest.raises(ComplianceViolation) as exc:
        vault.store.attempt_delete(doc.id, "1", now=doc.retention_expiry - timedelta(hours=12))

    assert exc.value.details["daysUntilExpiry"] == 1


def test_open_verified_returns_rewound_spool_of_verified_bytes(vault):
    doc = vault.store.ingest(io.BytesIO(PDF_10), "a.pdf", "application/pdf", "1")

    with vault.store.open_verified(doc) as f:
        assert f.read() == PDF_10

    path = vault.settings.storage_dir / doc.stored_name
    os.chmod(path, 0o644)
    path.write_bytes(b"%PDF-1.4\n?")
    with pytest.raises(IntegrityViolation):
        vault.store.open_verified(doc)
