import csv
import io
import os
import xml.etree.ElementTree as ET
import zipfile
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from app.taxvault.config import VaultSettings
from app.taxvault.db import make_engine, make_sessionmaker, transaction
from app.taxvault.errors import IntegrityViolation, NoContent
from app.taxvault.export import CSV_HEADER, ExportAssembler
from app.taxvault.ledger import AuditFilter, AuditLedger, Origin
from app.taxvault.models import Base, User
from app.taxvault.storage import LocalStorage
from app.taxvault.store import DocumentStore

T0 = datetime(2025, 5, 2, 9, 0, 0)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def env(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path/'export.db'}")
    Base.metadata.create_all(bind=engine)
    sm = make_sessionmaker(engine)
    clock = FakeClock(T0)
    settings = VaultSettings(storage_dir=tmp_path / "uploads", export_dir=tmp_path / "exports")
    ledger = AuditLedger(sm, clock=clock)
    store = DocumentStore(sm, LocalStorage(root=settings.storage_dir), ledger, settings, clock=clock)
    assembler = ExportAssembler(store, ledger, sm, settings, clock=clock)

    with transaction(sm) as s:
        user = User(email="steuer@example.com", name="Erika Mustermann", password_hash=generate_password_hash("pw"))
        s.add(user)
    yield SimpleNamespace(sm=sm, clock=clock, settings=settings, ledger=ledger, store=store, assembler=assembler, user=user)
    engine.dispose()


def _three_documents_seven_entries(env):
    actor = env.user.actor_id
    docs = []
    for n, (content, name, mime) in enumerate(
        [
            (b"%PDF-1.4 one", "rechnung-1.pdf", "application/pdf"),
            (b"<Beleg>2</Beleg>", "beleg-2.xml", "application/xml"),
            (b"%PDF-1.4 three", "rechnung-3.pdf", "application/pdf"),
        ]
    ):
        env.clock.now = T0 + timedelta(minutes=n)
        docs.append(env.store.ingest(io.BytesIO(content), name, mime, actor))
    env.store.view(docs[0].id, actor, origin=Origin("192.168.1.10", "pytest"))
    env.store.view(docs[1].id, "external-auditor")
    env.store.fetch_content(docs[0].id, actor)
    env.store.fetch_content(docs[2].id, actor)
    assert env.ledger.count() == 7
    return docs


def test_export_with_three_documents_and_seven_entries(env):
    docs = _three_documents_seven_entries(env)
    env.clock.now = T0 + timedelta(hours=1)

    bundle = env.assembler.build_export(env.user.actor_id, origin=Origin("10.1.1.1", "pytest"))

    assert bundle.document_count == 3
    assert bundle.audit_entry_count == 7
    assert bundle.path.exists()
    assert bundle.size_bytes == bundle.path.stat().st_size
    assert bundle.download_name == "GoBD-Export-2025-05-02.zip"
    assert list(env.settings.export_dir.glob("*.part")) == []

    with zipfile.ZipFile(bundle.path) as zf:
        names = set(zf.namelist())
        assert {"index.xml", "audit_log.csv", "audit_log.txt"} <= names
        assert {f"documents/{d.original_name}" for d in docs} <= names
        for d in docs:
            assert zf.read(f"documents/{d.original_name}") == env.store.read_verified(d)

        root = ET.fromstring(zf.read("index.xml"))
        assert root.tag == "GoBD_Export"
        meta = root.find("ExportMetadata")
        assert meta.findtext("DocumentCount") == "3"
        assert meta.findtext("AuditLogCount") == "7"
        assert meta.findtext("RetentionPeriod") == "10 years"
        assert meta.findtext("LegalBasis") == "§146 AO, §147 AO"
        assert meta.findtext("ComplianceStandard").startswith("GoBD")

        manifest_docs = root.findall("Documents/Document")
        assert [d.findtext("DocumentID") for d in manifest_docs] == [d.id for d in docs]
        first = manifest_docs[0]
        assert first.findtext("SHA256Hash") == docs[0].fingerprint
        assert first.findtext("Status") == "LOCKED"
        assert first.findtext("ArchivePath") == "documents/rechnung-1.pdf"
        assert first.findtext("RetentionExpiryDate") == "2035-05-02T09:00:00.000Z"

        trail = root.findall("AuditTrail/AuditEntry")
        assert len(trail) == 7
        assert [a.findtext("Action") for a in trail][:3] == ["UPLOADED", "UPLOADED", "UPLOADED"]

        rows = zf.read("audit_log.csv").decode("utf-8").splitlines()
        assert rows[0] == CSV_HEADER
        assert len(rows) == 8
        assert rows[1].startswith('"')
        parsed = list(csv.reader(rows[1:]))
        assert parsed[0][2] == "Erika Mustermann"
        assert parsed[0][5] == "rechnung-1.pdf"
        viewed_by_outsider = [r for r in parsed if r[1] == "external-auditor"]
        assert viewed_by_outsider[0][2] == "Unknown"
        assert parsed[3][7] == "192.168.1.10"

        narrative = zf.read("audit_log.txt").decode("utf-8")
        assert narrative.startswith("GoBD AUDIT LOG REPORT")
        assert "Total Entries: 7" in narrative
        assert "=" * 80 in narrative
        assert narrative.count("-" * 80) == 7
        assert "End of Audit Log Report" in narrative

    exports = env.ledger.query(AuditFilter(action="EXPORT_GENERATED"))
    assert len(exports) == 1
    assert exports[0].actor_id == env.user.actor_id
    assert exports[0].ip_address == "10.1.1.1"
    assert exports[0].attributes == {"documentCount": 3, "auditLogCount": 7, "exportSize": bundle.size_bytes}

    bundle.discard()
    assert not bundle.path.exists()


def test_export_without_documents_raises_no_content(env):
    env.ledger.append("VIEWED", "1")

    with pytest.raises(NoContent) as exc:
        env.assembler.build_export("1")

    assert exc.value.status_code == 400
    export_dir = env.settings.export_dir
    assert not export_dir.exists() or list(export_dir.iterdir()) == []
    assert env.ledger.count(AuditFilter(action="EXPORT_GENERATED")) == 0


def test_colliding_original_names_get_distinct_archive_paths(env):
    a = env.store.ingest(io.BytesIO(b"%PDF a"), "invoice.pdf", "application/pdf", "1")
    env.clock.now = T0 + timedelta(seconds=1)
    b = env.store.ingest(io.BytesIO(b"%PDF b"), "invoice.pdf", "application/pdf", "1")

    bundle = env.assembler.build_export("1")

    with zipfile.ZipFile(bundle.path) as zf:
        assert zf.read("documents/invoice.pdf") == b"%PDF a"
        assert zf.read(f"documents/invoice_{b.id}.pdf") == b"%PDF b"
        paths = [d.findtext("ArchivePath") for d in ET.fromstring(zf.read("index.xml")).findall("Documents/Document")]
    assert paths == ["documents/invoice.pdf", f"documents/invoice_{b.id}.pdf"]
    assert a.id != b.id


def test_tampered_document_aborts_export_without_artifact(env):
    docs = _three_documents_seven_entries(env)
    path = env.settings.storage_dir / docs[1].stored_name
    os.chmod(path, 0o644)
    path.write_bytes(b"<Beleg>9</Beleg>")

    with pytest.raises(IntegrityViolation):
        env.assembler.build_export("1")

    assert list(env.settings.export_dir.iterdir()) == []
    assert env.ledger.count(AuditFilter(action="EXPORT_GENERATED")) == 0


def test_preview_summarises_current_vault(env):
    empty = env.assembler.preview()
    assert empty.document_count == 0
    assert empty.total_size == 0
    assert empty.oldest_ingestion is None

    env.store.ingest(io.BytesIO(b"%PDF-1.4 one"), "a.pdf", "application/pdf", "1")
    env.clock.now = T0 + timedelta(days=3)
    env.store.ingest(io.BytesIO(b"<x/>"), "b.xml", "text/xml", "1")

    p = env.assembler.preview()
    assert p.document_count == 2
    assert p.audit_entry_count == 2
    assert p.total_size == len(b"%PDF-1.4 one") + len(b"<x/>")
    assert p.oldest_ingestion == T0
    assert p.newest_ingestion == T0 + timedelta(days=3)


def test_archive_keeps_unicode_original_names(env):
    a = env.store.ingest(io.BytesIO(b"%PDF Gebuehren"), "Gebühren 2024.pdf", "application/pdf", "1")
    env.clock.now = T0 + timedelta(seconds=1)
    b = env.store.ingest(io.BytesIO(b"%PDF seikyusho"), "請求書.pdf", "application/pdf", "1")

    bundle = env.assembler.build_export("1")

    with zipfile.ZipFile(bundle.path) as zf:
        assert zf.read("documents/Gebühren 2024.pdf") == b"%PDF Gebuehren"
        assert zf.read("documents/請求書.pdf") == b"%PDF seikyusho"
        manifest = ET.fromstring(zf.read("index.xml"))
    names = {d.findtext("DocumentID"): d.findtext("ArchivePath") for d in manifest.findall("Documents/Document")}
    assert names == {a.id: "documents/Gebühren 2024.pdf", b.id: "documents/請求書.pdf"}


def test_archive_names_cannot_leave_documents_dir(env):
    a = env.store.ingest(io.BytesIO(b"%PDF a"), "../../etc/passwd.pdf", "application/pdf", "1")
    env.clock.now = T0 + timedelta(seconds=1)
    b = env.store.ingest(io.BytesIO(b"%PDF b"), "C:\\Belege\\..", "application/pdf", "1")

    bundle = env.assembler.build_export("1")

    with zipfile.ZipFile(bundle.path) as zf:
        docs = sorted(n for n in zf.namelist() if n.startswith("documents/"))
    assert docs == sorted(["documents/passwd.pdf", f"documents/{b.id}{os.path.splitext(b.stored_name)[1]}"])
    assert a.id != b.id
