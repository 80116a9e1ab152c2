"""
Export Assembler: builds the GoBD tax-authority bundle.

Archive layout:
    index.xml        machine-readable manifest (documents + full audit trail)
    audit_log.csv    tabular audit report, oldest first
    audit_log.txt    narrative audit report
    documents/       every archived document, byte-for-byte, under its original name

The EXPORT_GENERATED entry is written only after the archive is complete, because it records
the archive's size. A failed export leaves no archive behind and writes no entry.
"""

from __future__ import annotations

import csv
import io
import logging
import os
import posixpath
import shutil
import uuid
import xml.etree.ElementTree as ET
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from zipfile import ZIP_DEFLATED, ZipFile

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from app.taxvault.config import VaultSettings
from app.taxvault.errors import IOFailure, NoContent
from app.taxvault.hashing import CHUNK_SIZE
from app.taxvault.ledger import AuditLedger, Origin
from app.taxvault.models import AuditAction, AuditEntry, Document, User
from app.taxvault.store import DocumentStore
from app.taxvault.utils import Clock, isoformat_z, utcnow

logger = logging.getLogger(__name__)

MANIFEST_NAME = "index.xml"
CSV_NAME = "audit_log.csv"
NARRATIVE_NAME = "audit_log.txt"
DOCUMENTS_DIR = "documents"
CSV_HEADER = "Timestamp,User ID,User Name,Action,Document ID,Document Name,File Hash,IP Address"
RULE = "=" * 80
SEPARATOR = "-" * 80


@dataclass(frozen=True)
class ExportBundle:
    path: Path
    download_name: str
    size_bytes: int
    document_count: int
    audit_entry_count: int
    generated_at: datetime

    def discard(self) -> None:
        self.path.unlink(missing_ok=True)


@dataclass(frozen=True)
class ExportPreview:
    document_count: int
    audit_entry_count: int
    oldest_ingestion: datetime | None
    newest_ingestion: datetime | None
    total_size: int


def _archive_name(doc: Document) -> str:
    # Keep the name as uploaded; only directory parts are dropped.
    name = doc.original_name.replace("\\", "/").rsplit("/", 1)[-1].replace("\x00", "").strip()
    if name in ("", ".", ".."):
        name = f"{doc.id}{os.path.splitext(doc.stored_name)[1]}"
    return name


def archive_paths(documents: list[Document]) -> dict[str, str]:
    """
    Archive path per document id. Names that collide get the document id appended.
    """
    out: dict[str, str] = {}
    taken: set[str] = set()
    for doc in documents:
        name = _archive_name(doc)
        if name.lower() in taken:
            stem, ext = os.path.splitext(name)
            name = f"{stem}_{doc.id}{ext}"
        taken.add(name.lower())
        out[doc.id] = posixpath.join(DOCUMENTS_DIR, name)
    return out


def _text(parent: ET.Element, tag: str, value: object) -> None:
    ET.SubElement(parent, tag).text = "" if value is None else str(value)


def build_manifest(
    documents: list[Document],
    entries: list[AuditEntry],
    paths: dict[str, str],
    *,
    settings: VaultSettings,
    generated_at: datetime,
) -> bytes:
    export_date = isoformat_z(generated_at)
    root = ET.Element("GoBD_Export", {"version": "1.0", "exportDate": export_date})

    meta = ET.SubElement(root, "ExportMetadata")
    _text(meta, "ExportDate", export_date)
    _text(meta, "RetentionPeriod", settings.retention_label)
    _text(meta, "ComplianceStandard", settings.compliance_standard)
    _text(meta, "LegalBasis", settings.legal_basis)
    _text(meta, "DocumentCount", len(documents))
    _text(meta, "AuditLogCount", len(entries))

    docs_el = ET.SubElement(root, "Documents")
    for doc in documents:
        d = ET.SubElement(docs_el, "Document")
        _text(d, "DocumentID", doc.id)
        _text(d, "OriginalFilename", doc.original_name)
        _text(d, "StoredFilename", doc.stored_name)
        _text(d, "ArchivePath", paths[doc.id])
        _text(d, "MimeType", doc.mime_type)
        _text(d, "FileSize", doc.size_bytes)
        _text(d, "SHA256Hash", doc.fingerprint)
        _text(d, "UploadDate", isoformat_z(doc.ingested_at))
        _text(d, "RetentionExpiryDate", isoformat_z(doc.retention_expiry))
        _text(d, "Status", doc.lock_state.value)
        _text(d, "UploadedBy", doc.owner_actor_id)

    trail = ET.SubElement(root, "AuditTrail")
    for e in entries:
        a = ET.SubElement(trail, "AuditEntry")
        _text(a, "Timestamp", isoformat_z(e.timestamp))
        _text(a, "UserID", e.actor_id)
        _text(a, "Action", e.action)
        _text(a, "DocumentID", e.document_id)
        _text(a, "FileHash", e.fingerprint)
        _text(a, "IPAddress", e.ip_address)

    tree = ET.ElementTree(root)
    ET.indent(tree, space="  ")
    buf = io.BytesIO()
    tree.write(buf, encoding="UTF-8", xml_declaration=True)
    return buf.getvalue()


def render_audit_csv(entries: list[AuditEntry], actor_names: dict[str, str], document_names: dict[str, str]) -> bytes:
    out = io.StringIO()
    out.write(CSV_HEADER + "\n")
    w = csv.writer(out, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for e in entries:
        w.writerow(
            [
                isoformat_z(e.timestamp),
                e.actor_id,
                actor_names.get(e.actor_id, "Unknown"),
                e.action,
                e.document_id or "",
                document_names.get(e.document_id or "", ""),
                e.fingerprint or "",
                e.ip_address or "",
            ]
        )
    return out.getvalue().encode("utf-8")


def render_audit_narrative(
    entries: list[AuditEntry],
    actor_names: dict[str, str],
    document_names: dict[str, str],
    *,
    generated_at: datetime,
) -> bytes:
    lines = [
        "GoBD AUDIT LOG REPORT",
        f"Generated: {isoformat_z(generated_at)}",
        f"Total Entries: {len(entries)}",
        "",
        RULE,
        "",
    ]
    for e in entries:
        lines.extend(
            [
                f"Timestamp: {isoformat_z(e.timestamp)}",
                f"User: {actor_names.get(e.actor_id, 'Unknown')} ({e.actor_id})",
                f"Action: {e.action}",
                f"Document: {document_names.get(e.document_id or '', '')} ({e.document_id or ''})",
                f"File Hash: {e.fingerprint or 'N/A'}",
                f"IP Address: {e.ip_address or 'N/A'}",
                SEPARATOR,
            ]
        )
    lines.extend(["", RULE, "", "End of Audit Log Report", ""])
    return "\n".join(lines).encode("utf-8")


class ExportAssembler:
    def __init__(
        self,
        store: DocumentStore,
        ledger: AuditLedger,
        sm: sessionmaker[Session],
        settings: VaultSettings,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._sm = sm
        self._settings = settings
        self._clock = clock

    def preview(self) -> ExportPreview:
        with self._sm() as s:
            count, oldest, newest, total = s.execute(
                select(
                    func.count(Document.id),
                    func.min(Document.ingested_at),
                    func.max(Document.ingested_at),
                    func.coalesce(func.sum(Document.size_bytes), 0),
                )
            ).one()
        return ExportPreview(
            document_count=int(count),
            audit_entry_count=self._ledger.count(),
            oldest_ingestion=oldest,
            newest_ingestion=newest,
            total_size=int(total),
        )

    def _actor_names(self, actor_ids: set[str]) -> dict[str, str]:
        numeric = [int(a) for a in actor_ids if a.isdigit()]
        if not numeric:
            return {}
        with self._sm() as s:
            rows = s.execute(select(User.id, User.name, User.email).where(User.id.in_(numeric))).all()
        return {str(uid): (name or email) for uid, name, email in rows}

    def build_export(self, actor_id: str, *, origin: Origin | None = None) -> ExportBundle:
        documents = self._store.chronological()
        if not documents:
            raise NoContent()
        entries = self._ledger.chronological()

        generated_at = self._clock()
        actor_names = self._actor_names({e.actor_id for e in entries})
        document_names = {d.id: d.original_name for d in documents}
        paths = archive_paths(documents)

        manifest = build_manifest(documents, entries, paths, settings=self._settings, generated_at=generated_at)
        csv_bytes = render_audit_csv(entries, actor_names, document_names)
        narrative = render_audit_narrative(entries, actor_names, document_names, generated_at=generated_at)

        export_dir = self._settings.export_dir
        stamp = generated_at.strftime("%Y%m%dT%H%M%S")
        final = export_dir / f"GoBD-Export-{stamp}-{uuid.uuid4().hex[:8]}.zip"
        part = final.with_name(final.name + ".part")
        try:
            export_dir.mkdir(parents=True, exist_ok=True)
            with ZipFile(part, "x", compression=ZIP_DEFLATED, compresslevel=9) as zf:
                zf.writestr(MANIFEST_NAME, manifest)
                zf.writestr(CSV_NAME, csv_bytes)
                zf.writestr(NARRATIVE_NAME, narrative)
                for doc in documents:
                    with closing(self._store.open_verified(doc)) as src, zf.open(paths[doc.id], "w") as dst:
                        shutil.copyfileobj(src, dst, CHUNK_SIZE)
            os.replace(part, final)
            size_bytes = final.stat().st_size
        except OSError as e:
            part.unlink(missing_ok=True)
            final.unlink(missing_ok=True)
            logger.exception("Export generation failed")
            raise IOFailure(f"Export generation failed: {e}") from e
        except Exception:
            part.unlink(missing_ok=True)
            final.unlink(missing_ok=True)
            logger.exception("Export generation failed")
            raise

        logger.info(
            "Export generated path=%s documents=%s entries=%s size=%s", final, len(documents), len(entries), size_bytes
        )
        self._ledger.append(
            AuditAction.EXPORT_GENERATED,
            actor_id,
            origin=origin,
            attributes={
                "documentCount": len(documents),
                "auditLogCount": len(entries),
                "exportSize": size_bytes,
            },
        )
        return ExportBundle(
            path=final,
            download_name=f"GoBD-Export-{generated_at.date().isoformat()}.zip",
            size_bytes=size_bytes,
            document_count=len(documents),
            audit_entry_count=len(entries),
            generated_at=generated_at,
        )
