"""
Document Store: the only component that creates or removes Document records.

Ingestion order matters:
1. hash while spooling the upload (single pass),
2. reject known fingerprints,
3. write the bytes durably and read-only,
4. commit the metadata row (UNIQUE fingerprint closes the concurrent-ingest race),
5. record UPLOADED in the ledger (best-effort).
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import uuid
from contextlib import closing
from datetime import datetime
from typing import BinaryIO

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.taxvault.alerts import Alerter
from app.taxvault.config import VaultSettings
from app.taxvault.db import transaction
from app.taxvault.errors import ComplianceViolation, DuplicateContent, IntegrityViolation, IOFailure, NotFound, UnsupportedType
from app.taxvault.hashing import CHUNK_SIZE, HashingReader, matches
from app.taxvault.ledger import AuditLedger, Origin
from app.taxvault.models import LOCKING_STATES, MIME_KINDS, AuditAction, Document
from app.taxvault.retention import days_remaining, expiry_of, is_expired
from app.taxvault.storage import Storage
from app.taxvault.utils import Clock, utcnow

logger = logging.getLogger(__name__)

SPOOL_MAX_MEMORY = 8 * 1024 * 1024
FETCH_INTENTS = (AuditAction.VIEWED, AuditAction.DOWNLOADED)


def normalize_mime_type(mime_type: str | None) -> str:
    # "text/xml; charset=utf-8" -> "text/xml"
    return (mime_type or "").split(";", 1)[0].strip().lower()


def _stored_name(original_name: str) -> str:
    ext = os.path.splitext(original_name)[1].lower()
    if not ext[1:].isalnum() or len(ext) > 10:
        ext = ""
    return f"{uuid.uuid4().hex}{ext}"


class DocumentStore:
    def __init__(
        self,
        sm: sessionmaker[Session],
        storage: Storage,
        ledger: AuditLedger,
        settings: VaultSettings,
        *,
        clock: Clock = utcnow,
        alerter: Alerter | None = None,
    ) -> None:
        self._sm = sm
        self._storage = storage
        self._ledger = ledger
        self._settings = settings
        self._clock = clock
        self._alerter = alerter or Alerter()

    @property
    def storage(self) -> Storage:
        return self._storage

    def ingest(
        self,
        content: BinaryIO,
        original_name: str,
        mime_type: str,
        actor_id: str,
        *,
        origin: Origin | None = None,
    ) -> Document:
        mime_type = normalize_mime_type(mime_type)
        if mime_type not in MIME_KINDS:
            raise UnsupportedType(mimeType=mime_type)
        original_name = (original_name or "").strip() or "document"

        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY) as spool:
            reader = HashingReader(content)
            try:
                shutil.copyfileobj(reader, spool)
            except OSError as e:
                raise IOFailure(f"Failed to buffer upload: {e}") from e
            fingerprint = reader.hexdigest()
            size_bytes = reader.bytes_read

            existing = self._find_by_fingerprint(fingerprint)
            if existing is not None:
                logger.info("Duplicate upload rejected sha256=%s existing_id=%s", fingerprint, existing.id)
                raise DuplicateContent(existingDocument=existing.id)

            ingested_at = self._clock()
            doc = Document(
                id=uuid.uuid4().hex,
                stored_name=_stored_name(original_name),
                original_name=original_name[:255],
                mime_type=mime_type,
                fingerprint=fingerprint,
                size_bytes=size_bytes,
                ingested_at=ingested_at,
                retention_expiry=expiry_of(ingested_at, self._settings.retention_years),
                owner_actor_id=str(actor_id),
            )
            spool.seek(0)
            self._storage.put_stream(
                doc.stored_name, spool, content_type=mime_type, retain_until=doc.retention_expiry
            )

        try:
            with transaction(self._sm) as s:
                s.add(doc)
        except IntegrityError:
            # Lost the race against a concurrent ingest of the same bytes.
            self._storage.delete(doc.stored_name)
            winner = self._find_by_fingerprint(fingerprint)
            if winner is None:
                raise
            logger.info("Concurrent duplicate upload rejected sha256=%s existing_id=%s", fingerprint, winner.id)
            raise DuplicateContent(existingDocument=winner.id)
        except Exception:
            self._storage.delete(doc.stored_name)
            raise

        logger.info("Document ingested id=%s sha256=%s size=%s", doc.id, fingerprint, size_bytes)
        self._ledger.append(
            AuditAction.UPLOADED,
            actor_id,
            document_id=doc.id,
            fingerprint=doc.fingerprint,
            origin=origin,
            attributes={"originalName": doc.original_name, "fileSize": doc.size_bytes},
        )
        return doc

    def _find_by_fingerprint(self, fingerprint: str) -> Document | None:
        with self._sm() as s:
            return s.scalars(select(Document).where(Document.fingerprint == fingerprint)).one_or_none()

    def get(self, document_id: str) -> Document:
        with self._sm() as s:
            doc = s.get(Document, document_id)
        if doc is None:
            raise NotFound(documentId=document_id)
        return doc

    def list(self) -> list[Document]:
        """All documents, newest ingestion first."""
        with self._sm() as s:
            return list(s.scalars(select(Document).order_by(Document.ingested_at.desc(), Document.id.desc())))

    def chronological(self) -> list[Document]:
        """All documents, oldest ingestion first."""
        with self._sm() as s:
            return list(s.scalars(select(Document).order_by(Document.ingested_at.asc(), Document.id.asc())))

    def view(self, document_id: str, actor_id: str, *, origin: Origin | None = None) -> Document:
        doc = self.get(document_id)
        self._ledger.append(
            AuditAction.VIEWED, actor_id, document_id=doc.id, fingerprint=doc.fingerprint, origin=origin
        )
        return doc

    def days_remaining(self, doc: Document) -> int:
        return days_remaining(doc.retention_expiry, self._clock())

    def open_verified(self, doc: Document) -> BinaryIO:
        """
        Stored content of `doc`, re-verified against its fingerprint, as a rewound spool file.

        The object is read once in chunks, hashed on the way into the spool, and the spool is
        what the caller gets, so what is returned is exactly what was verified. The caller
        closes it.
        """
        spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY)
        try:
            with closing(self._storage.open(doc.stored_name)) as f:
                reader = HashingReader(f)
                shutil.copyfileobj(reader, spool, CHUNK_SIZE)
        except FileNotFoundError:
            spool.close()
            self._alerter.integrity_violation(
                document_id=doc.id, stored_name=doc.stored_name, expected=doc.fingerprint, detail="stored content missing"
            )
            raise IntegrityViolation("Stored content is missing - potential tampering detected", documentId=doc.id)
        except OSError as e:
            spool.close()
            raise IOFailure(f"Failed to read stored content: {e}") from e
        except BaseException:
            spool.close()
            raise

        if not matches(reader.hexdigest(), doc.fingerprint):
            spool.close()
            self._alerter.integrity_violation(
                document_id=doc.id, stored_name=doc.stored_name, expected=doc.fingerprint, detail="sha256 mismatch"
            )
            raise IntegrityViolation(documentId=doc.id)
        spool.seek(0)
        return spool

    def read_verified(self, doc: Document) -> bytes:
        with closing(self.open_verified(doc)) as f:
            return f.read()

    def fetch_content(
        self,
        document_id: str,
        actor_id: str,
        *,
        intent: AuditAction = AuditAction.DOWNLOADED,
        origin: Origin | None = None,
    ) -> tuple[bytes, Document]:
        intent = AuditAction(intent)
        if intent not in FETCH_INTENTS:
            raise ValueError(f"Fetch intent must be VIEWED or DOWNLOADED, not {intent.value}")
        doc = self.get(document_id)
        data = self.read_verified(doc)
        self._ledger.append(intent, actor_id, document_id=doc.id, fingerprint=doc.fingerprint, origin=origin)
        return data, doc

    def attempt_delete(self, document_id: str, actor_id: str, *, now: datetime | None = None) -> None:
        doc = self.get(document_id)
        now = now or self._clock()
        remaining = days_remaining(doc.retention_expiry, now)

        if not is_expired(doc.retention_expiry, now):
            logger.warning(
                "Blocked deletion before retention expiry id=%s actor_id=%s days_remaining=%s",
                doc.id,
                actor_id,
                remaining,
            )
            raise ComplianceViolation(
                "GoBD Compliance Violation: Document cannot be deleted before retention period expires",
                retentionExpiryDate=doc.retention_expiry,
                daysUntilExpiry=remaining,
            )

        if doc.lock_state in LOCKING_STATES:
            logger.warning("Blocked deletion of locked document id=%s actor_id=%s", doc.id, actor_id)
            raise ComplianceViolation(
                "GoBD Compliance Violation: Locked documents cannot be deleted",
                retentionExpiryDate=doc.retention_expiry,
                daysUntilExpiry=remaining,
            )

        # Metadata first so no reader sees a document whose bytes are gone. Ledger entries stay.
        with transaction(self._sm) as s:
            s.execute(delete(Document).where(Document.id == doc.id))
        self._storage.delete(doc.stored_name)
        logger.warning("Document deleted after retention expiry id=%s actor_id=%s", doc.id, actor_id)
