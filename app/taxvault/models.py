from __future__ import annotations

import enum
import json
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DDL, Boolean, DateTime, Index, Integer, String, Text, event
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.taxvault.utils import utcnow


class Base(DeclarativeBase):
    pass


class LockState(str, enum.Enum):
    LOCKED = "LOCKED"


# States in which a document may not be removed. Every document is born LOCKED and
# nothing transitions it out.
LOCKING_STATES = frozenset({LockState.LOCKED})


class AuditAction(str, enum.Enum):
    UPLOADED = "UPLOADED"
    VIEWED = "VIEWED"
    DOWNLOADED = "DOWNLOADED"
    EXPORT_GENERATED = "EXPORT_GENERATED"


MIME_KINDS = {
    "application/pdf": "PDF",
    "application/xml": "XML",
    "text/xml": "XML",
}


def _new_id() -> str:
    return uuid.uuid4().hex


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    @property
    def actor_id(self) -> str:
        return str(self.id)


class Document(Base):
    """
    An archived, permanently locked document.

    Rows are inserted once by the document store and never updated; the database
    rejects UPDATE statements on this table.
    """

    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_ingested_at", "ingested_at"),
        Index("idx_documents_retention_expiry", "retention_expiry"),
        Index("idx_documents_owner", "owner_actor_id", "ingested_at"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)

    stored_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(64), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)

    ingested_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    retention_expiry: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    owner_actor_id: Mapped[str] = mapped_column(String(64), nullable=False)

    @property
    def lock_state(self) -> LockState:
        return LockState.LOCKED

    @property
    def kind(self) -> str:
        return MIME_KINDS.get(self.mime_type, "")


class AuditEntry(Base):
    """
    Append-only audit trail entry.

    `document_id` deliberately has no foreign key: an entry outlives the document it refers to.
    """

    __tablename__ = "audit_entries"
    __table_args__ = (
        Index("idx_audit_timestamp", "timestamp"),
        Index("idx_audit_actor_timestamp", "actor_id", "timestamp"),
        Index("idx_audit_document_timestamp", "document_id", "timestamp"),
        Index("idx_audit_action_timestamp", "action", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)

    document_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    attributes_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # small JSON object

    @property
    def attributes(self) -> dict[str, Any]:
        if not self.attributes_json:
            return {}
        return json.loads(self.attributes_json)


# Persistence-layer immutability. The marker prefix is what the engine listener in
# app.taxvault.db translates into ComplianceViolation.
COMPLIANCE_MARKER = "COMPLIANCE_VIOLATION"

SQLITE_TRIGGER_SQL = (
    f"""
    CREATE TRIGGER IF NOT EXISTS trg_audit_entries_no_update
    BEFORE UPDATE ON audit_entries
    BEGIN
        SELECT RAISE(ABORT, '{COMPLIANCE_MARKER}: audit entries are immutable and cannot be modified');
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS trg_audit_entries_no_delete
    BEFORE DELETE ON audit_entries
    BEGIN
        SELECT RAISE(ABORT, '{COMPLIANCE_MARKER}: audit entries are immutable and cannot be deleted');
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS trg_documents_no_update
    BEFORE UPDATE ON documents
    BEGIN
        SELECT RAISE(ABORT, '{COMPLIANCE_MARKER}: locked documents cannot be modified');
    END
    """,
)

POSTGRES_TRIGGER_SQL = (
    f"""
    CREATE OR REPLACE FUNCTION taxvault_reject_mutation()
    RETURNS TRIGGER AS $$
    BEGIN
        RAISE EXCEPTION USING MESSAGE = '{COMPLIANCE_MARKER}: ' || TG_OP || ' on ' || TG_TABLE_NAME || ' is not permitted';
    END;
    $$ LANGUAGE plpgsql;
    """,
    "DROP TRIGGER IF EXISTS trg_audit_entries_append_only ON audit_entries",
    "DROP TRIGGER IF EXISTS trg_documents_no_update ON documents",
    """
    CREATE TRIGGER trg_audit_entries_append_only
    BEFORE UPDATE OR DELETE ON audit_entries
    FOR EACH ROW EXECUTE FUNCTION taxvault_reject_mutation();
    """,
    """
    CREATE TRIGGER trg_documents_no_update
    BEFORE UPDATE ON documents
    FOR EACH ROW EXECUTE FUNCTION taxvault_reject_mutation();
    """,
)

for _stmt in SQLITE_TRIGGER_SQL:
    event.listen(Base.metadata, "after_create", DDL(_stmt).execute_if(dialect="sqlite"))
for _stmt in POSTGRES_TRIGGER_SQL:
    event.listen(Base.metadata, "after_create", DDL(_stmt).execute_if(dialect="postgresql"))
