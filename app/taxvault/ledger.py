"""
Audit Ledger: append-only record of every action taken against a document or the system.

There is deliberately no update or delete entry point. The database rejects UPDATE/DELETE on
`audit_entries` (see models.py) and the engine reports such attempts as ComplianceViolation.

Appends are best-effort: each one runs in its own transaction, and a failure is logged and
handed to the ledger's error channel instead of failing the business operation that caused it.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from app.taxvault.db import transaction
from app.taxvault.models import AuditAction, AuditEntry
from app.taxvault.utils import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Origin:
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class AuditFilter:
    since: datetime | None = None  # inclusive
    until: datetime | None = None  # inclusive
    actor_id: str | None = None
    action: AuditAction | str | None = None
    document_id: str | None = None


@dataclass(frozen=True)
class LedgerFailure:
    action: str
    actor_id: str
    document_id: str | None
    error: BaseException
    occurred_at: datetime = field(default_factory=utcnow)


GROUPINGS = {
    "action": AuditEntry.action,
    "actor_id": AuditEntry.actor_id,
    "document_id": AuditEntry.document_id,
}


class AuditLedger:
    def __init__(
        self,
        sm: sessionmaker[Session],
        *,
        clock: Clock = utcnow,
        on_error: Callable[[LedgerFailure], None] | None = None,
        max_failures: int = 100,
    ) -> None:
        self._sm = sm
        self._clock = clock
        self._on_error = on_error
        self.failures: deque[LedgerFailure] = deque(maxlen=max_failures)

    def append(
        self,
        action: AuditAction | str,
        actor_id: str,
        *,
        document_id: str | None = None,
        fingerprint: str | None = None,
        origin: Origin | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> AuditEntry | None:
        action = AuditAction(action)
        origin = origin or Origin()
        entry = AuditEntry(
            timestamp=self._clock(),
            actor_id=str(actor_id),
            action=action.value,
            document_id=document_id,
            fingerprint=fingerprint,
            ip_address=origin.ip_address,
            user_agent=origin.user_agent[:512] if origin.user_agent else None,
            attributes_json=json.dumps(attributes, sort_keys=True, default=str) if attributes else None,
        )
        try:
            with transaction(self._sm) as s:
                s.add(entry)
        except Exception as e:
            logger.exception(
                "Audit append failed action=%s actor_id=%s document_id=%s", action.value, actor_id, document_id
            )
            self._report(LedgerFailure(action=action.value, actor_id=str(actor_id), document_id=document_id, error=e))
            return None
        return entry

    def _report(self, failure: LedgerFailure) -> None:
        self.failures.append(failure)
        if self._on_error is None:
            return
        try:
            self._on_error(failure)
        except Exception:
            logger.exception("Audit failure callback raised")

    def _filtered(self, stmt, flt: AuditFilter | None):
        if flt is None:
            return stmt
        if flt.since is not None:
            stmt = stmt.where(AuditEntry.timestamp >= flt.since)
        if flt.until is not None:
            stmt = stmt.where(AuditEntry.timestamp <= flt.until)
        if flt.actor_id:
            stmt = stmt.where(AuditEntry.actor_id == str(flt.actor_id))
        if flt.action:
            stmt = stmt.where(AuditEntry.action == AuditAction(flt.action).value)
        if flt.document_id:
            stmt = stmt.where(AuditEntry.document_id == flt.document_id)
        return stmt

    def query(self, flt: AuditFilter | None = None, *, limit: int | None = None, offset: int = 0) -> list[AuditEntry]:
        """Matching entries, newest first."""
        stmt = self._filtered(select(AuditEntry), flt).order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._sm() as s:
            return list(s.scalars(stmt))

    def count(self, flt: AuditFilter | None = None) -> int:
        stmt = self._filtered(select(func.count(AuditEntry.id)), flt)
        with self._sm() as s:
            return int(s.scalar(stmt) or 0)

    def count_by(self, grouping: str) -> dict[str | None, int]:
        if grouping not in GROUPINGS:
            raise ValueError(f"Unsupported grouping {grouping!r}; expected one of {sorted(GROUPINGS)}")
        col = GROUPINGS[grouping]
        stmt = select(col, func.count(AuditEntry.id)).group_by(col)
        with self._sm() as s:
            return {key: int(n) for key, n in s.execute(stmt)}

    def recent(self, limit: int = 10) -> list[AuditEntry]:
        return self.query(limit=limit)

    def chronological(self) -> list[AuditEntry]:
        """Every entry, oldest first."""
        stmt = select(AuditEntry).order_by(AuditEntry.timestamp.asc(), AuditEntry.id.asc())
        with self._sm() as s:
            return list(s.scalars(stmt))
