from __future__ import annotations

from datetime import datetime, timezone

from flask import Blueprint, jsonify, request

from app.taxvault.api import ledger
from app.taxvault.auth import login_required
from app.taxvault.ledger import AuditFilter
from app.taxvault.models import AuditAction, AuditEntry
from app.taxvault.utils import isoformat_z

bp = Blueprint("audit", __name__)

DEFAULT_LIMIT = 100
MAX_LIMIT = 1000


class BadQuery(ValueError):
    pass


def entry_dict(e: AuditEntry) -> dict:
    return {
        "id": e.id,
        "timestamp": isoformat_z(e.timestamp),
        "userId": e.actor_id,
        "action": e.action,
        "documentId": e.document_id,
        "fileHash": e.fingerprint,
        "ipAddress": e.ip_address,
        "userAgent": e.user_agent,
        "metadata": e.attributes,
    }


def _parse_datetime(name: str) -> datetime | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as e:
        raise BadQuery(f"{name} must be an ISO 8601 date or datetime") from e
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _parse_int(name: str, default: int, *, minimum: int, maximum: int | None = None) -> int:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        n = int(raw)
    except ValueError as e:
        raise BadQuery(f"{name} must be an integer") from e
    n = max(n, minimum)
    return min(n, maximum) if maximum is not None else n


def _parse_action() -> str | None:
    raw = (request.args.get("action") or "").strip().upper()
    if not raw:
        return None
    try:
        return AuditAction(raw).value
    except ValueError as e:
        raise BadQuery(f"action must be one of {', '.join(a.value for a in AuditAction)}") from e


@bp.errorhandler(BadQuery)
def _bad_query(e: BadQuery):
    return jsonify({"error": str(e)}), 400


@bp.get("/logs")
@login_required
def list_logs():
    flt = AuditFilter(
        since=_parse_datetime("startDate"),
        until=_parse_datetime("endDate"),
        actor_id=(request.args.get("userId") or "").strip() or None,
        action=_parse_action(),
        document_id=(request.args.get("documentId") or "").strip() or None,
    )
    limit = _parse_int("limit", DEFAULT_LIMIT, minimum=1, maximum=MAX_LIMIT)
    skip = _parse_int("skip", 0, minimum=0)
    led = ledger()
    entries = led.query(flt, limit=limit, offset=skip)
    return jsonify(
        {
            "logs": [entry_dict(e) for e in entries],
            "total": led.count(flt),
            "limit": limit,
            "skip": skip,
        }
    )


@bp.get("/logs/<document_id>")
@login_required
def document_logs(document_id: str):
    entries = ledger().query(AuditFilter(document_id=document_id))
    return jsonify({"documentId": document_id, "logs": [entry_dict(e) for e in entries]})


@bp.get("/stats")
@login_required
def stats():
    led = ledger()
    return jsonify(
        {
            "totalLogs": led.count(),
            "actionStats": led.count_by("action"),
            "recentActivity": [entry_dict(e) for e in led.recent(10)],
        }
    )
