from __future__ import annotations

import io

from flask import Blueprint, jsonify, request, send_file

from app.taxvault.api import current_actor, request_origin, vault
from app.taxvault.auth import login_required
from app.taxvault.models import AuditAction, Document
from app.taxvault.store import DocumentStore
from app.taxvault.utils import isoformat_z

bp = Blueprint("documents", __name__)


def _store() -> DocumentStore:
    return vault("store")


def document_dict(doc: Document, days_until_expiry: int | None = None) -> dict:
    out = {
        "id": doc.id,
        "originalName": doc.original_name,
        "storedName": doc.stored_name,
        "mimeType": doc.mime_type,
        "kind": doc.kind,
        "fileSize": doc.size_bytes,
        "fileHash": doc.fingerprint,
        "uploadDate": isoformat_z(doc.ingested_at),
        "retentionExpiryDate": isoformat_z(doc.retention_expiry),
        "status": doc.lock_state.value,
        "uploadedBy": doc.owner_actor_id,
    }
    if days_until_expiry is not None:
        out["daysUntilExpiry"] = days_until_expiry
    return out


@bp.post("/upload")
@login_required
def upload():
    f = request.files.get("document")
    if f is None or not (f.filename or "").strip():
        return jsonify({"error": "No file uploaded"}), 400

    u = current_actor()
    doc = _store().ingest(
        f.stream,
        f.filename or "",
        f.mimetype or "",
        u.actor_id,
        origin=request_origin(),
    )
    return jsonify({"message": "Document uploaded and locked", "document": document_dict(doc)}), 201


@bp.get("")
@login_required
def list_documents():
    store = _store()
    docs = store.list()
    return jsonify({"documents": [document_dict(d, store.days_remaining(d)) for d in docs], "total": len(docs)})


@bp.get("/<document_id>")
@login_required
def get_document(document_id: str):
    store = _store()
    doc = store.view(document_id, current_actor().actor_id, origin=request_origin())
    return jsonify({"document": document_dict(doc, store.days_remaining(doc))})


@bp.get("/<document_id>/download")
@login_required
def download(document_id: str):
    inline = (request.args.get("disposition") or "").strip().lower() == "inline"
    intent = AuditAction.VIEWED if inline else AuditAction.DOWNLOADED
    data, doc = _store().fetch_content(
        document_id, current_actor().actor_id, intent=intent, origin=request_origin()
    )
    resp = send_file(
        io.BytesIO(data),
        mimetype=doc.mime_type,
        as_attachment=not inline,
        download_name=doc.original_name,
        max_age=0,
    )
    resp.headers["X-Content-SHA256"] = doc.fingerprint
    return resp


@bp.delete("/<document_id>")
@login_required
def delete_document(document_id: str):
    _store().attempt_delete(document_id, current_actor().actor_id)
    return jsonify({"message": "Document deleted", "documentId": document_id})
