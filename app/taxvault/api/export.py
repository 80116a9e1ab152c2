from __future__ import annotations

import io

from flask import Blueprint, jsonify, send_file

from app.taxvault.api import current_actor, request_origin, vault
from app.taxvault.auth import login_required
from app.taxvault.export import ExportAssembler
from app.taxvault.utils import isoformat_z

bp = Blueprint("export", __name__)


def _assembler() -> ExportAssembler:
    return vault("assembler")


@bp.post("/tax-authority")
@login_required
def tax_authority():
    bundle = _assembler().build_export(current_actor().actor_id, origin=request_origin())
    # The archive is a one-shot artifact; nothing is kept on disk after delivery.
    try:
        data = bundle.path.read_bytes()
    finally:
        bundle.discard()
    resp = send_file(
        io.BytesIO(data),
        mimetype="application/zip",
        as_attachment=True,
        download_name=bundle.download_name,
        max_age=0,
    )
    resp.headers["X-Export-Document-Count"] = str(bundle.document_count)
    resp.headers["X-Export-Audit-Log-Count"] = str(bundle.audit_entry_count)
    return resp


@bp.get("/preview")
@login_required
def preview():
    p = _assembler().preview()
    return jsonify(
        {
            "documentCount": p.document_count,
            "auditLogCount": p.audit_entry_count,
            "dateRange": {
                "start": isoformat_z(p.oldest_ingestion) or None,
                "end": isoformat_z(p.newest_ingestion) or None,
            },
            "totalSize": p.total_size,
        }
    )
