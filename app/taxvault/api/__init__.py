from __future__ import annotations

from flask import current_app, g, request

from app.taxvault.ledger import AuditLedger, Origin
from app.taxvault.models import User


def request_origin() -> Origin:
    return Origin(ip_address=request.remote_addr, user_agent=request.headers.get("User-Agent"))


def current_actor() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        # login_required should prevent this
        raise RuntimeError("No current user")
    return u


def vault(name: str):
    """The store, ledger or assembler wired up in create_app()."""
    return current_app.extensions["taxvault"][name]


def ledger() -> AuditLedger:
    return vault("ledger")
