from __future__ import annotations

from datetime import datetime
from typing import Any

from app.taxvault.utils import isoformat_z


class VaultError(Exception):
    """
    Base class for errors surfaced to callers verbatim (status + message).
    """

    status_code = 500
    default_message = "Vault operation failed"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.message}
        for k, v in self.details.items():
            out[k] = isoformat_z(v) if isinstance(v, datetime) else v
        return out


class UnsupportedType(VaultError):
    status_code = 415
    default_message = "Only PDF and XML files are allowed"


class DuplicateContent(VaultError):
    status_code = 409
    default_message = "Document already exists"


class NotFound(VaultError):
    status_code = 404
    default_message = "Document not found"


class IntegrityViolation(VaultError):
    """Stored bytes no longer match the fingerprint recorded at ingestion."""

    status_code = 500
    default_message = "File integrity check failed - potential tampering detected"


class ComplianceViolation(VaultError):
    status_code = 403
    default_message = "GoBD Compliance Violation"


class NoContent(VaultError):
    status_code = 400
    default_message = "No documents to export"


class IOFailure(VaultError):
    status_code = 503
    default_message = "Storage unavailable"
