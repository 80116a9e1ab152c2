"""
Out-of-band operator alerts for security events (content diverging from its fingerprint).
"""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Alerter:
    email_to: str = ""
    smtp_server: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = False
    smtp_timeout: float = 10.0

    @property
    def email_enabled(self) -> bool:
        return bool(self.email_to and self.smtp_server)

    def integrity_violation(self, *, document_id: str, stored_name: str, expected: str, detail: str) -> None:
        logger.critical(
            "SECURITY ALERT: integrity check failed document_id=%s stored_name=%s expected_sha256=%s detail=%s",
            document_id,
            stored_name,
            expected,
            detail,
        )
        if not self.email_enabled:
            return
        msg = EmailMessage()
        msg["Subject"] = f"[Tax Vault] SECURITY ALERT: integrity violation on document {document_id}"
        msg["From"] = self.smtp_username or self.email_to
        msg["To"] = self.email_to
        msg.set_content(
            "Stored content no longer matches the fingerprint recorded at ingestion.\n\n"
            f"Document ID: {document_id}\n"
            f"Stored file: {stored_name}\n"
            f"Expected SHA-256: {expected}\n"
            f"Detail: {detail}\n"
        )
        try:
            with smtplib.SMTP(self.smtp_server, int(self.smtp_port), timeout=self.smtp_timeout) as s:
                if self.smtp_use_tls:
                    s.starttls()
                if self.smtp_username:
                    s.login(self.smtp_username, self.smtp_password)
                s.send_message(msg)
        except (smtplib.SMTPException, OSError):
            # The violation itself is already logged; a failed email must not mask it.
            logger.exception("Failed to send integrity alert email for document_id=%s", document_id)


def alerter_from_config(config: dict) -> Alerter:
    return Alerter(
        email_to=(config.get("ALERT_EMAIL_TO") or "").strip(),
        smtp_server=(config.get("SMTP_SERVER") or "").strip(),
        smtp_port=int(config.get("SMTP_PORT") or 587),
        smtp_username=(config.get("SMTP_USERNAME") or "").strip(),
        smtp_password=config.get("SMTP_PASSWORD") or "",
        smtp_use_tls=bool(config.get("SMTP_USE_TLS")),
        smtp_timeout=float(config.get("SMTP_TIMEOUT") or 10),
    )
