import os
from dataclasses import dataclass
from pathlib import Path


COMPLIANCE_STANDARD = (
    "GoBD (Grundsätze zur ordnungsmäßigen Führung und Aufbewahrung von Büchern, Aufzeichnungen "
    "und Unterlagen in elektronischer Form sowie zum Datenzugriff)"
)
LEGAL_BASIS = "§146 AO, §147 AO"


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    storage_backend: str
    upload_dir: str
    export_dir: str
    retention_years: int

    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str
    s3_object_lock: bool

    alert_email_to: str
    smtp_server: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    smtp_use_tls: bool
    smtp_timeout: float


@dataclass(frozen=True)
class VaultSettings:
    """
    Values the document store and export assembler are constructed with.
    """

    storage_dir: Path
    export_dir: Path
    retention_years: int = 10
    compliance_standard: str = COMPLIANCE_STANDARD
    legal_basis: str = LEGAL_BASIS

    @property
    def retention_label(self) -> str:
        return f"{self.retention_years} years"


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getflag(name: str) -> bool:
    return _getenv(name).lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    upload_dir = _getenv("UPLOAD_DIR", "./uploads")
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///taxvault.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        upload_dir=upload_dir,
        export_dir=_getenv("EXPORT_DIR", os.path.join(upload_dir, "exports")),
        retention_years=int(_getenv("RETENTION_YEARS", "10")),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "eu-central-1"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        s3_object_lock=_getflag("S3_OBJECT_LOCK"),
        alert_email_to=_getenv("ALERT_EMAIL_TO", ""),
        smtp_server=_getenv("SMTP_SERVER", ""),
        smtp_port=int(_getenv("SMTP_PORT", "587")),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        smtp_use_tls=_getflag("SMTP_USE_TLS"),
        smtp_timeout=float(_getenv("SMTP_TIMEOUT", "10")),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "STORAGE_BACKEND": s.storage_backend,
        "UPLOAD_DIR": s.upload_dir,
        "EXPORT_DIR": s.export_dir,
        "RETENTION_YEARS": s.retention_years,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "S3_OBJECT_LOCK": s.s3_object_lock,
        "ALERT_EMAIL_TO": s.alert_email_to,
        "SMTP_SERVER": s.smtp_server,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "SMTP_USE_TLS": s.smtp_use_tls,
        "SMTP_TIMEOUT": s.smtp_timeout,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # file upload limit (50MB)
        "MAX_CONTENT_LENGTH": 50 * 1024 * 1024,
    }


def vault_settings_from_config(config: dict) -> VaultSettings:
    upload_dir = Path(config.get("UPLOAD_DIR") or "./uploads")
    export_dir = Path(config.get("EXPORT_DIR") or upload_dir / "exports")
    return VaultSettings(
        storage_dir=upload_dir,
        export_dir=export_dir,
        retention_years=int(config.get("RETENTION_YEARS") or 10),
    )
