import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request

from app.taxvault.alerts import alerter_from_config
from app.taxvault.api.audit import bp as audit_bp
from app.taxvault.api.documents import bp as documents_bp
from app.taxvault.api.export import bp as export_bp
from app.taxvault.auth import bp as auth_bp, load_current_user
from app.taxvault.config import load_config, vault_settings_from_config
from app.taxvault.db import init_db, teardown_db_session
from app.taxvault.errors import VaultError
from app.taxvault.export import ExportAssembler
from app.taxvault.ledger import AuditLedger
from app.taxvault.routes import bp as routes_bp
from app.taxvault.storage import S3Storage, storage_from_config
from app.taxvault.store import DocumentStore


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("app.taxvault").setLevel(level)
    app.logger.setLevel(level)


def _init_vault(app: Flask) -> None:
    sm = app.extensions["sqlalchemy_sessionmaker"]
    settings = vault_settings_from_config(app.config)
    storage = storage_from_config(app.config)
    ledger = AuditLedger(sm)
    store = DocumentStore(sm, storage, ledger, settings, alerter=alerter_from_config(app.config))
    app.extensions["taxvault"] = {
        "settings": settings,
        "storage": storage,
        "ledger": ledger,
        "store": store,
        "assembler": ExportAssembler(store, ledger, sm, settings),
    }


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    _configure_logging(app)

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage config check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            raise RuntimeError(f"Missing required S3 settings: {', '.join(missing_s3)}")

    _init_vault(app)
    storage = app.extensions["taxvault"]["storage"]
    if isinstance(storage, S3Storage) and storage.object_lock:
        app.logger.info("S3 object lock enabled; objects are retained in COMPLIANCE mode")

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(documents_bp, url_prefix="/api/documents")
    app.register_blueprint(audit_bp, url_prefix="/api/audit")
    app.register_blueprint(export_bp, url_prefix="/api/export")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(VaultError)
    def _vault_error(e: VaultError):  # type: ignore[no-redef]
        if e.status_code >= 500:
            app.logger.error(
                "%s on %s %s (request_id=%s): %s",
                type(e).__name__,
                request.method,
                request.path,
                getattr(g, "request_id", None),
                e.message,
            )
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"error": "File too large. Maximum size is 50MB."}), 413

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "Internal server error"}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
