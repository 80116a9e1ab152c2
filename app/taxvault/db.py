from __future__ import annotations

from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.taxvault.errors import ComplianceViolation
from app.taxvault.models import COMPLIANCE_MARKER


def _compliance_message(raw: str) -> str:
    detail = raw[raw.index(COMPLIANCE_MARKER) + len(COMPLIANCE_MARKER):].lstrip(": ")
    detail = detail.splitlines()[0].strip() if detail else ""
    return f"GoBD Compliance Violation: {detail}" if detail else ComplianceViolation.default_message


def install_compliance_guard(engine: Engine) -> None:
    """
    Surface immutability-trigger rejections as ComplianceViolation, whatever issued the statement.
    """

    @event.listens_for(engine, "handle_error")
    def _translate_trigger_rejection(context):  # type: ignore[no-redef]
        orig = context.original_exception
        if orig is not None and COMPLIANCE_MARKER in str(orig):
            raise ComplianceViolation(_compliance_message(str(orig))) from orig


def make_engine(db_url: str) -> Engine:
    is_postgres = db_url.startswith("postgres")
    engine_kwargs: dict[str, object] = {
        "future": True,
        "pool_pre_ping": True,
    }
    if is_postgres:
        engine_kwargs.update(
            {
                "pool_recycle": 1800,
                "pool_size": 5,
                "max_overflow": 10,
                "pool_timeout": 30,
            }
        )
    elif db_url.startswith("sqlite"):
        # Concurrent ingests share the file; wait on the write lock instead of failing.
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(db_url, **engine_kwargs)
    install_compliance_guard(engine)
    return engine


def make_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def init_db(app: Flask) -> None:
    engine = make_engine(app.config["DATABASE_URL"])
    if app.config.get("ENV") != "production":
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            app.logger.debug("DB connection checkout from pool")
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = make_sessionmaker(engine)


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session. Use inside request handlers.
    """
    if hasattr(g, "db_session") and g.db_session is not None:
        return g.db_session
    if app is None:
        from flask import current_app

        app = current_app
    sm = app.extensions["sqlalchemy_sessionmaker"]
    g.db_session = sm()  # type: ignore[assignment]
    return g.db_session


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is not None:
        s.close()
        g.db_session = None


@contextmanager
def transaction(sm: sessionmaker[Session]) -> Generator[Session, None, None]:
    """
    Yields a session from `sm` and commits/rolls back around it.
    """
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request helper for scripts and tests.
    """
    with transaction(app.extensions["sqlalchemy_sessionmaker"]) as s:
        yield s
