import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.taxvault.db import make_engine, make_sessionmaker, transaction
from app.taxvault.models import Base, User


def create_schema(*, database_url: str | None = None) -> None:
    """
    Create tables, indexes and immutability triggers directly from the models.
    Local/dev convenience; deployments run `alembic upgrade head` instead.
    """
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///taxvault.db").strip()
    engine = make_engine(db_url)
    Base.metadata.create_all(bind=engine)
    engine.dispose()
    print("Schema created.")


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@taxvault.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    admin_name = (os.environ.get("ADMIN_NAME") or "Administrator").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///taxvault.db").strip()

    engine = make_engine(db_url)
    with transaction(make_sessionmaker(engine)) as s:
        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            s.add(
                User(
                    email=admin_email,
                    name=admin_name,
                    password_hash=generate_password_hash(admin_password),
                    is_active=True,
                )
            )
    engine.dispose()

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    if "--create-schema" in sys.argv[1:]:
        create_schema(database_url=None)
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
