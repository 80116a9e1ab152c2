"""Initial vault schema: users, documents, audit entries, immutability triggers.

Revision ID: 0001_initial_vault_schema
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from app.taxvault.models import POSTGRES_TRIGGER_SQL, SQLITE_TRIGGER_SQL


# revision identifiers, used by Alembic.
revision: str = "0001_initial_vault_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = set(inspector.get_table_names())

    if "users" not in tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False),
            sa.Column("name", sa.String(255), nullable=False, server_default=""),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("email"),
        )

    if "documents" not in tables:
        op.create_table(
            "documents",
            sa.Column("id", sa.String(32), primary_key=True),
            sa.Column("stored_name", sa.String(255), nullable=False),
            sa.Column("original_name", sa.String(255), nullable=False),
            sa.Column("mime_type", sa.String(64), nullable=False),
            sa.Column("fingerprint", sa.String(64), nullable=False),
            sa.Column("size_bytes", sa.Integer(), nullable=False),
            sa.Column("ingested_at", sa.DateTime(), nullable=False),
            sa.Column("retention_expiry", sa.DateTime(), nullable=False),
            sa.Column("owner_actor_id", sa.String(64), nullable=False),
            sa.UniqueConstraint("stored_name"),
            sa.UniqueConstraint("fingerprint"),
        )
        op.create_index("idx_documents_ingested_at", "documents", ["ingested_at"])
        op.create_index("idx_documents_retention_expiry", "documents", ["retention_expiry"])
        op.create_index("idx_documents_owner", "documents", ["owner_actor_id", "ingested_at"])

    if "audit_entries" not in tables:
        op.create_table(
            "audit_entries",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("timestamp", sa.DateTime(), nullable=False),
            sa.Column("actor_id", sa.String(64), nullable=False),
            sa.Column("action", sa.String(32), nullable=False),
            sa.Column("document_id", sa.String(32), nullable=True),
            sa.Column("fingerprint", sa.String(64), nullable=True),
            sa.Column("ip_address", sa.String(64), nullable=True),
            sa.Column("user_agent", sa.String(512), nullable=True),
            sa.Column("attributes_json", sa.Text(), nullable=True),
        )
        op.create_index("idx_audit_timestamp", "audit_entries", ["timestamp"])
        op.create_index("idx_audit_actor_timestamp", "audit_entries", ["actor_id", "timestamp"])
        op.create_index("idx_audit_document_timestamp", "audit_entries", ["document_id", "timestamp"])
        op.create_index("idx_audit_action_timestamp", "audit_entries", ["action", "timestamp"])

    # Both statement sets are re-runnable (IF NOT EXISTS / DROP IF EXISTS).
    if conn.dialect.name == "sqlite":
        for stmt in SQLITE_TRIGGER_SQL:
            op.execute(stmt)
    elif conn.dialect.name == "postgresql":
        for stmt in POSTGRES_TRIGGER_SQL:
            op.execute(stmt)


def downgrade() -> None:
    conn = op.get_bind()
    if conn.dialect.name == "sqlite":
        for name in ("trg_audit_entries_no_update", "trg_audit_entries_no_delete", "trg_documents_no_update"):
            op.execute(f"DROP TRIGGER IF EXISTS {name}")
    elif conn.dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS trg_audit_entries_append_only ON audit_entries")
        op.execute("DROP TRIGGER IF EXISTS trg_documents_no_update ON documents")
        op.execute("DROP FUNCTION IF EXISTS taxvault_reject_mutation()")

    op.drop_table("audit_entries")
    op.drop_table("documents")
    op.drop_table("users")
