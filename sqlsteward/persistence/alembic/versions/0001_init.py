"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

_ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "sp_versions",
        sa.Column("id", _ID, primary_key=True, autoincrement=True),
        sa.Column("schema_name", sa.String(128), nullable=False),
        sa.Column("procedure_name", sa.String(128), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("definition_hash", sa.String(64), nullable=False),
        sa.Column("definition_text", sa.Text(), nullable=False),
        sa.Column("deployed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("deployed_by", sa.String(128), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("replaced_version", sa.Integer(), nullable=True),
        sa.UniqueConstraint(
            "schema_name", "procedure_name", "version_number", name="uq_sp_versions_number"
        ),
    )
    # Partial unique index: the store-level guard against two active versions.
    op.create_index(
        "uq_sp_versions_active",
        "sp_versions",
        ["schema_name", "procedure_name"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
        mssql_where=sa.text("is_active = 1"),
    )

    op.create_table(
        "sp_drafts",
        sa.Column("id", _ID, primary_key=True, autoincrement=True),
        sa.Column("target_schema", sa.String(128), nullable=False),
        sa.Column("procedure_name", sa.String(128), nullable=False),
        sa.Column("draft_schema", sa.String(128), nullable=False),
        sa.Column("definition_text", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="drafted"),
        sa.Column("source_version", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("tested_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("target_schema", "procedure_name", name="uq_sp_drafts_target"),
    )

    op.create_table(
        "procedure_catalog",
        sa.Column("id", _ID, primary_key=True, autoincrement=True),
        sa.Column("schema_name", sa.String(128), nullable=False),
        sa.Column("procedure_name", sa.String(128), nullable=False),
        sa.Column("definition_text", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("schema_name", "procedure_name", name="uq_procedure_catalog_name"),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", _ID, primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor", sa.String(128), nullable=False),
        sa.Column("operation", sa.String(64), nullable=False),
        sa.Column("target", sa.String(512), nullable=True),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("error_code", sa.String(64), nullable=True),
        sa.Column("detail_json", sa.JSON(), nullable=True),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_operation_occurred_at", "audit_events", ["operation", "occurred_at"])
    op.create_index("ix_audit_events_target", "audit_events", ["target"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_target", table_name="audit_events")
    op.drop_index("ix_audit_events_operation_occurred_at", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("procedure_catalog")
    op.drop_table("sp_drafts")
    op.drop_index("uq_sp_versions_active", table_name="sp_versions")
    op.drop_table("sp_versions")
