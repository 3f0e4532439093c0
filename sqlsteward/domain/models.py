from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class SpVersion(Base):
    __tablename__ = "sp_versions"
    __table_args__ = (
        UniqueConstraint(
            "schema_name", "procedure_name", "version_number", name="uq_sp_versions_number"
        ),
        # At most one live definition per procedure; concurrent deploys collide here.
        Index(
            "uq_sp_versions_active",
            "schema_name",
            "procedure_name",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
            mssql_where=text("is_active = 1"),
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    schema_name: Mapped[str] = mapped_column(String(128))
    procedure_name: Mapped[str] = mapped_column(String(128))
    # Append-only counter per procedure; never reused or renumbered.
    version_number: Mapped[int] = mapped_column(Integer)
    definition_hash: Mapped[str] = mapped_column(String(64))
    definition_text: Mapped[str] = mapped_column(Text)
    deployed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    deployed_by: Mapped[str] = mapped_column(String(128))
    # The only mutable column on a historical row.
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Version that was live right before this row last became active.
    replaced_version: Mapped[int | None] = mapped_column(Integer, nullable=True)


class SpDraft(Base):
    __tablename__ = "sp_drafts"
    __table_args__ = (
        # One undiscarded draft per procedure name.
        UniqueConstraint("target_schema", "procedure_name", name="uq_sp_drafts_target"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    target_schema: Mapped[str] = mapped_column(String(128))
    procedure_name: Mapped[str] = mapped_column(String(128))
    draft_schema: Mapped[str] = mapped_column(String(128))
    definition_text: Mapped[str] = mapped_column(Text)
    # drafted -> tested -> (deploying, transient inside the deploy transaction)
    status: Mapped[str] = mapped_column(String(16), default="drafted")
    source_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    tested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ProcedureCatalogEntry(Base):
    __tablename__ = "procedure_catalog"
    __table_args__ = (
        UniqueConstraint("schema_name", "procedure_name", name="uq_procedure_catalog_name"),
    )

    # Emulates stored procedures on stores without native support (SQLite, dev Postgres).
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    schema_name: Mapped[str] = mapped_column(String(128))
    procedure_name: Mapped[str] = mapped_column(String(128))
    definition_text: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_operation_occurred_at", "operation", "occurred_at"),
        Index("ix_audit_events_target", "target"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    actor: Mapped[str] = mapped_column(String(128))
    operation: Mapped[str] = mapped_column(String(64))
    target: Mapped[str | None] = mapped_column(String(512), nullable=True)
    # success or failure; error_code carries the failure reason.
    outcome: Mapped[str] = mapped_column(String(16))
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    detail_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
