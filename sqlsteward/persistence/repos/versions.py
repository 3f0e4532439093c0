"""Append-only stored-procedure version history.

Rows are keyed by (schema, procedure, version_number). Version numbers come from
``max(version_number) + 1`` inside the deploying transaction; the unique constraints on the
table turn a lost race into a store error instead of a silent overwrite. Only ``is_active`` and
``replaced_version`` change after insert; the latter points at the version that was live right
before the row last became active, which is what a default rollback restores.
"""

from __future__ import annotations

from datetime import datetime
import hashlib
from typing import Any

from sqlsteward.domain.state import SpVersionRecord
from sqlsteward.persistence.store import StatementRunner


_COLUMNS = (
    "schema_name, procedure_name, version_number, definition_hash, definition_text, "
    "deployed_at, deployed_by, is_active, replaced_version"
)


def definition_hash(definition: str) -> str:
    return hashlib.sha256(definition.encode("utf-8")).hexdigest()


def coerce_datetime(value: Any) -> datetime | None:
    # Raw text queries return strings on SQLite and datetimes elsewhere.
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _to_record(row: dict[str, Any]) -> SpVersionRecord:
    return SpVersionRecord(
        schema_name=row["schema_name"],
        procedure_name=row["procedure_name"],
        version_number=int(row["version_number"]),
        definition_hash=row["definition_hash"],
        definition_text=row["definition_text"],
        deployed_at=coerce_datetime(row["deployed_at"]),
        deployed_by=row["deployed_by"],
        is_active=bool(row["is_active"]),
        replaced_version=int(row["replaced_version"]) if row["replaced_version"] is not None else None,
    )


class VersionStore:
    def __init__(self, runner: StatementRunner) -> None:
        self._runner = runner

    async def list_versions(self, schema: str, name: str) -> list[SpVersionRecord]:
        result = await self._runner.fetch(
            f"SELECT {_COLUMNS} FROM sp_versions "
            "WHERE schema_name = :schema_name AND procedure_name = :procedure_name "
            "ORDER BY version_number ASC",
            {"schema_name": schema, "procedure_name": name},
        )
        return [_to_record(row) for row in result.rows]

    async def get_version(self, schema: str, name: str, version_number: int) -> SpVersionRecord | None:
        result = await self._runner.fetch(
            f"SELECT {_COLUMNS} FROM sp_versions "
            "WHERE schema_name = :schema_name AND procedure_name = :procedure_name "
            "AND version_number = :version_number",
            {"schema_name": schema, "procedure_name": name, "version_number": version_number},
        )
        return _to_record(result.rows[0]) if result.rows else None

    async def get_active(self, schema: str, name: str) -> SpVersionRecord | None:
        result = await self._runner.fetch(
            f"SELECT {_COLUMNS} FROM sp_versions "
            "WHERE schema_name = :schema_name AND procedure_name = :procedure_name AND is_active = :active",
            {"schema_name": schema, "procedure_name": name, "active": True},
        )
        return _to_record(result.rows[0]) if result.rows else None

    async def max_version(self, schema: str, name: str) -> int:
        result = await self._runner.fetch(
            "SELECT MAX(version_number) AS max_version FROM sp_versions "
            "WHERE schema_name = :schema_name AND procedure_name = :procedure_name",
            {"schema_name": schema, "procedure_name": name},
        )
        value = result.rows[0]["max_version"] if result.rows else None
        return int(value) if value is not None else 0

    async def append(
        self,
        schema: str,
        name: str,
        *,
        version_number: int,
        definition: str,
        deployed_by: str,
        active: bool = True,
        replaced_version: int | None = None,
    ) -> None:
        await self._runner.execute(
            "INSERT INTO sp_versions (schema_name, procedure_name, version_number, definition_hash, "
            "definition_text, deployed_by, is_active, replaced_version) "
            "VALUES (:schema_name, :procedure_name, :version_number, :definition_hash, "
            ":definition_text, :deployed_by, :active, :replaced_version)",
            {
                "schema_name": schema,
                "procedure_name": name,
                "version_number": version_number,
                "definition_hash": definition_hash(definition),
                "definition_text": definition,
                "deployed_by": deployed_by,
                "active": active,
                "replaced_version": replaced_version,
            },
        )

    async def set_active(self, schema: str, name: str, version_number: int, active: bool) -> int:
        # Flip a single row; callers compare the affected count against what they read.
        result = await self._runner.execute(
            "UPDATE sp_versions SET is_active = :active "
            "WHERE schema_name = :schema_name AND procedure_name = :procedure_name "
            "AND version_number = :version_number AND is_active = :current",
            {
                "schema_name": schema,
                "procedure_name": name,
                "version_number": version_number,
                "active": active,
                "current": not active,
            },
        )
        return result.rows_affected

    async def set_replaced(self, schema: str, name: str, version_number: int, replaced_version: int | None) -> None:
        await self._runner.execute(
            "UPDATE sp_versions SET replaced_version = :replaced_version "
            "WHERE schema_name = :schema_name AND procedure_name = :procedure_name "
            "AND version_number = :version_number",
            {
                "schema_name": schema,
                "procedure_name": name,
                "version_number": version_number,
                "replaced_version": replaced_version,
            },
        )
