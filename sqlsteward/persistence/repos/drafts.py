from __future__ import annotations

from typing import Any

from sqlsteward.domain.state import DraftStatus, SpDraftRecord
from sqlsteward.persistence.repos.versions import coerce_datetime
from sqlsteward.persistence.store import StatementRunner


_COLUMNS = (
    "id, target_schema, procedure_name, draft_schema, definition_text, status, "
    "source_version, created_at, tested_at"
)


def _to_record(row: dict[str, Any]) -> SpDraftRecord:
    return SpDraftRecord(
        id=int(row["id"]),
        target_schema=row["target_schema"],
        procedure_name=row["procedure_name"],
        draft_schema=row["draft_schema"],
        definition_text=row["definition_text"],
        status=DraftStatus(row["status"]),
        source_version=int(row["source_version"]) if row["source_version"] is not None else None,
        created_at=coerce_datetime(row["created_at"]),
        tested_at=coerce_datetime(row["tested_at"]),
    )


class DraftRepository:
    def __init__(self, runner: StatementRunner) -> None:
        self._runner = runner

    async def get(self, schema: str, name: str) -> SpDraftRecord | None:
        result = await self._runner.fetch(
            f"SELECT {_COLUMNS} FROM sp_drafts "
            "WHERE target_schema = :target_schema AND procedure_name = :procedure_name",
            {"target_schema": schema, "procedure_name": name},
        )
        return _to_record(result.rows[0]) if result.rows else None

    async def insert(
        self,
        schema: str,
        name: str,
        *,
        draft_schema: str,
        definition: str,
        source_version: int | None,
    ) -> None:
        await self._runner.execute(
            "INSERT INTO sp_drafts (target_schema, procedure_name, draft_schema, definition_text, "
            "status, source_version) "
            "VALUES (:target_schema, :procedure_name, :draft_schema, :definition_text, :status, :source_version)",
            {
                "target_schema": schema,
                "procedure_name": name,
                "draft_schema": draft_schema,
                "definition_text": definition,
                "status": DraftStatus.DRAFTED.value,
                "source_version": source_version,
            },
        )

    async def transition(self, draft_id: int, from_status: DraftStatus, to_status: DraftStatus) -> int:
        # Conditional status change; zero rows means someone else moved the draft first.
        tested_clause = ", tested_at = CURRENT_TIMESTAMP" if to_status == DraftStatus.TESTED else ""
        result = await self._runner.execute(
            f"UPDATE sp_drafts SET status = :to_status{tested_clause} "
            "WHERE id = :draft_id AND status = :from_status",
            {"draft_id": draft_id, "from_status": from_status.value, "to_status": to_status.value},
        )
        return result.rows_affected

    async def delete(self, draft_id: int) -> int:
        result = await self._runner.execute(
            "DELETE FROM sp_drafts WHERE id = :draft_id",
            {"draft_id": draft_id},
        )
        return result.rows_affected
