"""How procedure definitions are materialized and invoked on a given store.

``SqlServerDialect`` targets engines with native ``CREATE OR ALTER PROCEDURE``. The
``CatalogDialect`` keeps procedure bodies in the ``procedure_catalog`` table and runs them as
parameterized statements, which lets SQLite and PostgreSQL development databases exercise the
full lifecycle.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Protocol

from sqlsteward.core.errors import ValidationFailedError
from sqlsteward.domain.state import StatementPurpose, StatementResult
from sqlsteward.persistence.store import StatementRunner
from sqlsteward.services.virtual_paths import is_identifier


_NAME_PART = r"(?:\[[^\]]+\]|\"[^\"]+\"|[\w$#@]+)"
_HEADER_RE = re.compile(
    rf"^\s*(?:CREATE\s+OR\s+ALTER|CREATE|ALTER)\s+PROC(?:EDURE)?\s+{_NAME_PART}(?:\s*\.\s*{_NAME_PART})?",
    re.IGNORECASE,
)
_AS_RE = re.compile(r"\bAS\b", re.IGNORECASE)
_PARAM_RE = re.compile(r"(?<![@\w])@([A-Za-z_][A-Za-z0-9_]*)")


def _require_identifier(kind: str, value: str) -> str:
    if not is_identifier(value):
        raise ValidationFailedError("identifier", f"Invalid {kind} identifier {value!r}")
    return value


def split_header(definition: str) -> tuple[str | None, str]:
    """Return (parameter declarations, body) of a definition with or without a header."""
    match = _HEADER_RE.match(definition)
    if match is None:
        return None, definition.strip()
    rest = definition[match.end() :]
    as_match = _AS_RE.search(rest)
    if as_match is None:
        return rest.strip() or None, ""
    declarations = rest[: as_match.start()].strip()
    return declarations or None, rest[as_match.end() :].strip()


class ProcedureDialect(Protocol):
    name: str

    async def create_or_alter(self, runner: StatementRunner, schema: str, name: str, definition: str) -> None: ...

    async def invoke(
        self,
        runner: StatementRunner,
        schema: str,
        name: str,
        params: Mapping[str, Any],
    ) -> StatementResult: ...


class SqlServerDialect:
    name = "sqlserver"

    def render_create_or_alter(self, schema: str, name: str, definition: str) -> str:
        _require_identifier("schema", schema)
        _require_identifier("procedure", name)
        declarations, body = split_header(definition)
        header = f"CREATE OR ALTER PROCEDURE [{schema}].[{name}]"
        if declarations:
            header = f"{header} {declarations}"
        return f"{header}\nAS\n{body}"

    def render_invoke(self, schema: str, name: str, params: Mapping[str, Any]) -> str:
        _require_identifier("schema", schema)
        _require_identifier("procedure", name)
        arguments = ", ".join(f"@{_require_identifier('parameter', key)} = :{key}" for key in params)
        return f"EXEC [{schema}].[{name}] {arguments}".rstrip()

    async def create_or_alter(self, runner: StatementRunner, schema: str, name: str, definition: str) -> None:
        await runner.execute(
            self.render_create_or_alter(schema, name, definition),
            purpose=StatementPurpose.PROCEDURE_DDL,
        )

    async def invoke(
        self,
        runner: StatementRunner,
        schema: str,
        name: str,
        params: Mapping[str, Any],
    ) -> StatementResult:
        result = await runner.execute(
            self.render_invoke(schema, name, params),
            dict(params),
            purpose=StatementPurpose.PROCEDURE_INVOKE,
        )
        return StatementResult(rows_affected=result.rows_affected, rows=result.rows)


class CatalogDialect:
    name = "catalog"

    _UPSERT_SQL = (
        "INSERT INTO procedure_catalog (schema_name, procedure_name, definition_text) "
        "VALUES (:schema_name, :procedure_name, :definition_text) "
        "ON CONFLICT (schema_name, procedure_name) "
        "DO UPDATE SET definition_text = excluded.definition_text, updated_at = CURRENT_TIMESTAMP"
    )
    _SELECT_SQL = (
        "SELECT definition_text FROM procedure_catalog "
        "WHERE schema_name = :schema_name AND procedure_name = :procedure_name"
    )

    async def create_or_alter(self, runner: StatementRunner, schema: str, name: str, definition: str) -> None:
        _require_identifier("schema", schema)
        _require_identifier("procedure", name)
        await runner.execute(
            self._UPSERT_SQL,
            {"schema_name": schema, "procedure_name": name, "definition_text": definition},
            purpose=StatementPurpose.SYSTEM,
        )

    async def definition(self, runner: StatementRunner, schema: str, name: str) -> str | None:
        result = await runner.fetch(self._SELECT_SQL, {"schema_name": schema, "procedure_name": name})
        if not result.rows:
            return None
        return str(result.rows[0]["definition_text"])

    async def invoke(
        self,
        runner: StatementRunner,
        schema: str,
        name: str,
        params: Mapping[str, Any],
    ) -> StatementResult:
        definition = await self.definition(runner, schema, name)
        if definition is None:
            raise ValidationFailedError("procedure_missing", f"Procedure {schema}.{name} does not exist")
        _, body = split_header(definition)
        statement = _PARAM_RE.sub(lambda match: f":{match.group(1)}", body).rstrip().rstrip(";")
        result = await runner.execute(statement, dict(params), purpose=StatementPurpose.PROCEDURE_INVOKE)
        return StatementResult(rows_affected=result.rows_affected, rows=result.rows)


def resolve_dialect(setting: str, database_url: str) -> ProcedureDialect:
    choice = (setting or "auto").strip().lower()
    if choice == "auto":
        choice = "sqlserver" if database_url.startswith("mssql") else "catalog"
    if choice == "sqlserver":
        return SqlServerDialect()
    if choice == "catalog":
        return CatalogDialect()
    raise ValueError(f"Unknown procedure dialect {setting!r}")
