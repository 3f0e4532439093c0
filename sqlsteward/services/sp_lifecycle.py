"""Draft -> test -> deploy -> rollback pipeline for stored procedures.

Every step is a transaction opened by the engine under its own session id and every statement
runs through the ``SafeWriteExecutor``. Same-procedure races are settled by the store: the
conditional draft claim, the partial unique index on active versions, and the unique version
number. No in-process lock is involved, so several processes can share one store.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, TypeVar
from uuid import uuid4

from sqlsteward.core.config import get_settings
from sqlsteward.core.errors import (
    ConcurrentDeployConflictError,
    DraftAlreadyExistsError,
    DraftNotFoundError,
    DraftNotTestedError,
    StewardError,
    StoreError,
    ValidationFailedError,
    VersionNotFoundError,
)
from sqlsteward.domain.state import (
    DraftStatus,
    SpDraftRecord,
    SpVersionRecord,
    StatementPurpose,
    ValidationContext,
    Verdict,
)
from sqlsteward.persistence.dialects import ProcedureDialect
from sqlsteward.persistence.repos.drafts import DraftRepository
from sqlsteward.persistence.repos.versions import VersionStore
from sqlsteward.services.audit import OUTCOME_FAILURE, OUTCOME_SUCCESS, AuditEmitter
from sqlsteward.services.safe_write import BoundExecutor, SafeWriteExecutor
from sqlsteward.services.sql_validator import SqlValidator
from sqlsteward.services.virtual_paths import ObjectCategory, procedure_path, resolve


logger = logging.getLogger(__name__)

T = TypeVar("T")

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class DraftTestResult:
    draft: SpDraftRecord
    rows: list[dict[str, Any]] = field(default_factory=list)
    rows_affected: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"draft": self.draft.to_dict(), "rows": self.rows, "rows_affected": self.rows_affected}


@dataclass(frozen=True)
class RollbackResult:
    version: SpVersionRecord
    previous_version: int | None
    changed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version.to_dict(),
            "previous_version": self.previous_version,
            "changed": self.changed,
        }


class SpLifecycleEngine:
    def __init__(
        self,
        executor: SafeWriteExecutor,
        validator: SqlValidator,
        dialect: ProcedureDialect,
        audit: AuditEmitter,
        *,
        draft_schema: str | None = None,
    ) -> None:
        self._executor = executor
        self._transactions = executor.transactions
        self._validator = validator
        self._dialect = dialect
        self._audit = audit
        self._draft_schema = draft_schema or get_settings().draft_schema

    @property
    def draft_schema(self) -> str:
        return self._draft_schema

    async def create_draft(self, schema: str, name: str, definition: str, *, actor: str) -> SpDraftRecord:
        async def _create(target: str) -> SpDraftRecord:
            self._check_definition(definition)
            async with self._transaction(actor, target) as runner:
                drafts = DraftRepository(runner)
                if await drafts.get(schema, name) is not None:
                    raise DraftAlreadyExistsError(f"A draft for {schema}.{name} already exists")
                active = await VersionStore(runner).get_active(schema, name)
                try:
                    await drafts.insert(
                        schema,
                        name,
                        draft_schema=self._draft_schema,
                        definition=definition,
                        source_version=active.version_number if active else None,
                    )
                except StoreError as exc:
                    if exc.contention:
                        raise DraftAlreadyExistsError(f"A draft for {schema}.{name} already exists") from exc
                    raise
                created = await drafts.get(schema, name)
            if created is None:
                raise StoreError(f"Draft for {schema}.{name} was not readable after insert")
            return created

        return await self._audited(
            "sp.draft.create",
            actor,
            schema,
            name,
            _create,
            lambda draft: {"source_version": draft.source_version, "draft_schema": draft.draft_schema},
        )

    async def test_draft(
        self,
        schema: str,
        name: str,
        params: Mapping[str, Any] | None = None,
        *,
        actor: str,
    ) -> DraftTestResult:
        arguments = dict(params or {})

        async def _test(target: str) -> DraftTestResult:
            # Tests never leave residual state: this transaction is always rolled back.
            async with self._transaction(actor, target, commit=False) as runner:
                draft = await DraftRepository(runner).get(schema, name)
                if draft is None:
                    raise DraftNotFoundError(f"No draft exists for {schema}.{name}")
                await self._dialect.create_or_alter(runner, draft.draft_schema, name, draft.definition_text)
                result = await self._dialect.invoke(runner, draft.draft_schema, name, arguments)
            if draft.status == DraftStatus.DRAFTED:
                async with self._transaction(actor, target) as runner:
                    await DraftRepository(runner).transition(draft.id, DraftStatus.DRAFTED, DraftStatus.TESTED)
                    draft = await DraftRepository(runner).get(schema, name) or draft
            return DraftTestResult(draft=draft, rows=result.rows, rows_affected=result.rows_affected)

        return await self._audited(
            "sp.draft.test",
            actor,
            schema,
            name,
            _test,
            lambda outcome: {"param_names": sorted(arguments), "row_count": len(outcome.rows)},
        )

    async def deploy(self, schema: str, name: str, *, actor: str) -> SpVersionRecord:
        async def _deploy(target: str) -> SpVersionRecord:
            async with self._contention_as_conflict(schema, name):
                async with self._transaction(actor, target) as runner:
                    drafts = DraftRepository(runner)
                    versions = VersionStore(runner)
                    draft = await drafts.get(schema, name)
                    if draft is None:
                        raise DraftNotFoundError(f"No draft exists for {schema}.{name}")
                    if draft.status != DraftStatus.TESTED:
                        raise DraftNotTestedError(
                            f"Draft for {schema}.{name} is {draft.status.value}; test it before deploying",
                            details={"status": draft.status.value},
                        )
                    if await drafts.transition(draft.id, DraftStatus.TESTED, DraftStatus.DEPLOYING) != 1:
                        raise ConcurrentDeployConflictError(f"Another deploy of {schema}.{name} claimed the draft")
                    # The previously active row is archived in place; it is the automatic backup.
                    current = await versions.get_active(schema, name)
                    if current is not None and await versions.set_active(
                        schema, name, current.version_number, False
                    ) != 1:
                        raise ConcurrentDeployConflictError(f"Active version of {schema}.{name} changed")
                    version_number = await versions.max_version(schema, name) + 1
                    await versions.append(
                        schema,
                        name,
                        version_number=version_number,
                        definition=draft.definition_text,
                        deployed_by=actor,
                        replaced_version=current.version_number if current else None,
                    )
                    await self._dialect.create_or_alter(runner, schema, name, draft.definition_text)
                    await drafts.delete(draft.id)
                    deployed = await versions.get_version(schema, name, version_number)
            if deployed is None:
                raise StoreError(f"Version {version_number} of {schema}.{name} was not readable after deploy")
            logger.info("sp_deployed schema=%s name=%s version=%s actor=%s", schema, name, version_number, actor)
            return deployed

        return await self._audited(
            "sp.deploy",
            actor,
            schema,
            name,
            _deploy,
            lambda version: {"version_number": version.version_number, "definition_hash": version.definition_hash},
        )

    async def rollback(
        self,
        schema: str,
        name: str,
        target_version: int | None = None,
        *,
        actor: str,
    ) -> RollbackResult:
        async def _rollback(target: str) -> RollbackResult:
            async with self._contention_as_conflict(schema, name):
                async with self._transaction(actor, target) as runner:
                    versions = VersionStore(runner)
                    current = await versions.get_active(schema, name)
                    if target_version is None:
                        if current is None:
                            raise VersionNotFoundError(f"{schema}.{name} has no active version to roll back from")
                        # Follow the row that was live just before the current one, not the
                        # numerically lower version; they differ after an explicit rollback.
                        if current.replaced_version is None:
                            raise VersionNotFoundError(
                                f"{schema}.{name} has no version before {current.version_number}"
                            )
                        restore = await versions.get_version(schema, name, current.replaced_version)
                        if restore is None:
                            raise VersionNotFoundError(
                                f"{schema}.{name} has no version {current.replaced_version}",
                                details={"version_number": current.replaced_version},
                            )
                    else:
                        restore = await versions.get_version(schema, name, target_version)
                        if restore is None:
                            raise VersionNotFoundError(
                                f"{schema}.{name} has no version {target_version}",
                                details={"version_number": target_version},
                            )
                        if restore.is_active:
                            return RollbackResult(version=restore, previous_version=restore.version_number, changed=False)
                    if current is not None and await versions.set_active(
                        schema, name, current.version_number, False
                    ) != 1:
                        raise ConcurrentDeployConflictError(f"Active version of {schema}.{name} changed")
                    if await versions.set_active(schema, name, restore.version_number, True) != 1:
                        raise ConcurrentDeployConflictError(f"Version {restore.version_number} changed concurrently")
                    await versions.set_replaced(
                        schema, name, restore.version_number, current.version_number if current else None
                    )
                    await self._dialect.create_or_alter(runner, schema, name, restore.definition_text)
                    restored = await versions.get_version(schema, name, restore.version_number)
            if restored is None:
                raise StoreError(f"Version {restore.version_number} of {schema}.{name} was not readable after rollback")
            logger.info(
                "sp_rolled_back schema=%s name=%s from=%s to=%s actor=%s",
                schema,
                name,
                current.version_number if current else None,
                restored.version_number,
                actor,
            )
            return RollbackResult(
                version=restored,
                previous_version=current.version_number if current else None,
                changed=True,
            )

        return await self._audited(
            "sp.rollback",
            actor,
            schema,
            name,
            _rollback,
            lambda outcome: {
                "version_number": outcome.version.version_number,
                "previous_version": outcome.previous_version,
                "changed": outcome.changed,
            },
        )

    async def discard_draft(self, schema: str, name: str, *, actor: str) -> SpDraftRecord:
        async def _discard(target: str) -> SpDraftRecord:
            async with self._transaction(actor, target) as runner:
                drafts = DraftRepository(runner)
                draft = await drafts.get(schema, name)
                if draft is None:
                    raise DraftNotFoundError(f"No draft exists for {schema}.{name}")
                await drafts.delete(draft.id)
            return draft

        return await self._audited(
            "sp.draft.discard", actor, schema, name, _discard, lambda draft: {"status": draft.status.value}
        )
    async def get_draft(self, schema: str, name: str) -> SpDraftRecord | None:
        _target(schema, name)
        return await DraftRepository(self._reader()).get(schema, name)

    async def list_versions(self, schema: str, name: str) -> list[SpVersionRecord]:
        _target(schema, name)
        return await VersionStore(self._reader()).list_versions(schema, name)

    async def active_version(self, schema: str, name: str) -> SpVersionRecord | None:
        _target(schema, name)
        return await VersionStore(self._reader()).get_active(schema, name)

    async def read_version(self, path: str) -> SpVersionRecord | None:
        ref = resolve(path)
        if ref is None or ref.category != ObjectCategory.STORED_PROCEDURES:
            return None
        return await self.active_version(ref.schema, ref.name)

    async def read_path(self, path: str) -> str | None:
        active = await self.read_version(path)
        return active.definition_text if active else None

    def _check_definition(self, definition: str) -> None:
        result = self._validator.validate(
            definition,
            ValidationContext(in_transaction=True, purpose=StatementPurpose.PROCEDURE_DDL),
        )
        if result.verdict == Verdict.BLOCKED:
            raise ValidationFailedError(result.rule or "blocked", result.reason)

    def _reader(self) -> BoundExecutor:
        # Reads use a throwaway session so they never join a caller's transaction.
        return self._executor.bind(f"sp-read:{uuid4().hex}", SYSTEM_ACTOR)

    @asynccontextmanager
    async def _transaction(self, actor: str, target: str, *, commit: bool = True) -> AsyncIterator[BoundExecutor]:
        session_id = f"sp-lifecycle:{uuid4().hex}"
        transaction = await self._transactions.begin(session_id)
        runner = self._executor.bind(session_id, actor, target=target)
        try:
            yield runner
        except BaseException:
            await self._transactions.rollback(transaction.id)
            raise
        if commit:
            await self._transactions.commit(transaction.id)
        else:
            await self._transactions.rollback(transaction.id)

    @asynccontextmanager
    async def _contention_as_conflict(self, schema: str, name: str) -> AsyncIterator[None]:
        try:
            yield
        except StoreError as exc:
            if exc.contention:
                raise ConcurrentDeployConflictError(
                    f"Concurrent change to {schema}.{name}; retry the operation"
                ) from exc
            raise

    async def _audited(
        self,
        operation: str,
        actor: str,
        schema: str,
        name: str,
        fn: Callable[[str], Awaitable[T]],
        describe: Callable[[T], dict[str, Any]],
    ) -> T:
        try:
            target = _target(schema, name)
            result = await fn(target)
        except StewardError as exc:
            await self._audit.emit(
                actor=actor,
                operation=operation,
                target=_audit_target(schema, name),
                outcome=OUTCOME_FAILURE,
                error_code=exc.code,
                detail={"error": exc.message, **exc.details},
            )
            raise
        await self._audit.emit(
            actor=actor,
            operation=operation,
            target=target,
            outcome=OUTCOME_SUCCESS,
            detail=describe(result),
        )
        return result


def _target(schema: str, name: str) -> str:
    try:
        return procedure_path(schema, name)
    except ValueError as exc:
        raise ValidationFailedError("identifier", str(exc)) from exc


def _audit_target(schema: str, name: str) -> str:
    # Names that cannot form a virtual path are still recorded as given.
    try:
        return procedure_path(schema, name)
    except ValueError:
        return f"{schema}.{name}"
