"""The single gate through which mutating SQL reaches the store.

Ad-hoc writes and every statement issued by the stored-procedure lifecycle go through
``SafeWriteExecutor.execute``: validate, bind to the session's transaction (or an implicit one
when policy allows), execute with bound parameters, enforce the row cap, and emit an audit
event whether the statement succeeded or not.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Mapping

from sqlsteward.core.errors import (
    InvalidStateError,
    StewardError,
    TransactionRequiredError,
    ValidationFailedError,
)
from sqlsteward.domain.state import (
    StatementPurpose,
    StatementResult,
    Transaction,
    ValidationContext,
    Verdict,
)
from sqlsteward.services.audit import OUTCOME_FAILURE, OUTCOME_SUCCESS, AuditEmitter
from sqlsteward.services.sql_validator import SqlValidator
from sqlsteward.services.transactions import TransactionManager
from sqlsteward.services.virtual_paths import is_identifier


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteResult:
    rows_affected: int
    transaction_id: str
    rows: list[dict[str, Any]] = field(default_factory=list)
    implicit_transaction: bool = False
    audit_recorded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_affected": self.rows_affected,
            "rows": self.rows,
            "transaction_id": self.transaction_id,
            "implicit_transaction": self.implicit_transaction,
        }


def _check_parameter_names(params: Mapping[str, Any]) -> None:
    for name in params:
        if not is_identifier(str(name)):
            raise ValidationFailedError("parameter_name", f"Invalid parameter name {name!r}")


class SafeWriteExecutor:
    def __init__(
        self,
        validator: SqlValidator,
        transactions: TransactionManager,
        audit: AuditEmitter,
    ) -> None:
        self._validator = validator
        self._transactions = transactions
        self._audit = audit

    @property
    def transactions(self) -> TransactionManager:
        return self._transactions

    def bind(self, session_id: str, actor: str, *, target: str | None = None) -> "BoundExecutor":
        return BoundExecutor(executor=self, session_id=session_id, actor=actor, target=target)

    async def execute(
        self,
        sql: str,
        params: Mapping[str, Any] | None,
        session_id: str,
        *,
        actor: str,
        purpose: StatementPurpose = StatementPurpose.ADHOC_WRITE,
        target: str | None = None,
        transaction_id: str | None = None,
    ) -> WriteResult:
        bound_params = dict(params or {})
        detail: dict[str, Any] = {
            "statement": sql,
            "param_names": sorted(bound_params),
            "purpose": purpose.value,
            "session_id": session_id,
        }
        try:
            transaction = self._resolve_transaction(session_id, transaction_id)
            self._validate(sql, bound_params, in_transaction=transaction is not None, purpose=purpose)
            if transaction is None:
                result, transaction_id = await self._execute_implicit(session_id, sql, bound_params)
                implicit = True
            else:
                transaction_id = transaction.id
                result = await self._transactions.execute(transaction_id, sql, bound_params)
                implicit = False
        except StewardError as exc:
            detail["error"] = exc.message
            detail.update({key: value for key, value in exc.details.items() if key not in detail})
            await self._audit.emit(
                actor=actor,
                operation="sql.execute",
                target=target,
                outcome=OUTCOME_FAILURE,
                error_code=exc.code,
                detail=detail,
            )
            raise
        detail.update({"rows_affected": result.rows_affected, "transaction_id": transaction_id})
        recorded = await self._audit.emit(
            actor=actor,
            operation="sql.execute",
            target=target,
            outcome=OUTCOME_SUCCESS,
            detail=detail,
        )
        return WriteResult(
            rows_affected=result.rows_affected,
            rows=result.rows,
            transaction_id=transaction_id,
            implicit_transaction=implicit,
            audit_recorded=recorded,
        )

    async def fetch(
        self,
        sql: str,
        params: Mapping[str, Any] | None,
        session_id: str,
        *,
        purpose: StatementPurpose = StatementPurpose.SYSTEM,
    ) -> StatementResult:
        # Validated read inside the session's transaction; reads are not audited.
        bound_params = dict(params or {})
        transaction = self._transactions.current(session_id)
        self._validate(sql, bound_params, in_transaction=True, purpose=purpose)
        if transaction is not None:
            return await self._transactions.execute(transaction.id, sql, bound_params)
        transaction = await self._transactions.begin(session_id)
        try:
            return await self._transactions.execute(transaction.id, sql, bound_params)
        finally:
            await self._transactions.rollback(transaction.id)

    def _resolve_transaction(self, session_id: str, transaction_id: str | None) -> Transaction | None:
        if transaction_id is None:
            return self._transactions.current(session_id)
        # An explicitly named transaction must still be active and owned by this session.
        transaction = self._transactions.get(transaction_id)
        if transaction.is_terminal:
            raise InvalidStateError(
                f"Transaction {transaction_id} is {transaction.state.value}",
                details={
                    "transaction_id": transaction_id,
                    "end_reason": transaction.end_reason.value if transaction.end_reason else None,
                },
            )
        if transaction.session_id != session_id:
            raise InvalidStateError(f"Transaction {transaction_id} belongs to another session")
        return transaction

    def _validate(
        self,
        sql: str,
        params: Mapping[str, Any],
        *,
        in_transaction: bool,
        purpose: StatementPurpose,
    ) -> None:
        _check_parameter_names(params)
        result = self._validator.validate(sql, ValidationContext(in_transaction=in_transaction, purpose=purpose))
        if result.verdict == Verdict.BLOCKED:
            raise ValidationFailedError(result.rule or "blocked", result.reason)
        if result.verdict == Verdict.REQUIRES_TRANSACTION:
            raise TransactionRequiredError(
                result.reason or "An explicit transaction is required",
                details={"rule": result.rule},
            )

    async def _execute_implicit(
        self,
        session_id: str,
        sql: str,
        params: Mapping[str, Any],
    ) -> tuple[StatementResult, str]:
        transaction = await self._transactions.begin(session_id)
        try:
            result = await self._transactions.execute(transaction.id, sql, params, rollback_on_error=True)
        except BaseException:
            await self._transactions.rollback(transaction.id)
            raise
        await self._transactions.commit(transaction.id)
        logger.debug("implicit_transaction_committed id=%s rows=%s", transaction.id, result.rows_affected)
        return result, transaction.id


@dataclass(frozen=True)
class BoundExecutor:
    """An executor pinned to one session and actor, handed to repositories and dialects."""

    executor: SafeWriteExecutor
    session_id: str
    actor: str
    target: str | None = None

    async def execute(
        self,
        sql: str,
        params: Mapping[str, Any] | None = None,
        *,
        purpose: StatementPurpose = StatementPurpose.SYSTEM,
    ) -> WriteResult:
        return await self.executor.execute(
            sql,
            params,
            self.session_id,
            actor=self.actor,
            purpose=purpose,
            target=self.target,
        )

    async def fetch(
        self,
        sql: str,
        params: Mapping[str, Any] | None = None,
        *,
        purpose: StatementPurpose = StatementPurpose.SYSTEM,
    ) -> StatementResult:
        return await self.executor.fetch(sql, params, self.session_id, purpose=purpose)
