from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from sqlsteward.core.config import Settings, get_settings
from sqlsteward.domain.state import Transaction
from sqlsteward.persistence.db import make_engine, make_session_factory
from sqlsteward.persistence.dialects import ProcedureDialect, resolve_dialect
from sqlsteward.persistence.store import SqlAlchemyStore
from sqlsteward.services.audit import OUTCOME_FAILURE, AuditEmitter, AuditSink, DatabaseAuditSink
from sqlsteward.services.safe_write import SafeWriteExecutor
from sqlsteward.services.sp_lifecycle import SYSTEM_ACTOR, SpLifecycleEngine
from sqlsteward.services.sql_validator import SqlValidator
from sqlsteward.services.transactions import TransactionManager


logger = logging.getLogger(__name__)


@dataclass
class Services:
    # One wired set of components per process (or per test); nothing here is a module singleton.
    settings: Settings
    engine: AsyncEngine
    validator: SqlValidator
    transactions: TransactionManager
    audit: AuditEmitter
    executor: SafeWriteExecutor
    dialect: ProcedureDialect
    lifecycle: SpLifecycleEngine
    owns_engine: bool = False

    async def close(self) -> None:
        await self.transactions.shutdown()
        if self.owns_engine:
            await self.engine.dispose()


def build_services(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    audit_sink: AuditSink | None = None,
    dialect: ProcedureDialect | None = None,
) -> Services:
    settings = settings or get_settings()
    owns_engine = engine is None
    engine = engine or make_engine(settings.database_url)
    validator = SqlValidator.from_settings(settings)
    transactions = TransactionManager.from_settings(SqlAlchemyStore(engine), settings)
    sink = audit_sink if audit_sink is not None else DatabaseAuditSink(make_session_factory(engine))
    audit = AuditEmitter(sink, enabled=settings.audit_enabled)
    executor = SafeWriteExecutor(validator, transactions, audit)
    dialect = dialect or resolve_dialect(settings.procedure_dialect, settings.database_url)
    lifecycle = SpLifecycleEngine(executor, validator, dialect, audit, draft_schema=settings.draft_schema)

    async def _on_timeout(record: Transaction) -> None:
        # Watchdog rollbacks have no caller to report to, so they are audited here.
        await audit.emit(
            actor=SYSTEM_ACTOR,
            operation="transaction.timeout",
            target=record.session_id,
            outcome=OUTCOME_FAILURE,
            error_code="TRANSACTION_TIMED_OUT",
            detail={"transaction_id": record.id, "rows_affected_total": record.rows_affected_total},
        )

    transactions.set_timeout_listener(_on_timeout)
    logger.info(
        "services_built dialect=%s require_transactions=%s timeout_s=%s max_rows=%s",
        dialect.name,
        settings.require_transactions,
        settings.transaction_timeout_s,
        settings.max_rows_affected,
    )
    return Services(
        settings=settings,
        engine=engine,
        validator=validator,
        transactions=transactions,
        audit=audit,
        executor=executor,
        dialect=dialect,
        lifecycle=lifecycle,
        owns_engine=owns_engine,
    )
