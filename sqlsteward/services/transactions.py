"""Explicit transaction lifecycle with an idle-timeout watchdog and a row-affected cap.

Transactions are tracked per logical session (at most one active each) and by id. Every
operation on a transaction takes its lock, so commit/rollback/execute for one session are
processed in arrival order; the watchdog takes the same lock before rolling back.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable, Mapping, TypeVar
from uuid import uuid4

from sqlsteward.core.config import Settings, get_settings
from sqlsteward.core.errors import (
    AlreadyActiveError,
    InvalidIsolationLevelError,
    InvalidStateError,
    RowCapExceededError,
    StoreError,
    TransactionNotFoundError,
    TransactionTimedOutError,
)
from sqlsteward.domain.state import EndReason, StatementResult, Transaction, TransactionState
from sqlsteward.persistence.store import Store
from sqlsteward.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

ISOLATION_LEVELS = frozenset(
    {"READ UNCOMMITTED", "READ COMMITTED", "REPEATABLE READ", "SERIALIZABLE", "SNAPSHOT"}
)

TimeoutListener = Callable[[Transaction], Awaitable[None]]


@dataclass
class _Entry:
    # Private bookkeeping around the public Transaction record.
    record: Transaction
    handle: Any
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    watchdog: asyncio.Task[None] | None = None


class TransactionManager:
    def __init__(
        self,
        store: Store,
        *,
        timeout_s: float | None = None,
        max_rows_affected: int | None = None,
        history_size: int | None = None,
        on_timeout: TimeoutListener | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._timeout_s = float(timeout_s if timeout_s is not None else settings.transaction_timeout_s)
        self._max_rows = int(max_rows_affected if max_rows_affected is not None else settings.max_rows_affected)
        self._history_size = int(history_size if history_size is not None else settings.transaction_history_size)
        self._on_timeout = on_timeout
        self._entries: dict[str, _Entry] = {}
        self._by_session: dict[str, str] = {}
        self._finished: OrderedDict[str, Transaction] = OrderedDict()

    @classmethod
    def from_settings(cls, store: Store, settings: Settings | None = None, **kwargs: Any) -> "TransactionManager":
        settings = settings or get_settings()
        return cls(
            store,
            timeout_s=settings.transaction_timeout_s,
            max_rows_affected=settings.max_rows_affected,
            history_size=settings.transaction_history_size,
            **kwargs,
        )

    @property
    def max_rows_affected(self) -> int:
        return self._max_rows

    def set_timeout_listener(self, listener: TimeoutListener | None) -> None:
        self._on_timeout = listener

    def current(self, session_id: str) -> Transaction | None:
        transaction_id = self._by_session.get(session_id)
        if transaction_id is None:
            return None
        entry = self._entries.get(transaction_id)
        return entry.record if entry is not None else None

    def get(self, transaction_id: str) -> Transaction:
        entry = self._entries.get(transaction_id)
        if entry is not None:
            return entry.record
        finished = self._finished.get(transaction_id)
        if finished is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return finished

    async def begin(self, session_id: str, isolation_level: str | None = None) -> Transaction:
        if isolation_level is not None:
            isolation_level = isolation_level.strip().upper()
            if isolation_level not in ISOLATION_LEVELS:
                raise InvalidIsolationLevelError(f"Unsupported isolation level {isolation_level}")
        if session_id in self._by_session:
            raise AlreadyActiveError(
                f"Session {session_id} already owns transaction {self._by_session[session_id]}",
                details={"transaction_id": self._by_session[session_id]},
            )
        # Reserve the session slot before awaiting the store so a concurrent begin is rejected.
        transaction_id = uuid4().hex
        self._by_session[session_id] = transaction_id
        try:
            handle = await self._store.begin(isolation_level)
        except BaseException:
            # Cancellation while the store connects must free the slot too.
            self._by_session.pop(session_id, None)
            raise
        record = Transaction(
            id=transaction_id,
            session_id=session_id,
            isolation_level=isolation_level,
            started_at=datetime.now(timezone.utc),
            deadline=self._store.monotonic() + self._timeout_s,
        )
        entry = _Entry(record=record, handle=handle)
        self._entries[transaction_id] = entry
        entry.watchdog = asyncio.create_task(self._watch(entry), name=f"txn-watchdog-{transaction_id}")
        logger.info("transaction_begin id=%s session_id=%s isolation=%s", transaction_id, session_id, isolation_level)
        return record

    async def commit(self, transaction_id: str) -> Transaction:
        entry = self._require_entry(transaction_id)
        async with entry.lock:
            await self._ensure_active(entry)
            try:
                await self._store.commit(entry.handle)
            except StoreError:
                # The store closes the connection on a failed commit; record it as undone.
                self._finish(entry, TransactionState.ROLLED_BACK, EndReason.STORE_ERROR)
                raise
            self._finish(entry, TransactionState.COMMITTED, EndReason.COMMITTED)
            return entry.record

    async def rollback(self, transaction_id: str) -> Transaction:
        finished = self._finished.get(transaction_id)
        if finished is not None:
            return finished
        entry = self._require_entry(transaction_id)
        async with entry.lock:
            if entry.record.is_terminal:
                return entry.record
            await self._force_rollback(entry, EndReason.REQUESTED)
            return entry.record

    async def within_transaction(self, transaction_id: str, fn: Callable[[Any], Awaitable[T]]) -> T:
        """Run ``fn(handle)`` against the store handle while the transaction is active."""
        entry = self._require_entry(transaction_id)
        async with entry.lock:
            await self._ensure_active(entry)
            return await fn(entry.handle)

    async def execute(
        self,
        transaction_id: str,
        sql: str,
        params: Mapping[str, Any] | None = None,
        *,
        rollback_on_error: bool = False,
    ) -> StatementResult:
        entry = self._require_entry(transaction_id)
        async with entry.lock:
            await self._ensure_active(entry)
            try:
                result = await self._store.execute(entry.handle, sql, params)
            except StoreError:
                if rollback_on_error:
                    await self._force_rollback(entry, EndReason.STORE_ERROR)
                raise
            entry.record.rows_affected_total += result.rows_affected
            if entry.record.rows_affected_total > self._max_rows:
                total = entry.record.rows_affected_total
                await self._force_rollback(entry, EndReason.ROW_CAP_EXCEEDED)
                raise RowCapExceededError(
                    f"Transaction touched {total} rows (limit {self._max_rows}); all changes were rolled back",
                    details={"rows_affected_total": total, "max_rows_affected": self._max_rows},
                )
            return result

    async def shutdown(self) -> None:
        # Roll back everything still open, e.g. on application shutdown.
        for transaction_id in list(self._entries):
            await self.rollback(transaction_id)

    def _require_entry(self, transaction_id: str) -> _Entry:
        entry = self._entries.get(transaction_id)
        if entry is not None:
            return entry
        finished = self._finished.get(transaction_id)
        if finished is not None:
            raise InvalidStateError(
                f"Transaction {transaction_id} is {finished.state.value}",
                details=_terminal_details(finished),
            )
        raise TransactionNotFoundError(f"Transaction {transaction_id} not found")

    async def _ensure_active(self, entry: _Entry) -> None:
        record = entry.record
        if record.is_terminal:
            raise InvalidStateError(f"Transaction {record.id} is {record.state.value}", details=_terminal_details(record))
        if self._store.monotonic() >= record.deadline:
            await self._expire(entry)
            raise TransactionTimedOutError(
                f"Transaction {record.id} exceeded its {self._timeout_s:g}s timeout and was rolled back",
                details=_terminal_details(record),
            )

    async def _watch(self, entry: _Entry) -> None:
        delay = max(0.0, entry.record.deadline - self._store.monotonic())
        await asyncio.sleep(delay)
        async with entry.lock:
            if entry.record.is_terminal:
                return
            await self._expire(entry)

    async def _expire(self, entry: _Entry) -> None:
        await self._force_rollback(entry, EndReason.TIMED_OUT)
        logger.warning("transaction_timed_out id=%s session_id=%s", entry.record.id, entry.record.session_id)
        if self._on_timeout is not None:
            await self._on_timeout(entry.record)

    async def _force_rollback(self, entry: _Entry, reason: EndReason) -> None:
        # Always honored locally; the store rollback is best-effort once the record is final.
        try:
            await self._store.rollback(entry.handle)
        except StoreError as exc:
            logger.error("transaction_rollback_failed id=%s reason=%s", entry.record.id, reason.value, exc_info=exc)
        finally:
            self._finish(entry, TransactionState.ROLLED_BACK, reason)
        if reason != EndReason.REQUESTED:
            increment_counter(f"transactions_{reason.value}_total")

    def _finish(self, entry: _Entry, state: TransactionState, reason: EndReason) -> None:
        record = entry.record
        record.state = state
        record.end_reason = reason
        record.ended_at = datetime.now(timezone.utc)
        self._entries.pop(record.id, None)
        if self._by_session.get(record.session_id) == record.id:
            self._by_session.pop(record.session_id, None)
        watchdog = entry.watchdog
        if watchdog is not None and watchdog is not asyncio.current_task():
            watchdog.cancel()
        self._finished[record.id] = record
        while len(self._finished) > self._history_size:
            self._finished.popitem(last=False)
        logger.info("transaction_end id=%s state=%s reason=%s", record.id, state.value, reason.value)


def _terminal_details(record: Transaction) -> dict[str, Any]:
    return {
        "transaction_id": record.id,
        "state": record.state.value,
        "end_reason": record.end_reason.value if record.end_reason else None,
    }
