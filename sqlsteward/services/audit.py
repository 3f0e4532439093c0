from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sqlsteward.domain.models import AuditEvent
from sqlsteward.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "credential"]
_REDACTED_VALUE = "[REDACTED]"
_MAX_STATEMENT_CHARS = 2000


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_detail(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_detail(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_detail(item) for item in value]
    if isinstance(value, str) and len(value) > _MAX_STATEMENT_CHARS:
        return value[:_MAX_STATEMENT_CHARS] + "..."
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


@dataclass(frozen=True)
class AuditRecord:
    actor: str
    operation: str
    target: str | None
    outcome: str
    error_code: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(Protocol):
    async def emit(self, event: AuditRecord) -> None: ...


class DatabaseAuditSink:
    """Persist audit events with a dedicated session.

    Events are written outside the audited operation's transaction so that failures which roll
    the operation back are still recorded.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def emit(self, event: AuditRecord) -> None:
        async with self._session_factory() as session:
            try:
                session.add(
                    AuditEvent(
                        occurred_at=event.occurred_at,
                        actor=event.actor,
                        operation=event.operation,
                        target=event.target,
                        outcome=event.outcome,
                        error_code=event.error_code,
                        detail_json=event.detail,
                    )
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise


class AuditEmitter:
    """Best-effort front for an audit sink.

    Emission never raises into the audited operation. A sink failure is logged, counted, and
    flips ``degraded`` until the next successful write.
    """

    def __init__(self, sink: AuditSink | None, *, enabled: bool = True) -> None:
        self._sink = sink
        self._enabled = enabled and sink is not None
        self._degraded = False
        self._failures = 0
        self._last_failure_at: datetime | None = None

    @property
    def degraded(self) -> bool:
        return self._degraded

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self._enabled,
            "degraded": self._degraded,
            "failures": self._failures,
            "last_failure_at": self._last_failure_at.isoformat() if self._last_failure_at else None,
        }

    async def emit(
        self,
        *,
        actor: str,
        operation: str,
        target: str | None,
        outcome: str,
        error_code: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> bool:
        if not self._enabled or self._sink is None:
            return False
        event = AuditRecord(
            actor=actor,
            operation=operation,
            target=target,
            outcome=outcome,
            error_code=error_code,
            detail=sanitize_detail(detail or {}),
        )
        try:
            await self._sink.emit(event)
        except Exception as exc:  # noqa: BLE001 - audit sinks must never fail the audited operation
            self._degraded = True
            self._failures += 1
            self._last_failure_at = datetime.now(timezone.utc)
            increment_counter("audit_emit_failures_total")
            logger.warning(
                "audit_event_write_failed operation=%s target=%s outcome=%s",
                operation,
                target,
                outcome,
                exc_info=exc,
            )
            return False
        self._degraded = False
        return True
