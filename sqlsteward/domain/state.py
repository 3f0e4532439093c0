from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class StatementPurpose(str, Enum):
    # Selects which validator rules apply to a statement.
    ADHOC_WRITE = "adhoc_write"
    PROCEDURE_DDL = "procedure_ddl"
    PROCEDURE_INVOKE = "procedure_invoke"
    SYSTEM = "system"


class Verdict(str, Enum):
    ALLOWED = "allowed"
    BLOCKED = "blocked"
    REQUIRES_TRANSACTION = "requires_transaction"


@dataclass(frozen=True)
class ValidationContext:
    in_transaction: bool = False
    purpose: StatementPurpose = StatementPurpose.ADHOC_WRITE


@dataclass(frozen=True)
class ValidationResult:
    verdict: Verdict
    rule: str | None = None
    reason: str | None = None

    @property
    def allowed(self) -> bool:
        return self.verdict == Verdict.ALLOWED


class TransactionState(str, Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class EndReason(str, Enum):
    COMMITTED = "committed"
    REQUESTED = "requested"
    TIMED_OUT = "timed_out"
    ROW_CAP_EXCEEDED = "row_cap_exceeded"
    STORE_ERROR = "store_error"


@dataclass
class Transaction:
    id: str
    session_id: str
    isolation_level: str | None
    started_at: datetime
    # Monotonic-clock deadline; the watchdog rolls back once it passes.
    deadline: float
    state: TransactionState = TransactionState.ACTIVE
    rows_affected_total: int = 0
    end_reason: EndReason | None = None
    ended_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state != TransactionState.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "state": self.state.value,
            "isolation_level": self.isolation_level,
            "started_at": self.started_at.isoformat(),
            "rows_affected_total": self.rows_affected_total,
            "end_reason": self.end_reason.value if self.end_reason else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


@dataclass(frozen=True)
class StatementResult:
    rows_affected: int
    rows: list[dict[str, Any]] = field(default_factory=list)


class DraftStatus(str, Enum):
    DRAFTED = "drafted"
    TESTED = "tested"
    DEPLOYING = "deploying"


@dataclass(frozen=True)
class SpDraftRecord:
    id: int
    target_schema: str
    procedure_name: str
    draft_schema: str
    definition_text: str
    status: DraftStatus
    source_version: int | None
    created_at: datetime | None
    tested_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema": self.target_schema,
            "name": self.procedure_name,
            "draft_schema": self.draft_schema,
            "definition_text": self.definition_text,
            "status": self.status.value,
            "source_version": self.source_version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "tested_at": self.tested_at.isoformat() if self.tested_at else None,
        }


@dataclass(frozen=True)
class SpVersionRecord:
    schema_name: str
    procedure_name: str
    version_number: int
    definition_hash: str
    definition_text: str
    deployed_at: datetime | None
    deployed_by: str
    is_active: bool
    replaced_version: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema": self.schema_name,
            "name": self.procedure_name,
            "version_number": self.version_number,
            "definition_hash": self.definition_hash,
            "definition_text": self.definition_text,
            "deployed_at": self.deployed_at.isoformat() if self.deployed_at else None,
            "deployed_by": self.deployed_by,
            "is_active": self.is_active,
            "replaced_version": self.replaced_version,
        }
