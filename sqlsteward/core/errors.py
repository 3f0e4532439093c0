from __future__ import annotations

from typing import Any


class StewardError(Exception):
    """Base error for sqlsteward."""

    code = "STEWARD_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationFailedError(StewardError):
    """Statement blocked by the validator; nothing was executed."""

    code = "VALIDATION_FAILED"

    def __init__(self, rule: str, reason: str | None = None) -> None:
        super().__init__(reason or f"Statement blocked by rule {rule}", details={"rule": rule})
        self.rule = rule
        self.reason = reason


class TransactionError(StewardError):
    """Transaction lifecycle violation."""

    code = "TRANSACTION_ERROR"


class AlreadyActiveError(TransactionError):
    """The session already owns an active transaction."""

    code = "TRANSACTION_ALREADY_ACTIVE"


class InvalidStateError(TransactionError):
    """Operation requires an active transaction."""

    code = "TRANSACTION_INVALID_STATE"


class TransactionTimedOutError(InvalidStateError):
    """Transaction passed its deadline and was rolled back."""

    code = "TRANSACTION_TIMED_OUT"


class RowCapExceededError(TransactionError):
    """Rows affected exceeded the configured ceiling; the transaction was rolled back."""

    code = "TRANSACTION_ROW_CAP_EXCEEDED"


class TransactionRequiredError(TransactionError):
    """Mutating statement needs an explicit transaction under the current policy."""

    code = "TRANSACTION_REQUIRED"


class TransactionNotFoundError(TransactionError):
    """No transaction with the given id is known."""

    code = "TRANSACTION_NOT_FOUND"


class InvalidIsolationLevelError(TransactionError):
    """Unsupported isolation level requested."""

    code = "TRANSACTION_INVALID_ISOLATION"


class LifecycleError(StewardError):
    """Stored-procedure lifecycle precondition violation."""

    code = "LIFECYCLE_ERROR"


class DraftAlreadyExistsError(LifecycleError):
    """An undiscarded draft already exists for this procedure."""

    code = "DRAFT_ALREADY_EXISTS"


class DraftNotFoundError(LifecycleError):
    """No draft exists for this procedure."""

    code = "DRAFT_NOT_FOUND"


class DraftNotTestedError(LifecycleError):
    """Deploy requires a successfully tested draft."""

    code = "DRAFT_NOT_TESTED"


class VersionNotFoundError(LifecycleError):
    """Requested procedure version does not exist."""

    code = "VERSION_NOT_FOUND"


class ConcurrentDeployConflictError(LifecycleError):
    """Another deploy for the same procedure won the race; retry."""

    code = "CONCURRENT_DEPLOY_CONFLICT"


class StoreError(StewardError):
    """Opaque failure surfaced by the underlying store."""

    code = "STORE_ERROR"

    def __init__(self, message: str, *, contention: bool = False) -> None:
        super().__init__(message, details={"contention": contention})
        # Lock, serialization, and unique-key failures signal a lost race rather than a bug.
        self.contention = contention
