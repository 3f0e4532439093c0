from __future__ import annotations

from sqlsteward.services.audit import AuditRecord


class RecordingAuditSink:
    # Keep audit events in memory so tests can assert on them without a second DB writer.
    def __init__(self) -> None:
        self.events: list[AuditRecord] = []

    async def emit(self, event: AuditRecord) -> None:
        self.events.append(event)

    def operations(self, *, outcome: str | None = None) -> list[str]:
        return [event.operation for event in self.events if outcome is None or event.outcome == outcome]

    def matching(self, operation: str, *, outcome: str | None = None) -> list[AuditRecord]:
        return [
            event
            for event in self.events
            if event.operation == operation and (outcome is None or event.outcome == outcome)
        ]


class FailingAuditSink:
    # Simulate an unavailable audit store; can be switched back on mid-test.
    def __init__(self) -> None:
        self.failing = True
        self.events: list[AuditRecord] = []

    async def emit(self, event: AuditRecord) -> None:
        if self.failing:
            raise RuntimeError("audit store unavailable")
        self.events.append(event)
