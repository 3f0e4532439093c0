from __future__ import annotations

import pytest

from sqlsteward.services.audit import OUTCOME_FAILURE, OUTCOME_SUCCESS, AuditEmitter, sanitize_detail
from sqlsteward.services.telemetry import counter_value
from sqlsteward.tests.utils.audit import FailingAuditSink, RecordingAuditSink


def test_sanitize_redacts_secrets_and_truncates_statements() -> None:
    payload = {
        "statement": "UPDATE Orders SET Status = :s " + "x" * 5000,
        "password": "hunter2",
        "nested": {"Authorization": "Bearer abc", "param_names": ["s"]},
        "when": object(),
    }
    sanitized = sanitize_detail(payload)
    assert sanitized["password"] == "[REDACTED]"
    assert sanitized["nested"]["Authorization"] == "[REDACTED]"
    assert sanitized["nested"]["param_names"] == ["s"]
    assert len(sanitized["statement"]) == 2003
    assert isinstance(sanitized["when"], str)


@pytest.mark.asyncio
async def test_emit_records_sanitized_event() -> None:
    sink = RecordingAuditSink()
    audit = AuditEmitter(sink)
    recorded = await audit.emit(
        actor="agent-1",
        operation="sql.execute",
        target=None,
        outcome=OUTCOME_SUCCESS,
        detail={"statement": "UPDATE Orders SET Status = :s", "api_key": "k"},
    )
    assert recorded is True
    [event] = sink.events
    assert event.actor == "agent-1"
    assert event.detail["api_key"] == "[REDACTED]"
    assert event.occurred_at.tzinfo is not None


@pytest.mark.asyncio
async def test_sink_failure_degrades_without_raising() -> None:
    sink = FailingAuditSink()
    audit = AuditEmitter(sink)
    recorded = await audit.emit(actor="agent", operation="sp.deploy", target="/x", outcome=OUTCOME_FAILURE)
    assert recorded is False
    assert audit.degraded is True
    assert audit.status()["failures"] == 1
    assert counter_value("audit_emit_failures_total") == 1

    # Recovery clears the degraded signal.
    sink.failing = False
    assert await audit.emit(actor="agent", operation="sp.deploy", target="/x", outcome=OUTCOME_SUCCESS)
    assert audit.degraded is False
    assert len(sink.events) == 1


@pytest.mark.asyncio
async def test_disabled_emitter_is_a_no_op() -> None:
    sink = RecordingAuditSink()
    audit = AuditEmitter(sink, enabled=False)
    assert await audit.emit(actor="a", operation="sql.execute", target=None, outcome=OUTCOME_SUCCESS) is False
    assert sink.events == []
    assert audit.status()["enabled"] is False
