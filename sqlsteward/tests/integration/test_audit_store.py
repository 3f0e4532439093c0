from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from sqlsteward.core.config import get_settings
from sqlsteward.domain.models import AuditEvent, Base
from sqlsteward.persistence.db import get_engine, get_session_factory, make_session_factory
from sqlsteward.services.audit import OUTCOME_SUCCESS, AuditEmitter, AuditRecord, DatabaseAuditSink
from sqlsteward.services.maintenance import prune_audit_events


@pytest.mark.asyncio
async def test_database_sink_persists_sanitized_events(engine) -> None:
    session_factory = make_session_factory(engine)
    audit = AuditEmitter(DatabaseAuditSink(session_factory))
    recorded = await audit.emit(
        actor="agent",
        operation="sp.deploy",
        target="/database/stored_procedures/dbo/GetCustomerOrders.sql",
        outcome=OUTCOME_SUCCESS,
        detail={"version_number": 2, "token": "abc"},
    )
    assert recorded is True
    async with session_factory() as session:
        event = (await session.execute(select(AuditEvent))).scalar_one()
    assert event.operation == "sp.deploy"
    assert event.detail_json == {"version_number": 2, "token": "[REDACTED]"}


@pytest.mark.asyncio
async def test_prune_removes_only_expired_events(engine) -> None:
    session_factory = make_session_factory(engine)
    sink = DatabaseAuditSink(session_factory)
    now = datetime.now(timezone.utc)
    for age_days in (1, 45, 200):
        await sink.emit(
            AuditRecord(
                actor="agent",
                operation="sql.execute",
                target=None,
                outcome=OUTCOME_SUCCESS,
                occurred_at=now - timedelta(days=age_days),
            )
        )
    async with session_factory() as session:
        deleted = await prune_audit_events(session, retention_days=30, now=now)
        await session.commit()
        remaining = (await session.execute(select(func.count()).select_from(AuditEvent))).scalar()
    assert deleted == 2
    assert remaining == 1


@pytest.mark.asyncio
async def test_prune_script_uses_configured_database(tmp_path, monkeypatch, capsys) -> None:
    from scripts import prune_audit

    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'script.db'}")
    monkeypatch.setenv("AUDIT_RETENTION_DAYS", "30")
    _clear_cached_wiring()
    try:
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        sink = DatabaseAuditSink(get_session_factory())
        await sink.emit(
            AuditRecord(
                actor="agent",
                operation="sql.execute",
                target=None,
                outcome=OUTCOME_SUCCESS,
                occurred_at=datetime.now(timezone.utc) - timedelta(days=60),
            )
        )
        await prune_audit.prune()
        assert "pruned_audit_events=1" in capsys.readouterr().out
    finally:
        _clear_cached_wiring()


def _clear_cached_wiring() -> None:
    # Settings, engine, and session factory are cached per process.
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()
