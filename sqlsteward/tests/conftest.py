from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from sqlsteward.core.config import Settings
from sqlsteward.domain.models import Base
from sqlsteward.persistence.db import make_engine
from sqlsteward.services.runtime import build_services
from sqlsteward.services.telemetry import reset_counters
from sqlsteward.tests.utils.audit import RecordingAuditSink
from sqlsteward.tests.utils.db import create_orders_table


@pytest.fixture(autouse=True)
def reset_telemetry() -> None:
    # Counters are process-wide; isolate them per test.
    reset_counters()
    yield
    reset_counters()


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    # File-backed SQLite so every transaction gets its own connection, as with a server store.
    return f"sqlite+aiosqlite:///{tmp_path / 'sqlsteward.db'}"


@pytest.fixture
def settings(database_url: str) -> Settings:
    return Settings(
        _env_file=None,
        database_url=database_url,
        procedure_dialect="catalog",
        require_transactions=True,
        transaction_timeout_s=30.0,
        max_rows_affected=20,
    )


@pytest_asyncio.fixture
async def engine(database_url: str):
    engine = make_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await create_orders_table(engine, rows=10)
    yield engine
    await engine.dispose()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest_asyncio.fixture
async def services(settings: Settings, engine, audit_sink: RecordingAuditSink):
    services = build_services(settings, engine=engine, audit_sink=audit_sink)
    yield services
    await services.close()
