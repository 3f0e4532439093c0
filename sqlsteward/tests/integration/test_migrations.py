from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from sqlsteward.domain.models import Base


REPO_ROOT = Path(__file__).resolve().parents[3]


def test_initial_migration_matches_models(tmp_path: Path) -> None:
    db_path = tmp_path / "migrated.db"
    config = Config(str(REPO_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(REPO_ROOT / "sqlsteward" / "persistence" / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite+aiosqlite:///{db_path}")
    command.upgrade(config, "head")

    engine = create_engine(f"sqlite:///{db_path}")
    try:
        inspector = inspect(engine)
        assert set(Base.metadata.tables) <= set(inspector.get_table_names())
        for table in Base.metadata.tables.values():
            columns = {column["name"] for column in inspector.get_columns(table.name)}
            assert columns == set(table.columns.keys()), table.name
        indexes = {index["name"]: index for index in inspector.get_indexes("sp_versions")}
        assert indexes["uq_sp_versions_active"]["unique"]
    finally:
        engine.dispose()

    command.downgrade(config, "base")
    engine = create_engine(f"sqlite:///{db_path}")
    try:
        assert "sp_versions" not in inspect(engine).get_table_names()
    finally:
        engine.dispose()
