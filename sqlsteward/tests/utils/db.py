from __future__ import annotations

from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine


async def create_orders_table(engine: AsyncEngine, *, rows: int = 0, customer_id: int = 123) -> None:
    # Application table the agent mutates; lives beside the steward's own tables.
    async with engine.begin() as conn:
        await conn.execute(
            text(
                "CREATE TABLE IF NOT EXISTS Orders ("
                "Id INTEGER PRIMARY KEY, CustomerId INTEGER NOT NULL, Status TEXT NOT NULL)"
            )
        )
        for index in range(rows):
            await conn.execute(
                text("INSERT INTO Orders (CustomerId, Status) VALUES (:customer_id, :status)"),
                {"customer_id": customer_id if index % 2 == 0 else customer_id + 1, "status": "open"},
            )


async def fetch_all(engine: AsyncEngine, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
    async with engine.connect() as conn:
        result = await conn.execute(text(sql), params or {})
        return [dict(row) for row in result.mappings().all()]


async def scalar(engine: AsyncEngine, sql: str, params: dict[str, Any] | None = None) -> Any:
    async with engine.connect() as conn:
        result = await conn.execute(text(sql), params or {})
        return result.scalar()
