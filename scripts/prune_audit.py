from __future__ import annotations

import asyncio

from sqlsteward.core.logging import configure_logging
from sqlsteward.persistence.db import get_engine, get_session
from sqlsteward.services.maintenance import prune_audit_events


async def prune() -> None:
    configure_logging()
    try:
        async with get_session() as session:
            deleted = await prune_audit_events(session)
            await session.commit()
            print(f"pruned_audit_events={deleted}")
    finally:
        await get_engine().dispose()


if __name__ == "__main__":
    asyncio.run(prune())
