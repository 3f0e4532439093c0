from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from sqlsteward.core.config import get_settings
from sqlsteward.domain.models import AuditEvent


logger = logging.getLogger(__name__)


async def prune_audit_events(
    session: AsyncSession,
    *,
    retention_days: int | None = None,
    now: datetime | None = None,
) -> int:
    # Remove audit events beyond the retention window; callers own the commit.
    days = get_settings().audit_retention_days if retention_days is None else retention_days
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
    result = await session.execute(delete(AuditEvent).where(AuditEvent.occurred_at < cutoff))
    deleted = result.rowcount or 0
    logger.info("audit_events_pruned deleted=%s retention_days=%s", deleted, days)
    return deleted
