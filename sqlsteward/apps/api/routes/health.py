from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from sqlsteward.apps.api.deps import get_services
from sqlsteward.apps.api.response import SuccessEnvelope, success_response
from sqlsteward.persistence.db import pool_stats
from sqlsteward.services.runtime import Services
from sqlsteward.services.telemetry import counters_snapshot


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    audit: dict
    counters: dict[str, int]
    database: dict[str, int | None]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request, services: Services = Depends(get_services)) -> dict:
    # A failing audit sink degrades health but never takes the service down.
    payload = HealthResponse(
        status="degraded" if services.audit.degraded else "ok",
        audit=services.audit.status(),
        counters=counters_snapshot(),
        database=pool_stats(services.engine),
    )
    return success_response(request=request, data=payload.model_dump())
