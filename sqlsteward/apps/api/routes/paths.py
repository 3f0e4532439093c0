from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from sqlsteward.apps.api.deps import get_services
from sqlsteward.apps.api.response import SuccessEnvelope, success_response
from sqlsteward.services.runtime import Services
from sqlsteward.services.virtual_paths import resolve, to_path


router = APIRouter(prefix="/paths", tags=["paths"])


class PathContent(BaseModel):
    path: str
    category: str
    schema_name: str
    object_name: str
    version_number: int
    definition_text: str


@router.get("", response_model=SuccessEnvelope[PathContent])
async def read_path(
    request: Request,
    path: str = Query(min_length=1, max_length=512),
    services: Services = Depends(get_services),
) -> dict:
    # Serve the active definition behind a virtual path; only procedures carry versions.
    ref = resolve(path)
    if ref is None:
        raise HTTPException(status_code=400, detail={"code": "INVALID_PATH", "message": f"Invalid path {path}"})
    active = None
    if ref.category.has_source:
        active = await services.lifecycle.read_version(path)
    if active is None:
        raise HTTPException(status_code=404, detail={"code": "PATH_NOT_FOUND", "message": f"Nothing at {path}"})
    payload = PathContent(
        path=to_path(ref),
        category=ref.category.value,
        schema_name=ref.schema,
        object_name=ref.name,
        version_number=active.version_number,
        definition_text=active.definition_text,
    )
    return success_response(request=request, data=payload.model_dump())
