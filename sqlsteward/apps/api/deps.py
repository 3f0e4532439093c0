from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header, HTTPException, Request, status

from sqlsteward.services.runtime import Services


DEFAULT_ACTOR = "agent"


def get_services(request: Request) -> Services:
    # Services are wired once per app in the lifespan hook (or injected by tests).
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Services are not initialized"},
        )
    return services


@dataclass(frozen=True)
class CallerContext:
    # Identifies who is calling and which logical session owns their transaction.
    session_id: str | None
    actor: str

    def require_session(self) -> str:
        if not self.session_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "SESSION_REQUIRED", "message": "X-Session-Id header is required for this tool"},
            )
        return self.session_id


def get_caller(
    x_session_id: str | None = Header(default=None, alias="X-Session-Id", max_length=128),
    x_actor: str | None = Header(default=None, alias="X-Actor", max_length=128),
) -> CallerContext:
    return CallerContext(session_id=x_session_id or None, actor=x_actor or DEFAULT_ACTOR)
