"""FastAPI dependencies."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from bookrec.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service starting")
    return container


async def get_user_id(x_user_id: int = Header(..., ge=1)) -> int:
    """Caller identity, set by the upstream gateway after authentication."""
    return x_user_id
