"""
Points Engine — FastAPI Dependencies
=====================================

What:  Request-scoped accessors for the service container, a read-only
       session, and the authenticated user id.
Why:   Routes declare what they need with Depends(); nothing reaches for a
       global. Tests swap the whole graph by passing a container to create_app.

Identity:
    Authentication happens upstream (the identity provider / gateway), which
    forwards the user id in the X-User-Id header. A missing header is a 401.
"""

from typing import AsyncGenerator, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from points_engine.database import open_read_session
from points_engine.services.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


async def get_read_session(
    container: ServiceContainer = Depends(get_container),
) -> AsyncGenerator[AsyncSession, None]:
    async for session in open_read_session(container.session_factory):
        yield session


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return x_user_id.strip()


def get_optional_user_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    if x_user_id and x_user_id.strip():
        return x_user_id.strip()
    return None
