"""FastAPI dependencies."""

import secrets
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from multiscraper.config import settings
from multiscraper.db.models import User
from multiscraper.db.session import get_db as _session_get_db
from multiscraper.worker.scheduler import QueryScheduler, query_scheduler


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency for database session."""
    async for session in _session_get_db():
        yield session


def get_scheduler() -> QueryScheduler:
    """Dependency for the query scheduler."""
    return query_scheduler


@dataclass
class Principal:
    """Authenticated caller: the admin, or one user scoped to their own rows."""

    is_admin: bool
    user_id: Optional[int] = None

    def can_access(self, user_id: int) -> bool:
        return self.is_admin or self.user_id == user_id


async def get_principal(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """
    Resolve the X-API-Key header to a principal.

    Raises:
        HTTPException: 401 if the header is missing or unknown
    """
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-API-Key header",
        )

    if settings.admin_api_key and secrets.compare_digest(x_api_key, settings.admin_api_key):
        return Principal(is_admin=True)

    result = await db.execute(
        select(User).where(User.api_token == x_api_key, User.is_active.is_(True))
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
    return Principal(is_admin=user.is_admin, user_id=user.id)


async def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    """Dependency that only lets the admin principal through."""
    if not principal.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return principal
