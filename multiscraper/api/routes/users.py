"""User routes."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from multiscraper.api.deps import Principal, get_db, get_principal, get_scheduler, require_admin
from multiscraper.db.models import User
from multiscraper.logging_config import log_user_activity
from multiscraper.worker.scheduler import QueryScheduler

router = APIRouter(prefix="/users", tags=["users"])


class UserResponse(BaseModel):
    """Response model for user data."""
    id: int
    telegram_id: int
    username: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    joined_at: datetime
    is_active: bool
    is_admin: bool

    class Config:
        from_attributes = True


class ForceRunEntry(BaseModel):
    query_id: int
    status: str
    listing_count: int
    notifications: int
    error: Optional[str] = None


class ForceRunResponse(BaseModel):
    user_id: int
    runs: List[ForceRunEntry]


@router.get("", response_model=List[UserResponse])
async def list_users(
    _: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(User).order_by(User.id))
    return result.scalars().all()


@router.post("/{user_id}/force-run", response_model=ForceRunResponse)
async def force_run(
    user_id: int,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    scheduler: QueryScheduler = Depends(get_scheduler),
):
    """Run all of a user's active queries now, outside their timers."""
    if not principal.can_access(user_id):
        raise HTTPException(status_code=403, detail="Cannot run another user's queries")
    if await db.get(User, user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")

    results = await scheduler.force_run_for_user(user_id)
    log_user_activity(user_id, f"Force-ran {len(results)} queries")
    return ForceRunResponse(
        user_id=user_id,
        runs=[
            ForceRunEntry(
                query_id=r.query_id,
                status=r.status,
                listing_count=r.listing_count,
                notifications=len(r.events),
                error=r.error,
            )
            for r in results
        ],
    )
