"""Notification routes."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from multiscraper.api.deps import Principal, get_db, get_principal, get_scheduler
from multiscraper.db.models import Notification, NotificationType
from multiscraper.notify.dispatcher import NotificationDispatcher
from multiscraper.worker.scheduler import QueryScheduler

router = APIRouter(prefix="/notifications", tags=["notifications"])


def get_dispatcher(scheduler: QueryScheduler = Depends(get_scheduler)) -> NotificationDispatcher:
    return scheduler.runner.dispatcher


class NotificationResponse(BaseModel):
    """Response model for notification data."""
    id: int
    user_id: int
    product_id: int
    search_query_id: int
    notification_type: NotificationType
    price_drop_percent: Optional[int]
    created_at: datetime
    is_read: bool

    class Config:
        from_attributes = True


class MarkAllReadResult(BaseModel):
    user_id: int
    marked: int


def _resolve_user(principal: Principal, user_id: Optional[int]) -> Optional[int]:
    if principal.is_admin:
        return user_id
    if user_id is not None and user_id != principal.user_id:
        raise HTTPException(status_code=403, detail="Cannot access another user's notifications")
    return principal.user_id


@router.get("", response_model=List[NotificationResponse])
async def list_notifications(
    user_id: Optional[int] = Query(None, description="Filter by user (admin only)"),
    unread_only: bool = Query(False),
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """List notifications, newest first."""
    target = _resolve_user(principal, user_id)

    if unread_only and target is not None:
        return (await dispatcher.unread_for_user(target))[:limit]

    stmt = select(Notification)
    if target is not None:
        stmt = stmt.where(Notification.user_id == target)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)

    result = await db.execute(stmt)
    return result.scalars().all()


@router.post("/mark-all-read", response_model=MarkAllReadResult)
async def mark_all_read(
    user_id: Optional[int] = Query(None, description="Target user (required for admin)"),
    principal: Principal = Depends(get_principal),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    target = _resolve_user(principal, user_id)
    if target is None:
        raise HTTPException(status_code=400, detail="user_id is required")
    marked = await dispatcher.mark_all_as_read(target)
    return MarkAllReadResult(user_id=target, marked=marked)


@router.post("/{notification_id}/read", status_code=204)
async def mark_read(
    notification_id: int,
    principal: Principal = Depends(get_principal),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    owner = None if principal.is_admin else principal.user_id
    if not await dispatcher.mark_as_read(notification_id, user_id=owner):
        raise HTTPException(status_code=404, detail="Notification not found")
