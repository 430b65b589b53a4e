"""Search query management routes."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from multiscraper.api.deps import Principal, get_db, get_principal, get_scheduler
from multiscraper.config import settings
from multiscraper.db.models import Retailer, SearchQuery, User
from multiscraper.logging_config import log_user_activity
from multiscraper.worker.scheduler import QueryScheduler

router = APIRouter(prefix="/queries", tags=["queries"])


class QueryCreate(BaseModel):
    """Request model for creating a search query."""
    retailer_id: int
    search_text: str = Field(..., min_length=1)
    user_id: Optional[int] = Field(default=None, description="Owner; admin only, defaults to caller")
    interval_minutes: int = Field(default_factory=lambda: settings.default_interval_minutes, ge=1)
    notify_on_new: bool = True
    notify_on_price_drops: bool = True
    price_drop_threshold_percent: Optional[int] = Field(default=None, ge=1, le=100)


class QueryUpdate(BaseModel):
    """Request model for updating a search query."""
    search_text: Optional[str] = Field(default=None, min_length=1)
    interval_minutes: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None
    notify_on_new: Optional[bool] = None
    notify_on_price_drops: Optional[bool] = None
    price_drop_threshold_percent: Optional[int] = Field(default=None, ge=1, le=100)
    clear_threshold: bool = Field(default=False, description="Remove the price-drop threshold")


class QueryResponse(BaseModel):
    """Response model for search query data."""
    id: int
    user_id: int
    retailer_id: int
    search_text: str
    api_url: Optional[str]
    interval_minutes: int
    is_active: bool
    notify_on_new: bool
    notify_on_price_drops: bool
    price_drop_threshold_percent: Optional[int]
    created_at: datetime
    last_executed_at: Optional[datetime]

    class Config:
        from_attributes = True


async def _get_owned_query(db: AsyncSession, query_id: int, principal: Principal) -> SearchQuery:
    query = await db.get(SearchQuery, query_id)
    if query is None or not principal.can_access(query.user_id):
        raise HTTPException(status_code=404, detail="Query not found")
    return query


@router.get("", response_model=List[QueryResponse])
async def list_queries(
    user_id: Optional[int] = Query(None, description="Filter by owner (admin only)"),
    active_only: bool = Query(False),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's queries, or all queries for the admin."""
    stmt = select(SearchQuery).order_by(SearchQuery.id)
    if not principal.is_admin:
        stmt = stmt.where(SearchQuery.user_id == principal.user_id)
    elif user_id is not None:
        stmt = stmt.where(SearchQuery.user_id == user_id)
    if active_only:
        stmt = stmt.where(SearchQuery.is_active.is_(True))

    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/{query_id}", response_model=QueryResponse)
async def get_query(
    query_id: int,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    return await _get_owned_query(db, query_id, principal)


@router.post("", response_model=QueryResponse, status_code=status.HTTP_201_CREATED)
async def create_query(
    payload: QueryCreate,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    scheduler: QueryScheduler = Depends(get_scheduler),
):
    """Create a query; its first run and timer start right after the response."""
    owner_id = principal.user_id
    if principal.is_admin and payload.user_id is not None:
        owner_id = payload.user_id
    if owner_id is None:
        raise HTTPException(status_code=400, detail="user_id is required")
    if not principal.can_access(owner_id):
        raise HTTPException(status_code=403, detail="Cannot create queries for another user")

    if await db.get(User, owner_id) is None:
        raise HTTPException(status_code=404, detail="User not found")
    retailer = await db.get(Retailer, payload.retailer_id)
    if retailer is None:
        raise HTTPException(status_code=404, detail="Retailer not found")

    query = SearchQuery(
        user_id=owner_id,
        retailer_id=payload.retailer_id,
        search_text=payload.search_text.strip(),
        interval_minutes=max(payload.interval_minutes, settings.min_interval_minutes),
        notify_on_new=payload.notify_on_new,
        notify_on_price_drops=payload.notify_on_price_drops,
        price_drop_threshold_percent=payload.price_drop_threshold_percent,
    )
    db.add(query)
    await db.commit()
    await db.refresh(query)

    log_user_activity(owner_id, f"Created query {query.id} on {retailer.name}: {query.search_text}")
    background_tasks.add_task(scheduler.schedule_query, query.id)
    return query


@router.patch("/{query_id}", response_model=QueryResponse)
async def update_query(
    query_id: int,
    payload: QueryUpdate,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    scheduler: QueryScheduler = Depends(get_scheduler),
):
    """Update a query and reschedule or cancel its timer to match."""
    query = await _get_owned_query(db, query_id, principal)

    update_data = payload.model_dump(exclude_unset=True, exclude={"clear_threshold"})
    if "search_text" in update_data and update_data["search_text"] != query.search_text:
        # Cached endpoint belongs to the old search text
        query.api_url = None
    for field, value in update_data.items():
        if value is not None:
            setattr(query, field, value)
    if payload.clear_threshold:
        query.price_drop_threshold_percent = None

    await db.commit()
    await db.refresh(query)

    if not query.is_active:
        scheduler.cancel_query(query_id)
    elif query_id in scheduler.scheduled_query_ids():
        background_tasks.add_task(scheduler.schedule_query, query_id, False)
    else:
        background_tasks.add_task(scheduler.schedule_query, query_id)

    log_user_activity(query.user_id, f"Updated query {query_id}: {sorted(update_data)}")
    return query


@router.delete("/{query_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_query(
    query_id: int,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    scheduler: QueryScheduler = Depends(get_scheduler),
):
    """Delete a query and its notifications, and stop its timer."""
    query = await _get_owned_query(db, query_id, principal)
    scheduler.cancel_query(query_id)
    owner_id = query.user_id
    await db.delete(query)
    await db.commit()
    log_user_activity(owner_id, f"Deleted query {query_id}")
