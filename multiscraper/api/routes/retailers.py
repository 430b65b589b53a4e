"""Retailer routes."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from multiscraper.api.deps import Principal, get_db, get_principal, get_scheduler, require_admin
from multiscraper.db.models import Retailer
from multiscraper.worker.scheduler import QueryScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/retailers", tags=["retailers"])


class RetailerResponse(BaseModel):
    """Response model for retailer data."""
    id: int
    name: str
    base_url: str
    use_rotating_proxy: bool
    use_random_user_agent: bool
    is_active: bool
    has_adapter: bool = False

    class Config:
        from_attributes = True


class RetailerUpdate(BaseModel):
    """Request model for retailer toggles."""
    use_rotating_proxy: Optional[bool] = None
    use_random_user_agent: Optional[bool] = None
    is_active: Optional[bool] = None


def _to_response(retailer: Retailer, scheduler: QueryScheduler) -> RetailerResponse:
    response = RetailerResponse.model_validate(retailer)
    response.has_adapter = scheduler.runner.registry.get_adapter(retailer.id) is not None
    return response


@router.get("", response_model=List[RetailerResponse])
async def list_retailers(
    _: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    scheduler: QueryScheduler = Depends(get_scheduler),
):
    result = await db.execute(select(Retailer).order_by(Retailer.id))
    return [_to_response(r, scheduler) for r in result.scalars().all()]


@router.patch("/{retailer_id}", response_model=RetailerResponse)
async def update_retailer(
    retailer_id: int,
    payload: RetailerUpdate,
    _: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    scheduler: QueryScheduler = Depends(get_scheduler),
):
    """Toggle proxy, user agent or active flags; the adapter is rebuilt to match."""
    retailer = await db.get(Retailer, retailer_id)
    if retailer is None:
        raise HTTPException(status_code=404, detail="Retailer not found")

    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(retailer, field, value)
    await db.commit()
    await db.refresh(retailer)

    await scheduler.runner.registry.register_retailer(retailer)
    logger.info(
        f"Retailer {retailer.name} updated: proxy={retailer.use_rotating_proxy}, "
        f"random_ua={retailer.use_random_user_agent}, active={retailer.is_active}"
    )
    return _to_response(retailer, scheduler)
