"""Product routes."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from multiscraper.api.deps import Principal, get_db, get_principal
from multiscraper.db.models import Product

router = APIRouter(prefix="/products", tags=["products"])


class ProductResponse(BaseModel):
    """Response model for product data."""
    id: int
    retailer_id: int
    external_id: str
    title: str
    description: Optional[str]
    price: Decimal
    old_price: Optional[Decimal]
    currency: str
    price_type: Optional[str]
    image_url: Optional[str]
    product_url: str
    location: Optional[str]
    distance_meters: Optional[int]
    discovered_at: datetime
    last_checked_at: datetime
    is_available: bool

    class Config:
        from_attributes = True


@router.get("", response_model=List[ProductResponse])
async def list_products(
    retailer_id: Optional[int] = Query(None, description="Filter by retailer"),
    search: Optional[str] = Query(None, description="Case-insensitive title filter"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    """List products, most recently checked first."""
    stmt = select(Product)
    if retailer_id is not None:
        stmt = stmt.where(Product.retailer_id == retailer_id)
    if search:
        stmt = stmt.where(Product.title.ilike(f"%{search}%"))
    stmt = stmt.order_by(Product.last_checked_at.desc(), Product.id.desc()).limit(limit).offset(offset)

    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: int,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    product = await db.get(Product, product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return product
