"""Product reconciliation.

Compares freshly fetched listings with the stored products of the same
retailer, classifies each listing and writes the product state back.
Each listing is committed on its own so one bad listing never leaves a
half-written product or blocks the rest of the batch.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from multiscraper import metrics
from multiscraper.db.models import Product, utcnow
from multiscraper.db.session import AsyncSessionLocal
from multiscraper.errors import PersistenceError, ReconciliationError
from multiscraper.ingest.base import RawListing, is_bid_price_type

logger = logging.getLogger(__name__)


class Classification(str, Enum):
    """Outcome of reconciling one listing."""

    NEW = "new"
    CHANGED = "changed"  # price dropped
    UNCHANGED = "unchanged"


@dataclass
class ReconciledListing:
    """One classified listing with the product row it was written to."""

    classification: Classification
    product: Product
    previous_price: Optional[Decimal] = None

    @property
    def product_id(self) -> int:
        return self.product.id


@dataclass
class ReconciliationResult:
    """Classified listings of one batch plus the listings that were skipped."""

    retailer_id: int
    query_id: int
    listings: list[ReconciledListing] = field(default_factory=list)
    failures: list[ReconciliationError] = field(default_factory=list)

    def count(self, classification: Classification) -> int:
        return sum(1 for item in self.listings if item.classification == classification)

    @property
    def new_count(self) -> int:
        return self.count(Classification.NEW)

    @property
    def changed_count(self) -> int:
        return self.count(Classification.CHANGED)

    @property
    def unchanged_count(self) -> int:
        return self.count(Classification.UNCHANGED)


def validate_listing(listing: RawListing) -> None:
    """Reject listings that cannot become a product row."""
    if not listing.external_id or not str(listing.external_id).strip():
        raise ReconciliationError(None, "missing external id")
    if not listing.title:
        raise ReconciliationError(listing.external_id, "missing title")
    if not isinstance(listing.price, Decimal):
        raise ReconciliationError(listing.external_id, f"price {listing.price!r} is not a Decimal")
    if not listing.price.is_finite() or listing.price < 0:
        raise ReconciliationError(listing.external_id, f"invalid price {listing.price}")
    if not listing.product_url:
        raise ReconciliationError(listing.external_id, "missing product URL")


class ProductReconciler:
    """Upserts fresh listings into the product table and classifies them."""

    def __init__(self, session_factory=None, retailer_name: Optional[str] = None):
        self.session_factory = session_factory or AsyncSessionLocal
        self.retailer_name = retailer_name

    async def reconcile(
        self,
        retailer_id: int,
        query_id: int,
        listings: list[RawListing],
        retailer_name: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Reconcile a batch of fresh listings.

        Args:
            retailer_id: Retailer the listings came from
            query_id: Query whose run fetched them (for logging)
            listings: Fresh listings from the adapter
            retailer_name: Label for metrics

        Returns:
            ReconciliationResult with one entry per accepted listing

        Raises:
            PersistenceError: If the database is unavailable
        """
        label = retailer_name or self.retailer_name or str(retailer_id)
        result = ReconciliationResult(retailer_id=retailer_id, query_id=query_id)
        seen: set[str] = set()

        async with self.session_factory() as db:
            for listing in listings:
                if listing.external_id in seen:
                    logger.debug(f"Duplicate listing {listing.external_id} in batch, ignoring")
                    continue
                seen.add(listing.external_id)

                try:
                    validate_listing(listing)
                    reconciled = await self._reconcile_one(db, retailer_id, listing)
                except ReconciliationError as e:
                    await db.rollback()
                    logger.warning(f"Query {query_id}: skipping {e}")
                    result.failures.append(e)
                    continue
                except OperationalError as e:
                    await db.rollback()
                    raise PersistenceError(f"database unavailable during reconciliation: {e}") from e
                except (IntegrityError, DBAPIError) as e:
                    await db.rollback()
                    error = ReconciliationError(listing.external_id, f"write rejected: {e.orig}")
                    logger.warning(f"Query {query_id}: skipping {error}")
                    result.failures.append(error)
                    continue
                except SQLAlchemyError as e:
                    await db.rollback()
                    raise PersistenceError(f"reconciliation failed: {e}") from e

                result.listings.append(reconciled)

        for classification in Classification:
            metrics.record_reconciled(label, classification.value, result.count(classification))

        logger.info(
            f"Query {query_id} reconciled {len(result.listings)} listings: "
            f"{result.new_count} new, {result.changed_count} price drops, "
            f"{result.unchanged_count} unchanged, {len(result.failures)} skipped"
        )
        return result

    async def _reconcile_one(
        self, db: AsyncSession, retailer_id: int, listing: RawListing
    ) -> ReconciledListing:
        try:
            reconciled = await self._upsert(db, retailer_id, listing)
            await db.commit()
        except IntegrityError:
            # Another run inserted the same listing first; update that row instead
            await db.rollback()
            logger.debug(f"Listing {listing.external_id} inserted concurrently, retrying as update")
            reconciled = await self._upsert(db, retailer_id, listing)
            await db.commit()

        # Detach so a later rollback in this session cannot expire it
        db.expunge(reconciled.product)
        return reconciled

    async def _upsert(
        self, db: AsyncSession, retailer_id: int, listing: RawListing
    ) -> ReconciledListing:
        result = await db.execute(
            select(Product).where(
                Product.retailer_id == retailer_id,
                Product.external_id == listing.external_id,
            )
        )
        product = result.scalar_one_or_none()
        now = utcnow()

        if product is None:
            product = Product(
                retailer_id=retailer_id,
                external_id=listing.external_id,
                title=listing.title,
                description=listing.description,
                price=listing.price,
                currency=listing.currency,
                price_type=listing.price_type,
                image_url=listing.image_url,
                product_url=listing.product_url,
                location=listing.location,
                distance_meters=listing.distance_meters,
                discovered_at=now,
                last_checked_at=now,
                is_available=listing.is_available,
            )
            db.add(product)
            await db.flush()
            return ReconciledListing(Classification.NEW, product)

        stored_price = Decimal(product.price)
        bid_style = listing.is_bid or is_bid_price_type(product.price_type)

        product.last_checked_at = now
        product.is_available = listing.is_available
        product.location = listing.location
        product.distance_meters = listing.distance_meters
        product.price_type = listing.price_type
        if listing.image_url:
            product.image_url = listing.image_url

        if listing.price == stored_price:
            return ReconciledListing(Classification.UNCHANGED, product)

        product.old_price = stored_price
        product.price = listing.price

        # A bid listing has no real price to compare against
        if bid_style:
            return ReconciledListing(Classification.UNCHANGED, product)

        if listing.price < stored_price:
            return ReconciledListing(Classification.CHANGED, product, previous_price=stored_price)

        logger.debug(
            f"Price of {listing.external_id} rose from {stored_price} to {listing.price}"
        )
        return ReconciledListing(Classification.UNCHANGED, product)
