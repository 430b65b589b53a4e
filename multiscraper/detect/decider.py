"""Notification policy.

Turns reconciled listings into notification events according to a query's
preferences. Pure and deterministic: the same inputs always produce the
same events, in input order.
"""

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Protocol

from multiscraper.db.models import NotificationType, Product
from multiscraper.detect.reconciler import Classification, ReconciledListing

logger = logging.getLogger(__name__)


class NotificationPolicy(Protocol):
    """The parts of a search query the decider reads."""

    id: int
    user_id: int
    notify_on_new: bool
    notify_on_price_drops: bool
    price_drop_threshold_percent: Optional[int]


@dataclass(frozen=True)
class NotificationEvent:
    """A change the query owner should be told about."""

    user_id: int
    product_id: int
    search_query_id: int
    notification_type: NotificationType
    price_drop_percent: Optional[int] = None
    previous_price: Optional[Decimal] = None
    product: Optional[Product] = field(default=None, compare=False, hash=False, repr=False)


def calculate_price_drop_percentage(old_price: Decimal, new_price: Decimal) -> int:
    """
    Percentage a price dropped, rounded half up to a whole number.

    Returns 0 when either price is not positive.
    """
    old_price = Decimal(old_price)
    new_price = Decimal(new_price)
    if old_price <= 0 or new_price <= 0:
        return 0
    drop = (old_price - new_price) / old_price * 100
    return int(drop.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _price_drop_event(
    query: NotificationPolicy, item: ReconciledListing
) -> Optional[NotificationEvent]:
    if not query.notify_on_price_drops:
        return None
    if item.previous_price is None:
        return None

    new_price = Decimal(item.product.price)
    if item.previous_price <= 0 or new_price <= 0:
        return None

    percentage = calculate_price_drop_percentage(item.previous_price, new_price)
    threshold = query.price_drop_threshold_percent
    if threshold is not None and percentage < threshold:
        logger.info(
            f"Price drop below threshold for product {item.product_id}: "
            f"{percentage}% < {threshold}%"
        )
        return None

    logger.info(
        f"Price drop for product {item.product_id}: "
        f"{item.previous_price} -> {new_price} ({percentage}% off)"
    )
    return NotificationEvent(
        user_id=query.user_id,
        product_id=item.product_id,
        search_query_id=query.id,
        notification_type=NotificationType.PRICE_DROP,
        price_drop_percent=percentage,
        previous_price=item.previous_price,
        product=item.product,
    )


def decide(
    query: NotificationPolicy,
    results: list[ReconciledListing],
    is_first_run: bool,
) -> list[NotificationEvent]:
    """
    Decide which reconciled listings produce a notification.

    Args:
        query: The query whose run produced the results
        results: Reconciled listings, in fetch order
        is_first_run: True when the query never completed a run before

    Returns:
        Notification events, in the order of results
    """
    if is_first_run:
        logger.info(
            f"First run of query {query.id}: recorded {len(results)} listings as baseline"
        )
        return []

    events: list[NotificationEvent] = []
    for item in results:
        if item.classification == Classification.NEW:
            if query.notify_on_new:
                events.append(
                    NotificationEvent(
                        user_id=query.user_id,
                        product_id=item.product_id,
                        search_query_id=query.id,
                        notification_type=NotificationType.NEW_PRODUCT,
                        product=item.product,
                    )
                )
        elif item.classification == Classification.CHANGED:
            event = _price_drop_event(query, item)
            if event is not None:
                events.append(event)

    return events
