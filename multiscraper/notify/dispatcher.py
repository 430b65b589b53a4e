"""Notification dispatch.

Every decided event is stored as an unread Notification before any push is
attempted, so a failed push never loses the notification; it stays
available through unread_for_user.
"""

import logging
from enum import Enum
from typing import Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from multiscraper import metrics
from multiscraper.db.models import Notification, Product, Retailer, User
from multiscraper.db.session import AsyncSessionLocal
from multiscraper.detect.decider import NotificationEvent
from multiscraper.errors import DeliveryError, PersistenceError
from multiscraper.logging_config import log_user_activity
from multiscraper.notify.formatters import OutgoingMessage, format_notification_message

logger = logging.getLogger(__name__)


class DeliveryOutcome(str, Enum):
    """Result of pushing one notification."""

    DELIVERED = "delivered"
    DELIVERED_TEXT_ONLY = "delivered_text_only"
    FAILED = "failed"
    SKIPPED = "skipped"  # no transport or no recipient


class DeliveryTransport(Protocol):
    async def deliver(self, recipient_id: int, message: OutgoingMessage) -> bool:
        ...


class NotificationDispatcher:
    """Persists notification events and pushes them to their owner."""

    def __init__(self, transport: Optional[DeliveryTransport] = None, session_factory=None):
        self.transport = transport
        self.session_factory = session_factory or AsyncSessionLocal

    async def dispatch(self, event: NotificationEvent) -> DeliveryOutcome:
        """
        Store the event as an unread notification, then deliver it.

        Raises:
            PersistenceError: If the notification could not be stored
        """
        try:
            async with self.session_factory() as db:
                notification = Notification(
                    user_id=event.user_id,
                    product_id=event.product_id,
                    search_query_id=event.search_query_id,
                    notification_type=event.notification_type,
                    price_drop_percent=event.price_drop_percent,
                    is_read=False,
                )
                db.add(notification)
                await db.commit()

                user = await db.get(User, event.user_id)
                product = await db.get(Product, event.product_id)
                retailer = await db.get(Retailer, product.retailer_id) if product else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not store notification: {e}") from e

        metrics.record_notification_created(event.notification_type.value)
        logger.info(
            f"Notification {notification.id} ({event.notification_type.value}) "
            f"for user {event.user_id}, product {event.product_id}"
        )

        if self.transport is None or user is None or not user.telegram_id or product is None:
            metrics.record_delivery(DeliveryOutcome.SKIPPED.value)
            return DeliveryOutcome.SKIPPED

        message = format_notification_message(
            event.notification_type,
            product,
            retailer.name if retailer else "",
            price_drop_percent=event.price_drop_percent,
        )
        outcome = await self._deliver_with_fallback(user.telegram_id, message)
        metrics.record_delivery(outcome.value)

        if outcome != DeliveryOutcome.FAILED:
            log_user_activity(
                user.id,
                f"Notified about {event.notification_type.value} for product {product.id}",
                username=user.username,
            )
        return outcome

    async def _deliver_with_fallback(
        self, recipient_id: int, message: OutgoingMessage
    ) -> DeliveryOutcome:
        if await self._try_deliver(recipient_id, message):
            return DeliveryOutcome.DELIVERED

        if message.image_url:
            logger.info(f"Rich delivery to {recipient_id} failed, falling back to text")
            if await self._try_deliver(recipient_id, message.text_only()):
                return DeliveryOutcome.DELIVERED_TEXT_ONLY

        logger.error(f"Could not deliver notification to {recipient_id}")
        return DeliveryOutcome.FAILED

    async def _try_deliver(self, recipient_id: int, message: OutgoingMessage) -> bool:
        try:
            return bool(await self.transport.deliver(recipient_id, message))
        except DeliveryError as e:
            logger.warning(f"Delivery error: {e}")
            return False

    async def unread_for_user(self, user_id: int) -> list[Notification]:
        """Unread notifications of a user, newest first, with product and retailer loaded."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Notification)
                .options(selectinload(Notification.product).selectinload(Product.retailer))
                .where(Notification.user_id == user_id, Notification.is_read.is_(False))
                .order_by(Notification.created_at.desc(), Notification.id.desc())
            )
            return list(result.scalars().all())

    async def mark_as_read(self, notification_id: int, user_id: Optional[int] = None) -> bool:
        """
        Mark one notification as read.

        Args:
            notification_id: Notification to flip
            user_id: When given, only a notification owned by this user is touched

        Returns:
            True if the notification exists (and belongs to user_id)
        """
        async with self.session_factory() as db:
            notification = await db.get(Notification, notification_id)
            if notification is None or (user_id is not None and notification.user_id != user_id):
                return False
            notification.is_read = True
            await db.commit()
            return True

    async def mark_all_as_read(self, user_id: int) -> int:
        """
        Mark all of a user's notifications as read. Idempotent.

        Returns:
            Number of notifications that were unread
        """
        async with self.session_factory() as db:
            result = await db.execute(
                update(Notification)
                .where(Notification.user_id == user_id, Notification.is_read.is_(False))
                .values(is_read=True)
            )
            await db.commit()
            count = result.rowcount or 0

        if count:
            logger.info(f"Marked {count} notifications read for user {user_id}")
        return count
