"""Notification message formatters."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from multiscraper.db.models import NotificationType, Product
from multiscraper.db.seed import MARKTPLAATS_ID
from multiscraper.detect.decider import calculate_price_drop_percentage
from multiscraper.ingest.base import RESERVED_PRICE_TYPE, is_bid_price_type

# Retailers where a zero price means "open to bids"
BID_RETAILER_IDS = frozenset({MARKTPLAATS_ID})


@dataclass
class OutgoingMessage:
    """Text plus optional image handed to the delivery transport."""

    text: str
    image_url: Optional[str] = None

    def text_only(self) -> "OutgoingMessage":
        """Degraded form: image link appended to the text."""
        if not self.image_url:
            return OutgoingMessage(self.text)
        return OutgoingMessage(f"{self.text}\n\n{self.image_url}")


def _escape_markdown(text: str) -> str:
    """Escape Telegram Markdown special characters."""
    for char in ("\\", "_", "*", "`", "["):
        text = text.replace(char, f"\\{char}")
    return text


def _format_amount(amount: Decimal, currency: str) -> str:
    return f"{Decimal(amount):.2f} {currency}"


def is_bid_listing(product: Product) -> bool:
    if is_bid_price_type(product.price_type):
        return True
    return product.retailer_id in BID_RETAILER_IDS and Decimal(product.price) == 0


def format_notification_message(
    notification_type: NotificationType,
    product: Product,
    retailer_name: str,
    price_drop_percent: Optional[int] = None,
) -> OutgoingMessage:
    """
    Format a notification as a Telegram Markdown message.

    Args:
        notification_type: NEW_PRODUCT or PRICE_DROP
        product: Product the notification is about
        retailer_name: Display name of the retailer
        price_drop_percent: Drop percentage, recomputed from the product when missing

    Returns:
        OutgoingMessage with the product image attached when it is an http(s) URL
    """
    lines = [f"*{_escape_markdown(retailer_name)}* - {_escape_markdown(product.title)}", ""]

    if notification_type == NotificationType.NEW_PRODUCT:
        lines.append("🆕 *New product found!*")
    else:
        if price_drop_percent is None and product.old_price:
            price_drop_percent = calculate_price_drop_percentage(product.old_price, product.price)
        if price_drop_percent:
            lines.append(f"📉 *Price drop {price_drop_percent}%!*")
        else:
            lines.append("📉 *Price drop!*")
        if product.old_price is not None:
            lines.append(f"Old price: {_format_amount(product.old_price, product.currency)}")

    if (product.price_type or "").upper() == RESERVED_PRICE_TYPE:
        lines.append("Price: *Reserved*")
    elif is_bid_listing(product):
        lines.append("Price: *Bid*")
    else:
        lines.append(f"Price: *{_format_amount(product.price, product.currency)}*")

    if product.location:
        location_line = f"📍 *Location:* {_escape_markdown(product.location)}"
        if product.distance_meters:
            location_line += f" ({product.distance_meters / 1000:.1f} km)"
        lines.extend(["", location_line])

    lines.extend(["", f"[View product]({product.product_url})"])

    image_url = product.image_url
    if image_url and not image_url.startswith(("http://", "https://")):
        image_url = None

    return OutgoingMessage(text="\n".join(lines), image_url=image_url)
