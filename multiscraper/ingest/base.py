"""Base adapter interface for retailer searches."""

import asyncio
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol
from urllib.parse import urljoin

from multiscraper.config import settings

# Listing price types that mean "make an offer" rather than a fixed amount
BID_PRICE_TYPES = frozenset({"FAST_BID", "SEE_DESCRIPTION"})
RESERVED_PRICE_TYPE = "RESERVED"


def is_bid_price_type(price_type: Optional[str]) -> bool:
    return (price_type or "").upper() in BID_PRICE_TYPES


def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a JSON number or numeric string to Decimal, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


def absolute_url(url: Optional[str], base_url: str) -> Optional[str]:
    """Resolve protocol-relative and relative URLs against a retailer base."""
    if not url:
        return None
    if url.startswith("//"):
        return f"https:{url}"
    if url.startswith("http://") or url.startswith("https://"):
        return url
    return urljoin(base_url.rstrip("/") + "/", url.lstrip("/"))


@dataclass
class RawListing:
    """One listing as returned by a retailer search, normalized."""

    external_id: str
    title: str
    price: Decimal
    product_url: str
    currency: str = "EUR"
    description: Optional[str] = None
    regular_price: Optional[Decimal] = None
    price_type: Optional[str] = None
    image_url: Optional[str] = None
    location: Optional[str] = None
    distance_meters: Optional[int] = None
    is_available: bool = True

    @property
    def is_bid(self) -> bool:
        return is_bid_price_type(self.price_type)


class QueryLike(Protocol):
    """The parts of a search query an adapter reads."""

    id: int
    search_text: str
    api_url: Optional[str]


@dataclass
class PaginationConfig:
    """Page-fetching limits for one adapter."""

    max_pages: int = 10
    max_parallel: int = 3
    min_delay_seconds: float = 1.0
    max_delay_seconds: float = 3.0

    @classmethod
    def from_settings(cls) -> "PaginationConfig":
        return cls(
            max_pages=settings.max_pages_per_search,
            max_parallel=settings.max_parallel_pages,
            min_delay_seconds=settings.min_page_delay_seconds,
            max_delay_seconds=settings.max_page_delay_seconds,
        )

    async def delay(self):
        """Sleep a random inter-page delay."""
        upper = max(self.min_delay_seconds, self.max_delay_seconds)
        if upper <= 0:
            return
        await asyncio.sleep(random.uniform(self.min_delay_seconds, upper))


class BaseAdapter(ABC):
    """Abstract base class for retailer search adapters."""

    # Adapters that translate search text into a machine endpoint set this
    supports_discovery: bool = False

    @abstractmethod
    async def search(self, query: QueryLike) -> list[RawListing]:
        """
        Run a search and return the complete result set, all pages included.

        Args:
            query: Search query (free text or retailer URL, plus cached endpoint)

        Returns:
            List of listings; empty when the upstream has no results

        Raises:
            FetchError: If the upstream could not be searched
        """
        pass

    async def discover_endpoint(self, search_text: str) -> Optional[str]:
        """Translate search text into a stable upstream endpoint."""
        return None

    @abstractmethod
    def get_retailer_name(self) -> str:
        """Get the retailer name (e.g., 'Lidl')."""
        pass

    async def close(self):
        """Release network resources."""
        pass
