"""Marktplaats search adapter.

Marktplaats search pages load their results from /lrp/api/search. A human
search URL (path, query string or #hash filters) is translated into that
endpoint once and the result is cached on the query.
"""

import logging
import re
from typing import Any, Optional
from urllib.parse import parse_qsl, unquote, unquote_plus, urlencode, urlparse, urlunparse

from multiscraper.errors import ResponseShapeError
from multiscraper.ingest.base import (
    BaseAdapter,
    PaginationConfig,
    QueryLike,
    RawListing,
    absolute_url,
    is_bid_price_type,
    to_decimal,
)
from multiscraper.ingest.http_client import RetailerHttpClient

logger = logging.getLogger(__name__)

API_BASE_URL = "https://www.marktplaats.nl/lrp/api/search"
PRODUCT_URL = "https://www.marktplaats.nl/v/{item_id}"
PAGE_SIZE = 30

# Category filter applied to free-text searches
DEFAULT_CATEGORY_PARAMS = {"l1CategoryId": "322", "l2CategoryId": "338"}

SEARCH_HEADERS = {
    "Referer": "https://www.marktplaats.nl/",
    "Origin": "https://www.marktplaats.nl",
}

_HASH_QUERY = re.compile(r"q:([^|]+)")
_HASH_POSTCODE = re.compile(r"postcode:([^|]+)")
_HASH_DISTANCE = re.compile(r"distanceMeters:(\d+)")
_HASH_OFFERED_SINCE = re.compile(r"offeredSince:([^|]+)")
_PATH_QUERY = re.compile(r"/q/([^/#?]+)")


def parse_search_url(url: str) -> tuple[str, list[tuple[str, str]]]:
    """
    Extract the search term and filter parameters from a Marktplaats URL.

    Returns:
        (search term, extra API parameters)
    """
    parsed = urlparse(url)
    query_params = dict(parse_qsl(parsed.query))
    fragment = unquote(parsed.fragment or "")

    term = query_params.get("q") or query_params.get("query") or ""
    if not term:
        match = _HASH_QUERY.search(fragment)
        if match:
            term = unquote_plus(match.group(1))
    if not term:
        match = _PATH_QUERY.search(parsed.path)
        if match:
            term = unquote_plus(match.group(1))

    extra: list[tuple[str, str]] = []
    match = _HASH_POSTCODE.search(fragment)
    if match:
        extra.append(("postcode", match.group(1)))
    match = _HASH_DISTANCE.search(fragment)
    if match:
        extra.append(("distanceMeters", match.group(1)))
    match = _HASH_OFFERED_SINCE.search(fragment)
    if match:
        extra.append(("attributesByKey[]", f"offeredSince:{match.group(1)}"))

    return term, extra


def build_api_url(search_text: str) -> str:
    """Translate free text or a marktplaats.nl URL into a search API URL."""
    text = search_text.strip()

    if "/lrp/api/search" in text:
        return text

    if text.startswith("http"):
        term, extra = parse_search_url(text)
        if not term:
            logger.warning(f"No search term found in Marktplaats URL: {text}")
    else:
        term = text
        extra = list(DEFAULT_CATEGORY_PARAMS.items())

    params = [
        ("query", term),
        ("limit", str(PAGE_SIZE)),
        ("offset", "0"),
        ("searchInTitleAndDescription", "true"),
        ("viewOptions", "list-view"),
    ] + extra
    return f"{API_BASE_URL}?{urlencode(params)}"


def _page_url(endpoint: str, offset: int) -> tuple[str, int]:
    """Return the endpoint at the given offset and the page size it requests."""
    parsed = urlparse(endpoint)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    limit = PAGE_SIZE
    rebuilt = []
    for key, value in query:
        if key == "offset":
            continue
        if key == "limit" and value.isdigit() and int(value) > 0:
            limit = int(value)
        rebuilt.append((key, value))
    rebuilt.append(("offset", str(offset)))
    return urlunparse(parsed._replace(query=urlencode(rebuilt))), limit


class MarktplaatsAdapter(BaseAdapter):
    """Searches Marktplaats classifieds through the listing search API."""

    supports_discovery = True

    def __init__(
        self,
        http: RetailerHttpClient,
        base_url: str = "https://www.marktplaats.nl",
        pagination: Optional[PaginationConfig] = None,
    ):
        self.http = http
        self.base_url = base_url
        self.pagination = pagination or PaginationConfig.from_settings()

    def get_retailer_name(self) -> str:
        return "Marktplaats"

    async def discover_endpoint(self, search_text: str) -> Optional[str]:
        endpoint = build_api_url(search_text)
        logger.debug(f"Marktplaats endpoint for {search_text!r}: {endpoint}")
        return endpoint

    async def close(self):
        await self.http.close()

    async def search(self, query: QueryLike) -> list[RawListing]:
        endpoint = query.api_url or build_api_url(query.search_text)
        logger.info(f"Marktplaats search for query {query.id}: {endpoint}")

        listings: list[RawListing] = []
        offset = 0
        for page in range(self.pagination.max_pages):
            if page > 0:
                await self.pagination.delay()

            url, limit = _page_url(endpoint, offset)
            data = await self.http.get_json(url, headers=SEARCH_HEADERS)
            items, total = self._extract_listings(data)
            listings.extend(self._parse_items(items))

            offset += limit
            if not items or offset >= total:
                break
        else:
            logger.info(
                f"Marktplaats query {query.id} hit the {self.pagination.max_pages} page limit"
            )

        logger.info(f"Marktplaats search for query {query.id} found {len(listings)} listings")
        return listings

    @staticmethod
    def _extract_listings(data: Any) -> tuple[list[dict], int]:
        if not isinstance(data, dict) or not isinstance(data.get("listings"), list):
            raise ResponseShapeError("Marktplaats", "response has no listings array")
        listings = data["listings"]
        total = data.get("totalResultCount")
        if not isinstance(total, int):
            total = len(listings)
        return listings, total

    def _parse_items(self, items: list[dict]) -> list[RawListing]:
        listings = []
        for item in items:
            if not isinstance(item, dict):
                continue
            listing = self._parse_item(item)
            if listing is not None:
                listings.append(listing)
        return listings

    def _parse_item(self, item: dict) -> Optional[RawListing]:
        item_id = item.get("itemId")
        if not item_id:
            logger.warning(f"Skipping Marktplaats listing without itemId: {str(item)[:200]}")
            return None

        price_info = item.get("priceInfo") or {}
        price_type = price_info.get("priceType")
        if is_bid_price_type(price_type):
            price = to_decimal(0)
        else:
            cents = price_info.get("priceCents")
            if cents is None:
                logger.warning(f"Skipping Marktplaats listing {item_id} without a price")
                return None
            price = to_decimal(cents / 100) if isinstance(cents, (int, float)) else None
            if price is None:
                logger.warning(f"Skipping Marktplaats listing {item_id}: bad price {cents!r}")
                return None

        pictures = item.get("pictures") or []
        image_urls = item.get("imageUrls") or []
        image_url = None
        if pictures and isinstance(pictures[0], dict):
            image_url = pictures[0].get("largeUrl")
        if not image_url and image_urls:
            image_url = image_urls[0]

        location = item.get("location") or {}
        distance = location.get("distanceMeters")

        return RawListing(
            external_id=str(item_id),
            title=item.get("title") or "Untitled listing",
            description=item.get("description"),
            price=price,
            currency="EUR",
            price_type=price_type,
            image_url=absolute_url(image_url, self.base_url),
            product_url=PRODUCT_URL.format(item_id=item_id),
            location=location.get("cityName") or None,
            distance_meters=int(distance) if isinstance(distance, (int, float)) and distance >= 0 else None,
            is_available=True,
        )
