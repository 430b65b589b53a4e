"""Lidl search adapter.

Lidl's web shop is backed by a JSON search API under /q/api. Human-facing
search, query and category URLs are translated into that API and results are
paged with fetchsize/offset.
"""

import asyncio
import logging
import math
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from multiscraper.errors import FetchError, ResponseShapeError
from multiscraper.ingest.base import (
    BaseAdapter,
    PaginationConfig,
    QueryLike,
    RawListing,
    absolute_url,
    to_decimal,
)
from multiscraper.ingest.http_client import RetailerHttpClient

logger = logging.getLogger(__name__)

API_BASE_URL = "https://www.lidl.nl/q/api"
PAGE_SIZE = 48

DEFAULT_API_PARAMS = {
    "fetchsize": PAGE_SIZE,
    "offset": 0,
    "locale": "nl_NL",
    "assortment": "NL",
    "version": "2.1.0",
    "idsOnly": "false",
    "productsOnly": "true",
}

SEARCH_HEADERS = {"Accept": "application/mindshift.search+json;version=2"}


def _format_params(params: dict[str, Any]) -> str:
    return "?" + urlencode({k: v for k, v in params.items() if v is not None})


def _with_offset(url: str, offset: int) -> str:
    """Return the API URL with its offset parameter replaced."""
    parsed = urlparse(url)
    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k != "offset"]
    query.append(("offset", str(offset)))
    return urlunparse(parsed._replace(query=urlencode(query)))


def build_api_url(search_text: str, offset: int = 0) -> str:
    """
    Translate free text or a lidl.nl URL into a search API URL.

    Supported URL forms: /q/query/<slug>, /q/api/<path>, /q/search?q=..,
    /category/<path> and any URL carrying a q or query parameter.
    Anything else is treated as a search term.
    """
    params: dict[str, Any] = dict(DEFAULT_API_PARAMS, offset=offset)
    text = search_text.strip()

    if text.startswith("http"):
        url = urlparse(text)
        url_params = parse_qsl(url.query, keep_blank_values=True)

        if "/q/query/" in url.path:
            slug = url.path.split("/q/query/", 1)[1]
            for key, value in url_params:
                if key not in ("offset", "fetchsize"):
                    params[key] = value
            return f"{API_BASE_URL}/query/{slug}{_format_params(params)}"

        if "/q/api/" in url.path:
            api_path = url.path.split("/q/api/", 1)[1]
            for key, value in url_params:
                if key not in ("offset", "fetchsize"):
                    params[key] = value
            return f"{API_BASE_URL}/{api_path}{_format_params(params)}"

        url_dict = dict(url_params)
        if "/q/search" in url.path and url_dict.get("q"):
            brand = url_dict.get("brand")
            params["q"] = f"{url_dict['q']} {brand}" if brand else url_dict["q"]
            return f"{API_BASE_URL}/search{_format_params(params)}"

        if "/category/" in url.path:
            category_path = url.path.split("/category/", 1)[1]
            if category_path:
                return f"{API_BASE_URL}/category/{category_path}{_format_params(params)}"

        query = url_dict.get("query") or url_dict.get("q")
        if query:
            params["q"] = query
            return f"{API_BASE_URL}/search{_format_params(params)}"

        logger.warning(f"Unrecognized Lidl URL, searching it as text: {text}")

    params["q"] = text
    return f"{API_BASE_URL}/search{_format_params(params)}"


def extract_results(data: Any) -> tuple[list[dict], int]:
    """
    Pull the item list and total count out of any known response shape.

    Returns:
        (items, total)

    Raises:
        ResponseShapeError: No recognized structure
    """
    if isinstance(data, list):
        return data, len(data)

    if not isinstance(data, dict):
        raise ResponseShapeError("Lidl", f"unexpected JSON root {type(data).__name__}")

    if isinstance(data.get("items"), list):
        return data["items"], int(data.get("numFound") or 0)

    search_response = data.get("searchResponse")
    if isinstance(search_response, dict) and isinstance(search_response.get("items"), list):
        return search_response["items"], int(search_response.get("numFound") or 0)

    if isinstance(data.get("products"), list):
        products = data["products"]
        return products, int(data.get("numFound") or len(products))

    results = data.get("results")
    if isinstance(results, dict) and isinstance(results.get("products"), list):
        products = results["products"]
        return products, int(data.get("numFound") or len(products))

    raise ResponseShapeError(
        "Lidl", f"no recognized product structure (keys: {sorted(data)[:10]})"
    )


class LidlAdapter(BaseAdapter):
    """Searches Lidl through its JSON search API."""

    supports_discovery = True

    def __init__(
        self,
        http: RetailerHttpClient,
        base_url: str = "https://www.lidl.nl",
        pagination: Optional[PaginationConfig] = None,
    ):
        self.http = http
        self.base_url = base_url
        self.pagination = pagination or PaginationConfig.from_settings()

    def get_retailer_name(self) -> str:
        return "Lidl"

    async def discover_endpoint(self, search_text: str) -> Optional[str]:
        return build_api_url(search_text)

    async def close(self):
        await self.http.close()

    async def search(self, query: QueryLike) -> list[RawListing]:
        endpoint = query.api_url or build_api_url(query.search_text)
        logger.info(f"Lidl search for query {query.id}: {endpoint}")

        data = await self.http.get_json(_with_offset(endpoint, 0), headers=SEARCH_HEADERS)
        items, total = extract_results(data)
        listings = self._parse_items(items)

        if total > len(items) and total > PAGE_SIZE:
            total_pages = math.ceil(total / PAGE_SIZE)
            if total_pages > self.pagination.max_pages:
                logger.info(
                    f"Lidl reports {total} products; capping at {self.pagination.max_pages} pages"
                )
                total_pages = self.pagination.max_pages
            logger.info(f"Lidl found {total} products, fetching {total_pages} pages")
            listings.extend(await self._fetch_remaining_pages(endpoint, total_pages))

        logger.info(f"Lidl search for query {query.id} found {len(listings)} products")
        return listings

    async def _fetch_remaining_pages(self, endpoint: str, total_pages: int) -> list[RawListing]:
        semaphore = asyncio.Semaphore(max(1, self.pagination.max_parallel))

        async def fetch_page(page: int) -> list[RawListing]:
            async with semaphore:
                await self.pagination.delay()
                url = _with_offset(endpoint, page * PAGE_SIZE)
                try:
                    data = await self.http.get_json(url, headers=SEARCH_HEADERS)
                    items, _ = extract_results(data)
                except FetchError as e:
                    logger.warning(f"Lidl page {page + 1} failed, skipping it: {e}")
                    return []
                return self._parse_items(items)

        pages = await asyncio.gather(*(fetch_page(page) for page in range(1, total_pages)))
        return [listing for page in pages for listing in page]

    def _parse_items(self, items: list[dict]) -> list[RawListing]:
        listings = []
        for item in items:
            if not isinstance(item, dict):
                logger.warning(f"Skipping non-object Lidl item: {item!r:.100}")
                continue
            listing = self._parse_item(item)
            if listing is not None:
                listings.append(listing)
        return listings

    def _parse_item(self, item: dict) -> Optional[RawListing]:
        product_id = item.get("id") or item.get("code")
        if not product_id:
            logger.warning(f"Skipping Lidl item without id: {str(item)[:200]}")
            return None

        gridbox = (item.get("gridbox") or {}).get("data") or {}

        title = (
            item.get("fullTitle")
            or gridbox.get("fullTitle")
            or item.get("name")
            or item.get("label")
            or "Unknown product"
        )

        price = None
        regular_price = None
        currency = "EUR"
        grid_price = gridbox.get("price") or {}
        item_price = item.get("price") if isinstance(item.get("price"), dict) else {}
        if grid_price.get("price") is not None:
            price = to_decimal(grid_price.get("price"))
            regular_price = to_decimal(grid_price.get("oldPrice"))
        elif item_price.get("price") is not None:
            price = to_decimal(item_price.get("price"))
            regular_price = to_decimal(item_price.get("oldPrice") or item_price.get("regularPrice"))
            if isinstance(item_price.get("unit"), str) and item_price["unit"].strip():
                currency = item_price["unit"].strip()

        if price is None:
            logger.warning(f"Skipping Lidl item {product_id} without a price")
            return None

        images = item.get("images") or []
        image_url = (
            item.get("mainImageUrl")
            or (images[0].get("url") if images and isinstance(images[0], dict) else None)
            or item.get("mouseoverImage")
            or gridbox.get("image")
        )

        online = item.get("online") or {}
        product_url = (
            online.get("link")
            or item.get("canonicalUrl")
            or gridbox.get("canonicalPath")
            or ""
        )

        is_available = True
        availability = item.get("availability")
        if not isinstance(availability, dict):
            availability = {}
        elif availability:
            is_available = availability.get("orderable") is True
            if online.get("isOrderable") is not None:
                is_available = is_available and bool(online.get("isOrderable"))

        brand = item.get("brand") or (gridbox.get("brand") or {}).get("name") or "Unknown"
        if isinstance(brand, dict):
            brand = brand.get("name") or "Unknown"
        note = availability.get("availabilityNote") or ""

        return RawListing(
            external_id=str(product_id),
            title=title,
            price=price,
            regular_price=regular_price,
            currency=currency,
            description=f"Brand: {brand}\n{note}".rstrip(),
            image_url=absolute_url(image_url, self.base_url),
            product_url=absolute_url(product_url, self.base_url) or self.base_url,
            is_available=is_available,
        )
