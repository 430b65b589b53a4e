"""Tests for retailer search adapters and their HTTP transport."""

from decimal import Decimal
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from multiscraper.db.models import Retailer
from multiscraper.errors import ResponseShapeError, UpstreamUnavailableError
from multiscraper.ingest.base import PaginationConfig, absolute_url, to_decimal
from multiscraper.ingest.http_client import DEFAULT_USER_AGENT, RetailerHttpClient
from multiscraper.ingest.registry import AdapterRegistry
from multiscraper.ingest.retailers import lidl, marktplaats
from multiscraper.ingest.retailers.lidl import LidlAdapter
from multiscraper.ingest.retailers.marktplaats import MarktplaatsAdapter

NO_DELAY = PaginationConfig(max_pages=10, max_parallel=2, min_delay_seconds=0, max_delay_seconds=0)


def _params(url):
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


def _query(search_text="fiets", api_url=None):
    return SimpleNamespace(id=1, search_text=search_text, api_url=api_url)


def _client(handler, name="Test", **kwargs):
    return RetailerHttpClient(name, transport=httpx.MockTransport(handler), **kwargs)


def _lidl_item(product_id, price=19.99):
    return {
        "code": str(product_id),
        "gridbox": {
            "data": {
                "fullTitle": f"Lidl product {product_id}",
                "price": {"price": price, "oldPrice": 24.99},
                "canonicalPath": f"/p/product/p{product_id}",
                "image": f"https://www.lidl.nl/assets/{product_id}.jpg",
                "brand": {"name": "Silvercrest"},
            }
        },
    }


def _marktplaats_item(item_id, cents=12500, price_type="FIXED"):
    return {
        "itemId": item_id,
        "title": f"Fiets {item_id}",
        "description": "Goede staat",
        "priceInfo": {"priceCents": cents, "priceType": price_type},
        "location": {"cityName": "Utrecht", "distanceMeters": 4200},
        "pictures": [{"largeUrl": "//images.marktplaats.com/a.jpg"}],
    }


class TestHelpers:

    def test_to_decimal(self):
        assert to_decimal(19.99) == Decimal("19.99")
        assert to_decimal("5") == Decimal("5.00")
        assert to_decimal(None) is None
        assert to_decimal(True) is None
        assert to_decimal("abc") is None

    def test_absolute_url(self):
        assert absolute_url("//cdn.test/a.jpg", "https://x.test") == "https://cdn.test/a.jpg"
        assert absolute_url("/p/1", "https://x.test/") == "https://x.test/p/1"
        assert absolute_url("https://y.test/b", "https://x.test") == "https://y.test/b"
        assert absolute_url(None, "https://x.test") is None


class TestHttpClient:

    @pytest.mark.asyncio
    async def test_closed_client_rejects_requests(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={})

        client = _client(handler)
        assert await client.get_json("https://x.test/api") == {}

        await client.close()

        with pytest.raises(UpstreamUnavailableError):
            await client.get_json("https://x.test/api")
        assert len(requests) == 1
        assert client._http_client is None

    @pytest.mark.asyncio
    async def test_error_status_is_upstream_unavailable(self):
        client = _client(lambda request: httpx.Response(429))
        try:
            with pytest.raises(UpstreamUnavailableError) as exc_info:
                await client.get_json("https://x.test/api")
        finally:
            await client.close()

        assert exc_info.value.status_code == 429
        assert exc_info.value.is_rate_limited

    @pytest.mark.asyncio
    async def test_network_error_is_upstream_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        try:
            with pytest.raises(UpstreamUnavailableError):
                await client.get_json("https://x.test/api")
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_timeout_is_upstream_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        client = _client(handler)
        try:
            with pytest.raises(UpstreamUnavailableError):
                await client.get_json("https://x.test/api")
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_non_json_body_is_shape_error(self):
        client = _client(lambda request: httpx.Response(200, text="<html>captcha</html>"))
        try:
            with pytest.raises(ResponseShapeError):
                await client.get_json("https://x.test/api")
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_user_agent_toggle(self):
        seen = []

        def handler(request):
            seen.append(request.headers["user-agent"])
            return httpx.Response(200, json={})

        fixed = _client(handler)
        rotating = _client(handler, use_random_user_agent=True)
        try:
            await fixed.get_json("https://x.test/api")
            await rotating.get_json("https://x.test/api")
        finally:
            await fixed.close()
            await rotating.close()

        assert seen[0] == DEFAULT_USER_AGENT
        assert seen[1].startswith("Mozilla/5.0")


class TestLidlUrls:

    def test_free_text(self):
        url = lidl.build_api_url("air fryer")

        assert url.startswith(f"{lidl.API_BASE_URL}/search?")
        params = _params(url)
        assert params["q"] == "air fryer"
        assert params["fetchsize"] == "48"
        assert params["offset"] == "0"

    def test_search_url_with_brand(self):
        url = lidl.build_api_url("https://www.lidl.nl/q/search?q=airfryer&brand=Silvercrest")

        assert _params(url)["q"] == "airfryer Silvercrest"

    def test_query_url(self):
        url = lidl.build_api_url("https://www.lidl.nl/q/query/supersale?sort=price&offset=96")

        assert url.startswith(f"{lidl.API_BASE_URL}/query/supersale?")
        params = _params(url)
        assert params["sort"] == "price"
        assert params["offset"] == "0"

    def test_category_url(self):
        url = lidl.build_api_url("https://www.lidl.nl/category/keuken/h10068374")

        assert url.startswith(f"{lidl.API_BASE_URL}/category/keuken/h10068374?")

    def test_unknown_url_is_searched_as_text(self):
        url = lidl.build_api_url("https://www.lidl.nl/about-us")

        assert _params(url)["q"] == "https://www.lidl.nl/about-us"


class TestLidlResponses:

    @pytest.mark.parametrize(
        "payload,total",
        [
            ([{"code": "1"}], 1),
            ({"items": [{"code": "1"}], "numFound": 7}, 7),
            ({"searchResponse": {"items": [{"code": "1"}], "numFound": 3}}, 3),
            ({"products": [{"code": "1"}]}, 1),
            ({"results": {"products": [{"code": "1"}]}, "numFound": 9}, 9),
        ],
    )
    def test_known_shapes(self, payload, total):
        items, found = lidl.extract_results(payload)

        assert items == [{"code": "1"}]
        assert found == total

    def test_unknown_shape(self):
        with pytest.raises(ResponseShapeError):
            lidl.extract_results({"error": "maintenance"})

    @pytest.mark.asyncio
    async def test_search_fetches_all_pages(self):
        requests = []

        def handler(request):
            requests.append(request)
            offset = int(request.url.params["offset"])
            count = 48 if offset < 96 else 4
            items = [_lidl_item(offset + i) for i in range(count)]
            return httpx.Response(200, json={"items": items, "numFound": 100})

        adapter = LidlAdapter(_client(handler, "Lidl"), pagination=NO_DELAY)
        try:
            listings = await adapter.search(_query("airfryer"))
        finally:
            await adapter.close()

        assert len(listings) == 100
        assert sorted(int(r.url.params["offset"]) for r in requests) == [0, 48, 96]
        assert requests[0].headers["accept"] == lidl.SEARCH_HEADERS["Accept"]
        first = listings[0]
        assert first.external_id == "0"
        assert first.price == Decimal("19.99")
        assert first.regular_price == Decimal("24.99")
        assert first.product_url == "https://www.lidl.nl/p/product/p0"
        assert first.description.startswith("Brand: Silvercrest")

    @pytest.mark.asyncio
    async def test_failed_extra_page_is_skipped(self):
        def handler(request):
            offset = int(request.url.params["offset"])
            if offset == 48:
                return httpx.Response(503)
            items = [_lidl_item(offset + i) for i in range(48 if offset == 0 else 4)]
            return httpx.Response(200, json={"items": items, "numFound": 100})

        adapter = LidlAdapter(_client(handler, "Lidl"), pagination=NO_DELAY)
        try:
            listings = await adapter.search(_query("airfryer"))
        finally:
            await adapter.close()

        assert len(listings) == 52

    @pytest.mark.asyncio
    async def test_failed_first_page_raises(self):
        adapter = LidlAdapter(_client(lambda request: httpx.Response(503), "Lidl"), pagination=NO_DELAY)
        try:
            with pytest.raises(UpstreamUnavailableError):
                await adapter.search(_query("airfryer"))
        finally:
            await adapter.close()

    @pytest.mark.asyncio
    async def test_page_cap(self):
        requests = []

        def handler(request):
            requests.append(request)
            offset = int(request.url.params["offset"])
            return httpx.Response(
                200, json={"items": [_lidl_item(offset + i) for i in range(48)], "numFound": 10000}
            )

        capped = PaginationConfig(max_pages=3, max_parallel=3, min_delay_seconds=0, max_delay_seconds=0)
        adapter = LidlAdapter(_client(handler, "Lidl"), pagination=capped)
        try:
            listings = await adapter.search(_query("airfryer"))
        finally:
            await adapter.close()

        assert len(requests) == 3
        assert len(listings) == 144

    def test_items_without_price_or_id_are_skipped(self):
        adapter = LidlAdapter(_client(lambda request: httpx.Response(200)), pagination=NO_DELAY)

        parsed = adapter._parse_items([{"code": "1"}, {"fullTitle": "no id"}, "junk", _lidl_item(2)])

        assert [listing.external_id for listing in parsed] == ["2"]

    def test_availability_from_online_flags(self):
        adapter = LidlAdapter(_client(lambda request: httpx.Response(200)), pagination=NO_DELAY)
        item = _lidl_item(3)
        item["availability"] = {"orderable": True, "availabilityNote": "Online"}
        item["online"] = {"isOrderable": False, "link": "/p/x/p3"}

        listing = adapter._parse_item(item)

        assert listing.is_available is False
        assert listing.product_url == "https://www.lidl.nl/p/x/p3"

    def test_currency_follows_price_unit(self):
        adapter = LidlAdapter(_client(lambda request: httpx.Response(200)), pagination=NO_DELAY)

        plain = adapter._parse_item(
            {"code": "4", "fullTitle": "Plain", "price": {"price": 5, "regularPrice": 7, "unit": "CHF"}}
        )
        without_unit = adapter._parse_item({"code": "5", "price": {"price": 5}})

        assert plain.currency == "CHF"
        assert plain.regular_price == Decimal("7")
        assert without_unit.currency == "EUR"
        assert adapter._parse_item(_lidl_item(6)).currency == "EUR"


class TestMarktplaatsUrls:

    def test_path_term_and_hash_filters(self):
        term, extra = marktplaats.parse_search_url(
            "https://www.marktplaats.nl/q/fiets/#postcode:3511AB|distanceMeters:25000|offeredSince:Gisteren"
        )

        assert term == "fiets"
        assert ("postcode", "3511AB") in extra
        assert ("distanceMeters", "25000") in extra
        assert ("attributesByKey[]", "offeredSince:Gisteren") in extra

    def test_hash_query(self):
        term, _ = marktplaats.parse_search_url(
            "https://www.marktplaats.nl/l/fietsen/#q:racefiets+carbon|distanceMeters:10000"
        )

        assert term == "racefiets carbon"

    def test_query_parameter_wins(self):
        term, _ = marktplaats.parse_search_url("https://www.marktplaats.nl/q/other/?query=bakfiets")

        assert term == "bakfiets"

    def test_free_text_uses_default_categories(self):
        params = _params(marktplaats.build_api_url("gazelle"))

        assert params["query"] == "gazelle"
        assert params["l1CategoryId"] == "322"
        assert params["l2CategoryId"] == "338"
        assert params["limit"] == "30"

    def test_api_url_is_kept(self):
        url = "https://www.marktplaats.nl/lrp/api/search?query=fiets&limit=30&offset=0"

        assert marktplaats.build_api_url(url) == url


class TestMarktplaatsSearch:

    @pytest.mark.asyncio
    async def test_paginates_until_total(self):
        requests = []
        pages = {
            0: [_marktplaats_item("m1"), _marktplaats_item("m2")],
            2: [_marktplaats_item("m3")],
        }

        def handler(request):
            requests.append(request)
            offset = int(request.url.params["offset"])
            return httpx.Response(200, json={"listings": pages.get(offset, []), "totalResultCount": 3})

        adapter = MarktplaatsAdapter(_client(handler, "Marktplaats"), pagination=NO_DELAY)
        endpoint = "https://www.marktplaats.nl/lrp/api/search?query=fiets&limit=2&offset=0"
        try:
            listings = await adapter.search(_query(api_url=endpoint))
        finally:
            await adapter.close()

        assert [listing.external_id for listing in listings] == ["m1", "m2", "m3"]
        assert len(requests) == 2
        first = listings[0]
        assert first.price == Decimal("125.00")
        assert first.location == "Utrecht"
        assert first.distance_meters == 4200
        assert first.image_url == "https://images.marktplaats.com/a.jpg"
        assert first.product_url == "https://www.marktplaats.nl/v/m1"

    @pytest.mark.asyncio
    async def test_empty_result_is_not_an_error(self):
        adapter = MarktplaatsAdapter(
            _client(lambda request: httpx.Response(200, json={"listings": [], "totalResultCount": 0})),
            pagination=NO_DELAY,
        )
        try:
            assert await adapter.search(_query()) == []
        finally:
            await adapter.close()

    @pytest.mark.asyncio
    async def test_missing_listings_is_shape_error(self):
        adapter = MarktplaatsAdapter(
            _client(lambda request: httpx.Response(200, json={"message": "blocked"})),
            pagination=NO_DELAY,
        )
        try:
            with pytest.raises(ResponseShapeError):
                await adapter.search(_query())
        finally:
            await adapter.close()

    def test_bid_listing_has_zero_price(self):
        adapter = MarktplaatsAdapter(_client(lambda request: httpx.Response(200)), pagination=NO_DELAY)

        listing = adapter._parse_item(_marktplaats_item("b1", cents=None, price_type="FAST_BID"))

        assert listing.price == Decimal("0.00")
        assert listing.is_bid

    def test_listing_without_price_is_skipped(self):
        adapter = MarktplaatsAdapter(_client(lambda request: httpx.Response(200)), pagination=NO_DELAY)

        assert adapter._parse_item(_marktplaats_item("p1", cents=None)) is None

    @pytest.mark.asyncio
    async def test_discovery_translates_search_text(self):
        adapter = MarktplaatsAdapter(_client(lambda request: httpx.Response(200)), pagination=NO_DELAY)

        endpoint = await adapter.discover_endpoint("https://www.marktplaats.nl/q/fiets/")

        assert endpoint.startswith(marktplaats.API_BASE_URL)
        assert _params(endpoint)["query"] == "fiets"


class TestRegistry:

    def _retailer(self, retailer_id, name):
        return Retailer(
            id=retailer_id,
            name=name,
            base_url="https://example.test",
            use_rotating_proxy=False,
            use_random_user_agent=True,
            is_active=True,
        )

    @pytest.mark.asyncio
    async def test_resolves_known_retailers(self):
        registry = AdapterRegistry()

        assert isinstance(await registry.register_retailer(self._retailer(1, "Lidl")), LidlAdapter)
        assert isinstance(
            await registry.register_retailer(self._retailer(2, "Marktplaats")), MarktplaatsAdapter
        )
        assert await registry.register_retailer(self._retailer(3, "Vinted")) is None
        assert registry.get_adapter(3) is None
        await registry.cleanup()
        assert registry.get_adapter(1) is None

    @pytest.mark.asyncio
    async def test_load_active_retailers(self, session_factory):
        registry = AdapterRegistry()

        count = await registry.load(session_factory)

        assert count == 2
        assert registry.get_adapter(1) is not None
        assert registry.get_adapter(2) is not None
        await registry.cleanup()

    @pytest.mark.asyncio
    async def test_rebuild_swaps_before_closing_old_adapter(self):
        registry = AdapterRegistry()
        retailer = self._retailer(1, "Lidl")
        old = await registry.register_retailer(retailer)

        retailer.use_rotating_proxy = True
        new = await registry.register_retailer(retailer)

        try:
            assert new is not old
            assert registry.get_adapter(1) is new
            assert new.http.use_rotating_proxy is True
            with pytest.raises(UpstreamUnavailableError):
                await old.http.get_json("https://example.test/api")
            assert old.http._http_client is None
        finally:
            await registry.cleanup()

    @pytest.mark.asyncio
    async def test_retailer_without_factory_drops_previous_adapter(self):
        registry = AdapterRegistry()
        old = await registry.register_retailer(self._retailer(1, "Lidl"))

        assert await registry.register_retailer(self._retailer(1, "Vinted")) is None

        assert registry.get_adapter(1) is None
        with pytest.raises(UpstreamUnavailableError):
            await old.http.get_json("https://example.test/api")
