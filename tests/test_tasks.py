"""Tests for the query execution pipeline."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from conftest import RecordingTransport, StaticAdapter, create_query, make_listing
from multiscraper.db.models import Notification, NotificationType, Product, SearchQuery
from multiscraper.db.seed import MARKTPLAATS_ID, VINTED_ID
from multiscraper.errors import PersistenceError, UpstreamUnavailableError
from multiscraper.ingest.registry import AdapterRegistry
from multiscraper.notify.dispatcher import DeliveryOutcome, NotificationDispatcher
from multiscraper.worker.tasks import QueryTaskRunner


class DiscoveringAdapter(StaticAdapter):
    supports_discovery = True

    def __init__(self, *batches):
        super().__init__(*batches)
        self.seen_api_urls = []

    async def discover_endpoint(self, search_text):
        return f"https://api.test/search?q={search_text}"

    async def search(self, query):
        self.seen_api_urls.append(query.api_url)
        return await super().search(query)


def _runner(session_factory, adapter, transport=None):
    registry = AdapterRegistry(factories={})
    registry.set_adapter(MARKTPLAATS_ID, adapter)
    dispatcher = NotificationDispatcher(transport, session_factory=session_factory)
    return QueryTaskRunner(
        registry=registry, dispatcher=dispatcher, session_factory=session_factory
    )


async def _reload(session_factory, query_id):
    async with session_factory() as db:
        return await db.get(SearchQuery, query_id)


async def _notifications(session_factory):
    async with session_factory() as db:
        result = await db.execute(select(Notification).order_by(Notification.id))
        return list(result.scalars().all())


class TestRunQuery:

    @pytest.mark.asyncio
    async def test_first_run_records_baseline_silently(self, session_factory, query):
        adapter = StaticAdapter([make_listing("m1", "100.00"), make_listing("m2", "50.00")])
        transport = RecordingTransport()
        runner = _runner(session_factory, adapter, transport)

        result = await runner.run_query(query.id, "immediate")

        assert result.status == "success"
        assert result.is_first_run is True
        assert result.new_count == 2
        assert result.events == []
        assert transport.sent == []
        assert await _notifications(session_factory) == []
        assert (await _reload(session_factory, query.id)).last_executed_at is not None

    @pytest.mark.asyncio
    async def test_second_run_notifies_new_and_dropped(self, session_factory, query):
        adapter = StaticAdapter(
            [make_listing("m1", "100.00"), make_listing("m2", "50.00")],
            [make_listing("m1", "85.00"), make_listing("m2", "50.00"), make_listing("m3", "20.00")],
        )
        transport = RecordingTransport()
        runner = _runner(session_factory, adapter, transport)

        await runner.run_query(query.id, "immediate")
        result = await runner.run_query(query.id, "scheduled")

        assert result.is_first_run is False
        assert [event.notification_type for event in result.events] == [
            NotificationType.PRICE_DROP,
            NotificationType.NEW_PRODUCT,
        ]
        assert result.events[0].price_drop_percent == 15
        assert result.outcomes == [DeliveryOutcome.DELIVERED, DeliveryOutcome.DELIVERED]
        assert len(transport.sent) == 2
        stored = await _notifications(session_factory)
        assert [n.notification_type for n in stored] == [
            NotificationType.PRICE_DROP,
            NotificationType.NEW_PRODUCT,
        ]
        assert all(n.is_read is False for n in stored)

    @pytest.mark.asyncio
    async def test_small_drop_under_threshold_is_silent(self, session_factory, user):
        query = await create_query(session_factory, user.id, price_drop_threshold_percent=10)
        adapter = StaticAdapter([make_listing("m1", "50.00")], [make_listing("m1", "48.00")])
        runner = _runner(session_factory, adapter, RecordingTransport())

        await runner.run_query(query.id)
        result = await runner.run_query(query.id)

        assert result.changed_count == 1
        assert result.events == []

    @pytest.mark.asyncio
    async def test_skipped_listings_do_not_block_progress(self, session_factory, query):
        adapter = StaticAdapter([make_listing("ok", "10.00"), make_listing("bad", "NaN")])
        runner = _runner(session_factory, adapter)

        result = await runner.run_query(query.id)

        assert result.status == "success"
        assert result.failed_listings == 1
        assert (await _reload(session_factory, query.id)).last_executed_at is not None

    @pytest.mark.asyncio
    async def test_fetch_failure_leaves_query_untouched(self, session_factory, query):
        adapter = StaticAdapter(UpstreamUnavailableError("Marktplaats", "HTTP 503", status_code=503))
        runner = _runner(session_factory, adapter)

        result = await runner.run_query(query.id)

        assert result.status == "failed"
        assert "HTTP 503" in result.error
        assert (await _reload(session_factory, query.id)).last_executed_at is None

    @pytest.mark.asyncio
    async def test_fetch_failure_after_first_run_keeps_first_run_flag_off(self, session_factory, query):
        adapter = StaticAdapter(
            [make_listing("m1", "10.00")],
            UpstreamUnavailableError("Marktplaats", "timeout"),
            [make_listing("m1", "10.00"), make_listing("m2", "5.00")],
        )
        runner = _runner(session_factory, adapter, RecordingTransport())

        await runner.run_query(query.id)
        failed = await runner.run_query(query.id)
        recovered = await runner.run_query(query.id)

        assert failed.status == "failed"
        assert recovered.is_first_run is False
        assert [event.notification_type for event in recovered.events] == [
            NotificationType.NEW_PRODUCT
        ]

    @pytest.mark.asyncio
    async def test_missing_query_is_skipped(self, session_factory):
        runner = _runner(session_factory, StaticAdapter([]))

        result = await runner.run_query(999)

        assert result.status == "skipped"
        assert result.error == "query not found"

    @pytest.mark.asyncio
    async def test_inactive_query_is_skipped(self, session_factory, user):
        query = await create_query(session_factory, user.id, is_active=False)
        adapter = StaticAdapter([make_listing("m1", "10.00")])
        runner = _runner(session_factory, adapter)

        result = await runner.run_query(query.id)

        assert result.status == "skipped"
        assert adapter.calls == 0

    @pytest.mark.asyncio
    async def test_retailer_without_adapter_is_skipped(self, session_factory, user):
        query = await create_query(session_factory, user.id, retailer_id=VINTED_ID)
        runner = _runner(session_factory, StaticAdapter([]))

        result = await runner.run_query(query.id)

        assert result.status == "skipped"
        assert result.error == "no adapter"

    @pytest.mark.asyncio
    async def test_discovered_endpoint_is_persisted_once(self, session_factory, query):
        adapter = DiscoveringAdapter([make_listing("m1", "10.00")])
        runner = _runner(session_factory, adapter)

        await runner.run_query(query.id)
        await runner.run_query(query.id)

        expected = "https://api.test/search?q=fiets"
        assert adapter.seen_api_urls == [expected, expected]
        assert (await _reload(session_factory, query.id)).api_url == expected


@pytest.mark.asyncio
async def test_close_releases_adapters(session_factory):
    adapter = StaticAdapter([])
    runner = _runner(session_factory, adapter)

    await runner.close()

    assert adapter.closed is True


class TestNotificationProperties:
    """End-to-end notification behaviour across consecutive runs."""

    @pytest.mark.asyncio
    async def test_threshold_example(self, session_factory, user):
        query = await create_query(
            session_factory, user.id, interval_minutes=5, price_drop_threshold_percent=10
        )
        adapter = StaticAdapter(
            [
                make_listing("a", "100.00"),
                make_listing("b", "50.00"),
                make_listing("bid", "0", price_type="FAST_BID"),
            ],
            [
                make_listing("a", "85.00"),
                make_listing("b", "48.00"),
                make_listing("bid", "0", price_type="FAST_BID"),
            ],
        )
        runner = _runner(session_factory, adapter, RecordingTransport())

        await runner.run_query(query.id)
        result = await runner.run_query(query.id)

        assert [(e.notification_type, e.price_drop_percent) for e in result.events] == [
            (NotificationType.PRICE_DROP, 15)
        ]
        assert len(await _notifications(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_new_listing_is_stored_but_not_notified_when_disabled(self, session_factory, user):
        query = await create_query(session_factory, user.id, notify_on_new=False)
        adapter = StaticAdapter(
            [make_listing("a", "10.00")],
            [make_listing("a", "10.00"), make_listing("b", "12.00")],
        )
        runner = _runner(session_factory, adapter, RecordingTransport())

        await runner.run_query(query.id)
        result = await runner.run_query(query.id)

        assert result.new_count == 1
        assert result.events == []
        assert await _notifications(session_factory) == []
        async with session_factory() as db:
            stored = await db.execute(select(Product).where(Product.external_id == "b"))
            assert stored.scalar_one().price == Decimal("12.00")

    @pytest.mark.asyncio
    async def test_unchanged_reruns_are_silent(self, session_factory, query):
        batch = [make_listing("a", "10.00"), make_listing("b", "20.00")]
        adapter = StaticAdapter(batch)
        runner = _runner(session_factory, adapter, RecordingTransport())

        await runner.run_query(query.id)
        await runner.run_query(query.id)
        result = await runner.run_query(query.id)

        assert result.unchanged_count == 2
        assert result.events == []
        assert await _notifications(session_factory) == []
        async with session_factory() as db:
            products = (await db.execute(select(Product))).scalars().all()
        assert all(product.old_price is None for product in products)

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_advance_query(self, session_factory, query):
        reconciler = AsyncMock()
        reconciler.reconcile.side_effect = PersistenceError("database is locked")
        runner = QueryTaskRunner(
            registry=AdapterRegistry(factories={}),
            reconciler=reconciler,
            dispatcher=NotificationDispatcher(None, session_factory=session_factory),
            session_factory=session_factory,
        )
        runner.registry.set_adapter(MARKTPLAATS_ID, StaticAdapter([make_listing("a", "1.00")]))

        result = await runner.run_query(query.id)

        assert result.status == "failed"
        assert "database is locked" in result.error
        reconciler.reconcile.assert_awaited_once()
        assert (await _reload(session_factory, query.id)).last_executed_at is None
