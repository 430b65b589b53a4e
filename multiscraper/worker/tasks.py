"""Query execution pipeline: fetch, reconcile, decide, dispatch."""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from multiscraper import metrics
from multiscraper.config import settings
from multiscraper.db.models import SearchQuery, utcnow
from multiscraper.db.session import AsyncSessionLocal
from multiscraper.detect.decider import NotificationEvent, decide
from multiscraper.detect.reconciler import ProductReconciler
from multiscraper.errors import FetchError, PersistenceError
from multiscraper.logging_config import get_logger
from multiscraper.ingest.registry import AdapterRegistry, adapter_registry
from multiscraper.notify.dispatcher import DeliveryOutcome, NotificationDispatcher
from multiscraper.notify.telegram import TelegramTransport

logger = logging.getLogger(__name__)


@dataclass
class QueryRunResult:
    """Summary of one query execution."""

    query_id: int
    trigger: str
    status: str = "pending"  # success | skipped | failed
    is_first_run: bool = False
    listing_count: int = 0
    new_count: int = 0
    changed_count: int = 0
    unchanged_count: int = 0
    failed_listings: int = 0
    events: list[NotificationEvent] = field(default_factory=list)
    outcomes: list[DeliveryOutcome] = field(default_factory=list)
    error: Optional[str] = None
    duration_seconds: float = 0.0

    def skip(self, reason: str) -> "QueryRunResult":
        self.status = "skipped"
        self.error = reason
        return self


class QueryTaskRunner:
    """
    Runs the search pipeline for one query.

    Timer firings, immediate first runs and forced runs all go through
    run_query; there is no second code path.
    """

    def __init__(
        self,
        registry: Optional[AdapterRegistry] = None,
        reconciler: Optional[ProductReconciler] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        session_factory=None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.registry = registry or adapter_registry
        self.reconciler = reconciler or ProductReconciler(session_factory=self.session_factory)
        if dispatcher is None:
            transport = TelegramTransport() if settings.telegram_bot_token else None
            dispatcher = NotificationDispatcher(transport, session_factory=self.session_factory)
        self.dispatcher = dispatcher

    async def initialize(self):
        """Resolve adapters for all active retailers."""
        count = await self.registry.load(self.session_factory)
        if self.dispatcher.transport is None:
            logger.warning("TELEGRAM_BOT_TOKEN not set; notifications are stored but not pushed")
        logger.info(f"Task runner initialized with {count} retailer adapters")

    async def close(self):
        """Clean up resources."""
        await self.registry.cleanup()
        transport = self.dispatcher.transport
        if transport is not None and hasattr(transport, "close"):
            await transport.close()

    async def run_query(self, query_id: int, trigger: str = "scheduled") -> QueryRunResult:
        """
        Execute one query end to end.

        Never raises: failures are logged, counted and reported in the result,
        and the query's schedule is unaffected.

        Args:
            query_id: Query to execute
            trigger: What started the run (scheduled, immediate, forced, discovery)

        Returns:
            QueryRunResult
        """
        started = time.monotonic()
        result = QueryRunResult(query_id=query_id, trigger=trigger)

        try:
            await self._run(query_id, result)
        except FetchError as e:
            result.status = "failed"
            result.error = str(e)
            logger.warning(f"Query {query_id} fetch failed, retrying next interval: {e}")
        except PersistenceError as e:
            result.status = "failed"
            result.error = str(e)
            logger.error(f"Query {query_id} aborted, storage unavailable: {e}", exc_info=True)
        except Exception as e:
            result.status = "failed"
            result.error = str(e)
            logger.exception(f"Query {query_id} failed unexpectedly: {e}")

        result.duration_seconds = time.monotonic() - started
        metrics.record_query_run(trigger, result.status)
        logger.info(
            f"Query {query_id} run ({trigger}) finished: {result.status} in "
            f"{result.duration_seconds:.2f}s, {result.listing_count} listings, "
            f"{len(result.events)} notifications"
        )
        return result

    async def _load_query(self, query_id: int) -> Optional[SearchQuery]:
        try:
            async with self.session_factory() as db:
                return await db.get(
                    SearchQuery,
                    query_id,
                    options=[selectinload(SearchQuery.user), selectinload(SearchQuery.retailer)],
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not load query {query_id}: {e}") from e

    async def _update_query(self, query_id: int, **values) -> None:
        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(SearchQuery).where(SearchQuery.id == query_id).values(**values)
                )
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not update query {query_id}: {e}") from e

    async def _run(self, query_id: int, result: QueryRunResult) -> None:
        query = await self._load_query(query_id)
        if query is None:
            logger.info(f"Query {query_id} no longer exists")
            result.skip("query not found")
            return
        if not query.is_active or not query.user.is_active:
            logger.info(f"Query {query_id} or its owner is inactive, skipping")
            result.skip("inactive")
            return
        if not query.retailer.is_active:
            logger.info(f"Retailer {query.retailer.name} is disabled, skipping query {query_id}")
            result.skip("retailer inactive")
            return

        result.is_first_run = query.last_executed_at is None
        retailer_name = query.retailer.name

        adapter = self.registry.get_adapter(query.retailer_id)
        if adapter is None:
            logger.warning(f"No adapter for retailer {retailer_name}, skipping query {query_id}")
            result.skip("no adapter")
            return

        if adapter.supports_discovery and not query.api_url:
            endpoint = await adapter.discover_endpoint(query.search_text)
            if endpoint:
                await self._update_query(query_id, api_url=endpoint)
                query.api_url = endpoint
                logger.info(f"Query {query_id} endpoint discovered: {endpoint}")

        run_logger = get_logger(__name__, query_id=query_id, retailer=retailer_name)
        run_logger.info(
            f"Executing query {query_id} on {retailer_name}: {query.search_text!r}"
            + (" (first run)" if result.is_first_run else "")
        )
        fetch_started = time.monotonic()
        try:
            listings = await adapter.search(query)
        except FetchError as e:
            metrics.record_search_error(retailer_name, type(e).__name__, time.monotonic() - fetch_started)
            raise
        metrics.record_search_success(retailer_name, time.monotonic() - fetch_started)
        result.listing_count = len(listings)

        reconciliation = await self.reconciler.reconcile(
            query.retailer_id, query_id, listings, retailer_name=retailer_name
        )
        result.new_count = reconciliation.new_count
        result.changed_count = reconciliation.changed_count
        result.unchanged_count = reconciliation.unchanged_count
        result.failed_listings = len(reconciliation.failures)

        result.events = decide(query, reconciliation.listings, result.is_first_run)
        for event in result.events:
            result.outcomes.append(await self.dispatcher.dispatch(event))

        # Advances even when individual listings were skipped
        await self._update_query(query_id, last_executed_at=utcnow())
        result.status = "success"


# Global task runner instance
task_runner = QueryTaskRunner()
