"""Adapter registry for retailer implementations."""

import logging
from typing import Callable, Optional

from sqlalchemy import select

from multiscraper.db.models import Retailer
from multiscraper.ingest.base import BaseAdapter
from multiscraper.ingest.http_client import RetailerHttpClient
from multiscraper.ingest.retailers.lidl import LidlAdapter
from multiscraper.ingest.retailers.marktplaats import MarktplaatsAdapter

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[Retailer], BaseAdapter]


def _http_for(retailer: Retailer) -> RetailerHttpClient:
    return RetailerHttpClient(
        retailer.name,
        use_rotating_proxy=retailer.use_rotating_proxy,
        use_random_user_agent=retailer.use_random_user_agent,
    )


def _lidl(retailer: Retailer) -> BaseAdapter:
    return LidlAdapter(_http_for(retailer), base_url=retailer.base_url)


def _marktplaats(retailer: Retailer) -> BaseAdapter:
    return MarktplaatsAdapter(_http_for(retailer), base_url=retailer.base_url)


def retailer_key(name: str) -> str:
    return name.strip().lower()


class AdapterRegistry:
    """Capability table mapping retailers to their search adapter.

    Adapters are built once per retailer and reused across runs. Retailers
    without a registered factory resolve to None.
    """

    _default_factories: dict[str, AdapterFactory] = {
        "lidl": _lidl,
        "marktplaats": _marktplaats,
    }

    def __init__(self, factories: Optional[dict[str, AdapterFactory]] = None):
        self._factories = dict(factories if factories is not None else self._default_factories)
        self._instances: dict[int, BaseAdapter] = {}

    def register_factory(self, key: str, factory: AdapterFactory) -> None:
        """
        Register an adapter factory.

        Args:
            key: Retailer name, case-insensitive
            factory: Callable building an adapter for a Retailer row
        """
        self._factories[retailer_key(key)] = factory
        logger.info(f"Registered adapter factory for retailer: {key}")

    def list_keys(self) -> list[str]:
        return list(self._factories.keys())

    async def register_retailer(self, retailer: Retailer) -> Optional[BaseAdapter]:
        """
        Build (or rebuild) the adapter for a retailer row.

        The replacement is installed before the old adapter is closed. A run
        still holding the old adapter gets a FetchError on its next request.
        """
        factory = self._factories.get(retailer_key(retailer.name))
        adapter = factory(retailer) if factory is not None else None

        if adapter is None:
            old = self._instances.pop(retailer.id, None)
            logger.warning(f"No adapter available for retailer {retailer.name} (id={retailer.id})")
        else:
            old = self._instances.get(retailer.id)
            self._instances[retailer.id] = adapter
            logger.info(f"Initialized adapter for retailer: {retailer.name} (id={retailer.id})")

        if old is not None:
            await old.close()
        return adapter

    async def load(self, session_factory) -> int:
        """
        Resolve adapters for every active retailer.

        Returns:
            Number of retailers with an adapter
        """
        async with session_factory() as db:
            result = await db.execute(select(Retailer).where(Retailer.is_active.is_(True)))
            retailers = result.scalars().all()

        for retailer in retailers:
            await self.register_retailer(retailer)
        return len(self._instances)

    def set_adapter(self, retailer_id: int, adapter: BaseAdapter) -> None:
        self._instances[retailer_id] = adapter

    def get_adapter(self, retailer_id: int) -> Optional[BaseAdapter]:
        return self._instances.get(retailer_id)

    async def cleanup(self) -> None:
        """Close all adapter instances."""
        for retailer_id, adapter in self._instances.items():
            try:
                await adapter.close()
            except Exception as e:
                logger.error(f"Error closing adapter for retailer {retailer_id}: {e}")

        self._instances.clear()


# Global instance
adapter_registry = AdapterRegistry()

