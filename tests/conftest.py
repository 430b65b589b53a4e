"""Shared fixtures: an isolated database per test and seeded rows."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "")

from decimal import Decimal
from typing import Optional

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from multiscraper.db.models import Base, SearchQuery, User
from multiscraper.db.seed import LIDL_ID, MARKTPLAATS_ID, seed_retailers
from multiscraper.ingest.base import BaseAdapter, RawListing


@pytest_asyncio.fixture
async def engine():
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as db:
        await seed_retailers(db)
    return factory


@pytest_asyncio.fixture
async def user(session_factory):
    async with session_factory() as db:
        row = User(telegram_id=424242, username="alice", api_token="user-token")
        db.add(row)
        await db.commit()
        await db.refresh(row)
        return row


async def create_query(session_factory, user_id: int, retailer_id: int = MARKTPLAATS_ID, **overrides):
    values = {
        "user_id": user_id,
        "retailer_id": retailer_id,
        "search_text": "fiets",
        "interval_minutes": 15,
    }
    values.update(overrides)
    async with session_factory() as db:
        query = SearchQuery(**values)
        db.add(query)
        await db.commit()
        await db.refresh(query)
        return query


@pytest_asyncio.fixture
async def query(session_factory, user):
    return await create_query(session_factory, user.id)


@pytest_asyncio.fixture
async def lidl_query(session_factory, user):
    return await create_query(session_factory, user.id, retailer_id=LIDL_ID, search_text="airfryer")


def make_listing(
    external_id: str,
    price: str,
    title: Optional[str] = None,
    price_type: Optional[str] = None,
    image_url: Optional[str] = None,
    **extra,
) -> RawListing:
    return RawListing(
        external_id=external_id,
        title=title or f"Listing {external_id}",
        price=Decimal(price),
        product_url=f"https://www.marktplaats.nl/v/{external_id}",
        price_type=price_type,
        image_url=image_url,
        **extra,
    )


class StaticAdapter(BaseAdapter):
    """Adapter returning a scripted sequence of result sets."""

    supports_discovery = False

    def __init__(self, *batches, name: str = "Marktplaats"):
        self.batches = list(batches)
        self.calls = 0
        self.name = name
        self.closed = False

    def get_retailer_name(self) -> str:
        return self.name

    async def search(self, query):
        batch = self.batches[min(self.calls, len(self.batches) - 1)]
        self.calls += 1
        if isinstance(batch, Exception):
            raise batch
        return list(batch)

    async def close(self):
        self.closed = True


class RecordingTransport:
    """Delivery transport that records messages and fails on demand."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.sent = []

    async def deliver(self, recipient_id, message):
        self.sent.append((recipient_id, message))
        if self.results:
            return self.results.pop(0)
        return True


