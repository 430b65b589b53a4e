"""Seed the default retailers."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from multiscraper.db.models import Retailer

logger = logging.getLogger(__name__)

LIDL_ID = 1
MARKTPLAATS_ID = 2
VINTED_ID = 3

DEFAULT_RETAILERS = [
    {
        "id": LIDL_ID,
        "name": "Lidl",
        "base_url": "https://www.lidl.nl",
        "use_rotating_proxy": False,
        "use_random_user_agent": True,
    },
    {
        "id": MARKTPLAATS_ID,
        "name": "Marktplaats",
        "base_url": "https://www.marktplaats.nl",
        "use_rotating_proxy": False,
        "use_random_user_agent": True,
    },
    {
        "id": VINTED_ID,
        "name": "Vinted",
        "base_url": "https://www.vinted.nl",
        "use_rotating_proxy": False,
        "use_random_user_agent": True,
    },
]


async def seed_retailers(db: AsyncSession) -> int:
    """
    Insert default retailers that do not exist yet.

    Existing rows are left alone so admin toggles survive restarts.

    Returns:
        Number of retailers inserted
    """
    result = await db.execute(select(Retailer.id))
    existing = set(result.scalars().all())

    added = 0
    for data in DEFAULT_RETAILERS:
        if data["id"] in existing:
            continue
        db.add(Retailer(**data))
        added += 1

    if added:
        await db.commit()
        logger.info(f"Seeded {added} retailers")
    return added
