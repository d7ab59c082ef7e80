import asyncio
import logging
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_orders.config import Settings, configure_logging
from chat_orders.database import build_engine, build_session_factory, init_db
from chat_orders.models import Product

logger = logging.getLogger(__name__)

STARTER_CATALOG = [
    ("rice", Decimal("50.00"), 20),
    ("wheat", Decimal("40.00"), 15),
    ("sugar", Decimal("45.00"), 10),
    ("lentils", Decimal("90.00"), 8),
    ("cooking oil", Decimal("160.00"), 0),
]


async def seed_catalog(session_factory: async_sessionmaker[AsyncSession], catalog=STARTER_CATALOG) -> int:
    """Insert the starter catalog into an empty products table. Returns rows added."""
    async with session_factory() as session:
        async with session.begin():
            count = await session.scalar(select(func.count()).select_from(Product))
            if count:
                logger.info("Catalog already seeded (%d products).", count)
                return 0
            session.add_all(
                Product(name=name, price=price, stock=stock) for name, price, stock in catalog
            )
    logger.info("Catalog seeded with %d products.", len(catalog))
    return len(catalog)


async def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    engine = build_engine(settings.database_url)
    try:
        await init_db(engine)
        await seed_catalog(build_session_factory(engine))
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
