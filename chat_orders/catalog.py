import logging
from typing import List, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_orders.errors import AmbiguousMatchError, ProductNotFoundError
from chat_orders.models import Product

logger = logging.getLogger(__name__)

# Upper bound on candidates returned for an ambiguous token.
MAX_CANDIDATES = 5


class CatalogStore:
    """Read access to the product catalog."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_products(self) -> List[Product]:
        async with self._session_factory() as session:
            result = await session.execute(select(Product).order_by(Product.name))
            return list(result.scalars().all())

    async def get_products(self, product_ids: Sequence[int]) -> List[Product]:
        if not product_ids:
            return []
        async with self._session_factory() as session:
            result = await session.execute(
                select(Product).where(Product.id.in_(list(product_ids)))
            )
            return list(result.scalars().all())

    async def find_exact(self, name: str, limit: int = MAX_CANDIDATES) -> List[Product]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Product)
                .where(func.lower(Product.name) == name.lower())
                .order_by(Product.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def find_containing(self, fragment: str, limit: int = MAX_CANDIDATES) -> List[Product]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Product)
                .where(func.lower(Product.name).contains(fragment.lower(), autoescape=True))
                .order_by(Product.name)
                .limit(limit)
            )
            return list(result.scalars().all())


class ProductResolver:
    """Exact case-insensitive match first, then a unique substring match."""

    def __init__(self, catalog: CatalogStore):
        self._catalog = catalog

    async def resolve(self, token: str) -> Product:
        needle = (token or "").strip()
        if not needle:
            raise ProductNotFoundError(token or "")

        exact = await self._catalog.find_exact(needle)
        if len(exact) == 1:
            return exact[0]
        if len(exact) > 1:
            raise AmbiguousMatchError(needle, [p.name for p in exact])

        partial = await self._catalog.find_containing(needle)
        if len(partial) == 1:
            return partial[0]
        if len(partial) > 1:
            logger.info("Ambiguous product token %r: %s", needle, [p.name for p in partial])
            raise AmbiguousMatchError(needle, [p.name for p in partial])

        raise ProductNotFoundError(needle)
