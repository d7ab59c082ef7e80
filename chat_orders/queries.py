"""Status Query Service: read side for orders."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_orders.errors import OrderNotFoundError
from chat_orders.models import Order, OrderItem, Product
from chat_orders.schemas import OrderItemView, OrderView


class StatusQueryService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_status(self, order_id: str) -> OrderView:
        """Return the order with its items, or raise ``OrderNotFoundError``.

        Order ids are generated lowercase, so lookups are case-insensitive.
        """
        normalized = order_id.strip().lower()
        async with self._session_factory() as session:
            order = await session.get(Order, normalized)
            if order is None:
                raise OrderNotFoundError(order_id)

            # Products are referenced weakly, a deleted one shows its id.
            result = await session.execute(
                select(OrderItem, Product.name)
                .outerjoin(Product, Product.id == OrderItem.product_id)
                .where(OrderItem.order_id == order.id)
                .order_by(OrderItem.product_id)
            )
            items = [
                OrderItemView(
                    product_id=item.product_id,
                    name=name if name is not None else f"#{item.product_id}",
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for item, name in result.all()
            ]

        return OrderView(
            id=order.id,
            status=order.status,
            total=order.total,
            created_at=order.created_at,
            items=items,
        )
