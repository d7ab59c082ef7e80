from decimal import Decimal

import pytest

from chat_orders.errors import OrderNotFoundError
from chat_orders.models import Order, OrderStatus, Product


@pytest.mark.asyncio
async def test_status_returns_stored_order(add_products, manager, status_service):
    rice, wheat = await add_products(("rice", 50, 3), ("wheat", 40, 3))
    result = await manager.place_order("15550001", [(rice, 2), (wheat, 1)])

    view = await status_service.get_status(result.order.id)

    assert view.id == result.order.id
    assert view.status == OrderStatus.PENDING
    assert view.total == Decimal("140")
    assert [(item.name, item.quantity, item.unit_price) for item in view.items] == [
        ("rice", 2, Decimal("50")),
        ("wheat", 1, Decimal("40")),
    ]
    assert sum(item.line_total for item in view.items) == view.total


@pytest.mark.asyncio
async def test_status_lookup_ignores_case(add_products, manager, status_service):
    (rice,) = await add_products(("rice", 50, 3))
    result = await manager.place_order("15550001", [(rice, 1)])

    view = await status_service.get_status(result.order.id.upper())

    assert view.id == result.order.id


@pytest.mark.asyncio
async def test_missing_order(status_service):
    with pytest.raises(OrderNotFoundError):
        await status_service.get_status("missing-id")


@pytest.mark.asyncio
async def test_deleted_product_keeps_history(add_products, manager, status_service, session_factory):
    (rice,) = await add_products(("rice", 50, 3))
    result = await manager.place_order("15550001", [(rice, 1)])
    async with session_factory() as session:
        async with session.begin():
            await session.delete(await session.get(Product, rice.id))

    view = await status_service.get_status(result.order.id)

    assert view.items[0].name == f"#{rice.id}"
    assert view.items[0].unit_price == Decimal("50")


@pytest.mark.asyncio
async def test_order_without_items(session_factory, status_service):
    async with session_factory() as session:
        async with session.begin():
            session.add(Order(id="abc123", customer_reference="15550001", total=Decimal("0")))

    view = await status_service.get_status("abc123")

    assert view.items == []
    assert view.total == Decimal("0")
