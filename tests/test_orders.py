import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from chat_orders.errors import DuplicateDeliveryError, TransientStoreError
from chat_orders.models import Order, OrderItem, OrderStatus, Product
from chat_orders.orders import (
    NoValidItems,
    OrderResult,
    OrderTransactionManager,
    SkipReason,
)


async def count_orders(session_factory):
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(Order))


@pytest.mark.asyncio
async def test_place_order_creates_order_and_decrements_stock(add_products, manager, session_factory, stock_of):
    rice, wheat = await add_products(("rice", 50, 3), ("wheat", "12.50", 10))

    result = await manager.place_order("15550001", [(rice, 2), (wheat, 3)])

    assert isinstance(result, OrderResult)
    assert result.order.total == Decimal("137.50")
    assert result.order.status == OrderStatus.PENDING
    assert result.skipped == []
    assert await stock_of(rice.id) == 1
    assert await stock_of(wheat.id) == 7

    async with session_factory() as session:
        items = (await session.execute(
            select(OrderItem).where(OrderItem.order_id == result.order.id)
        )).scalars().all()
    assert sorted((i.product_id, i.quantity) for i in items) == sorted([(rice.id, 2), (wheat.id, 3)])
    assert sum(i.unit_price * i.quantity for i in items) == result.order.total


@pytest.mark.asyncio
async def test_insufficient_stock_item_is_skipped(add_products, manager, stock_of):
    rice, wheat = await add_products(("rice", 50, 1), ("wheat", 40, 10))

    result = await manager.place_order("15550001", [(rice, 2), (wheat, 1)])

    assert isinstance(result, OrderResult)
    assert result.order.total == Decimal("40")
    assert [(s.token, s.reason, s.available) for s in result.skipped] == [
        ("rice", SkipReason.INSUFFICIENT_STOCK, 1)
    ]
    assert await stock_of(rice.id) == 1
    assert await stock_of(wheat.id) == 9


@pytest.mark.asyncio
async def test_no_valid_items_writes_nothing(add_products, manager, session_factory, stock_of):
    (rice,) = await add_products(("rice", 50, 1))

    result = await manager.place_order("15550001", [(rice, 5)])

    assert isinstance(result, NoValidItems)
    assert result.skipped[0].reason == SkipReason.INSUFFICIENT_STOCK
    assert await count_orders(session_factory) == 0
    assert await stock_of(rice.id) == 1


@pytest.mark.asyncio
async def test_non_positive_quantity_is_rejected(add_products, manager):
    (rice,) = await add_products(("rice", 50, 5))

    result = await manager.place_order("15550001", [(rice, 0)])

    assert isinstance(result, NoValidItems)
    assert result.skipped[0].reason == SkipReason.INVALID_QUANTITY


@pytest.mark.asyncio
async def test_repeated_product_lines_are_merged(add_products, manager, stock_of):
    (rice,) = await add_products(("rice", 50, 3))

    result = await manager.place_order("15550001", [(rice, 1), (rice, 2)])

    assert isinstance(result, OrderResult)
    assert [(line.product_id, line.quantity) for line in result.lines] == [(rice.id, 3)]
    assert await stock_of(rice.id) == 0


@pytest.mark.asyncio
async def test_unit_price_is_a_snapshot(add_products, manager, session_factory):
    (rice,) = await add_products(("rice", 50, 5))
    result = await manager.place_order("15550001", [(rice, 1)])

    async with session_factory() as session:
        async with session.begin():
            product = await session.get(Product, rice.id)
            product.price = Decimal("75")

    async with session_factory() as session:
        item = (await session.execute(
            select(OrderItem).where(OrderItem.order_id == result.order.id)
        )).scalar_one()
    assert item.unit_price == Decimal("50")


@pytest.mark.asyncio
async def test_lost_race_is_retried_against_fresh_stock(add_products, manager, session_factory, stock_of):
    (rice,) = await add_products(("rice", 50, 1))
    # Snapshot taken before another order took most of the stock
    stale = Product(id=rice.id, name="rice", price=Decimal("50"), stock=5)

    result = await manager.place_order("15550001", [(stale, 2)])

    assert isinstance(result, NoValidItems)
    assert result.skipped[0].reason == SkipReason.INSUFFICIENT_STOCK
    assert result.skipped[0].available == 1
    assert await count_orders(session_factory) == 0
    assert await stock_of(rice.id) == 1


@pytest.mark.asyncio
async def test_second_lost_race_demotes_item(add_products, manager, catalog, stock_of):
    rice, wheat = await add_products(("rice", 50, 1), ("wheat", 40, 5))
    stale = Product(id=rice.id, name="rice", price=Decimal("50"), stock=5)

    with patch.object(catalog, "get_products", new=AsyncMock(return_value=[stale, wheat])):
        result = await manager.place_order("15550001", [(stale, 2), (wheat, 1)])

    assert isinstance(result, OrderResult)
    assert [line.name for line in result.lines] == ["wheat"]
    assert result.skipped[0].token == "rice"
    assert result.skipped[0].reason == SkipReason.INSUFFICIENT_STOCK
    assert await stock_of(rice.id) == 1
    assert await stock_of(wheat.id) == 4


@pytest.mark.asyncio
async def test_deleted_product_is_reported_not_found(add_products, manager, session_factory):
    (rice,) = await add_products(("rice", 50, 5))
    snapshot = Product(id=rice.id, name="rice", price=Decimal("50"), stock=5)
    async with session_factory() as session:
        async with session.begin():
            await session.delete(await session.get(Product, rice.id))

    result = await manager.place_order("15550001", [(snapshot, 1)])

    assert isinstance(result, NoValidItems)
    assert result.skipped[0].reason == SkipReason.NOT_FOUND


@pytest.mark.asyncio
async def test_transient_store_error_is_retried_once(add_products, manager, stock_of):
    (rice,) = await add_products(("rice", 50, 5))
    real_commit = manager._commit
    calls = []

    async def flaky_commit(customer_reference, lines, message_id=None):
        calls.append(customer_reference)
        if len(calls) == 1:
            raise TransientStoreError("database is locked")
        return await real_commit(customer_reference, lines, message_id=message_id)

    with patch.object(manager, "_commit", new=flaky_commit):
        result = await manager.place_order("15550001", [(rice, 1)])

    assert isinstance(result, OrderResult)
    assert len(calls) == 2
    assert await stock_of(rice.id) == 4


@pytest.mark.asyncio
async def test_repeated_transient_store_error_propagates(add_products, manager, session_factory):
    (rice,) = await add_products(("rice", 50, 5))

    with patch.object(manager, "_commit", new=AsyncMock(side_effect=TransientStoreError("down"))):
        with pytest.raises(TransientStoreError):
            await manager.place_order("15550001", [(rice, 1)])

    assert await count_orders(session_factory) == 0


@pytest.mark.asyncio
async def test_concurrent_orders_never_oversell(add_products, manager, session_factory, stock_of):
    (rice,) = await add_products(("rice", 50, 5))

    results = await asyncio.gather(
        *(manager.place_order(f"1555000{i}", [(rice, 2)]) for i in range(4))
    )

    placed = [r for r in results if isinstance(r, OrderResult)]
    assert len(placed) == 2
    assert sum(line.quantity for r in placed for line in r.lines) <= 5
    assert await stock_of(rice.id) == 1
    assert await count_orders(session_factory) == 2


@pytest.mark.asyncio
async def test_order_created_event_is_published(add_products, session_factory, catalog):
    (rice,) = await add_products(("rice", 50, 5))
    publisher = AsyncMock()
    manager = OrderTransactionManager(session_factory, catalog, publisher=publisher)

    result = await manager.place_order("15550001", [(rice, 2)])

    publisher.publish_order_created.assert_awaited_once()
    order, lines = publisher.publish_order_created.call_args[0]
    assert order.id == result.order.id
    assert [line.quantity for line in lines] == [2]


@pytest.mark.asyncio
async def test_order_is_attached_to_message_claim(add_products, manager, ledger):
    (rice,) = await add_products(("rice", 50, 5))
    await ledger.claim("wamid.1", "15550001")

    result = await manager.place_order("15550001", [(rice, 1)], message_id="wamid.1")

    record = await ledger.lookup("wamid.1")
    assert record.order_id == result.order.id
    assert not record.completed


@pytest.mark.asyncio
async def test_order_without_open_claim_is_rolled_back(add_products, manager, ledger, session_factory, stock_of):
    (rice,) = await add_products(("rice", 50, 5))
    await ledger.claim("wamid.1", "15550001")
    await manager.place_order("15550001", [(rice, 1)], message_id="wamid.1")

    # Second order for the same message: the claim already carries an order
    with pytest.raises(DuplicateDeliveryError):
        await manager.place_order("15550001", [(rice, 1)], message_id="wamid.1")
    with pytest.raises(DuplicateDeliveryError):
        await manager.place_order("15550001", [(rice, 1)], message_id="wamid.unclaimed")

    assert await count_orders(session_factory) == 1
    assert await stock_of(rice.id) == 4
