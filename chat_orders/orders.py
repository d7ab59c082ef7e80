"""Order Transaction Manager.

Turns resolved line items into an order in one transaction. Stock is only
ever changed by a conditional decrement (``stock >= quantity`` in the
WHERE clause), so two orders racing on the same product cannot both take
the last units. A decrement that matches no row aborts the transaction;
the losing product is retried once against fresh stock figures and then
dropped from the order.
"""

import enum
import logging
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from chat_orders.catalog import CatalogStore
from chat_orders.errors import DuplicateDeliveryError, InsufficientStockError, TransientStoreError
from chat_orders.models import Order, OrderItem, OrderStatus, ProcessedMessage, Product, utcnow

logger = logging.getLogger(__name__)

# Losses of the conditional decrement tolerated per product before it is dropped.
MAX_STOCK_CONFLICTS = 2


class SkipReason(str, enum.Enum):
    NOT_FOUND = "not_found"
    AMBIGUOUS = "ambiguous"
    INSUFFICIENT_STOCK = "insufficient_stock"
    INVALID_QUANTITY = "invalid_quantity"


@dataclass(frozen=True)
class SkippedItem:
    token: str
    reason: SkipReason
    quantity: int = 0
    available: Optional[int] = None
    candidates: Tuple[str, ...] = ()


@dataclass(frozen=True)
class OrderLine:
    product_id: int
    name: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class OrderResult:
    order: Order
    lines: List[OrderLine]
    skipped: List[SkippedItem] = field(default_factory=list)


@dataclass
class NoValidItems:
    skipped: List[SkippedItem] = field(default_factory=list)


PlaceOrderOutcome = Union[OrderResult, NoValidItems]


class StockConflict(Exception):
    """Raised inside the order transaction when a conditional decrement loses."""

    def __init__(self, product_id: int):
        super().__init__(f"Conditional stock decrement failed for product {product_id}")
        self.product_id = product_id


def new_order_id() -> str:
    return uuid4().hex[:12]


def _merge_lines(lines: Sequence[Tuple[Product, int]]) -> Tuple[Dict[int, Product], Dict[int, int]]:
    products: Dict[int, Product] = {}
    quantities: Dict[int, int] = {}
    for product, quantity in lines:
        if product.id not in products:
            products[product.id] = product
            quantities[product.id] = 0
        quantities[product.id] += quantity
    return products, quantities


def _check_line(product: Product, quantity: int) -> None:
    if product.stock < quantity:
        raise InsufficientStockError(product.id, quantity, product.stock)


class OrderTransactionManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: CatalogStore,
        publisher=None,
    ):
        self._session_factory = session_factory
        self._catalog = catalog
        self._publisher = publisher

    async def place_order(
        self,
        customer_reference: str,
        lines: Sequence[Tuple[Product, int]],
        message_id: Optional[str] = None,
    ) -> PlaceOrderOutcome:
        """Place an order for the resolved ``lines``.

        With ``message_id`` the claimed ledger row is stamped with the order id
        in the same transaction, so a committed order is never orphaned from
        the message that created it.
        """
        products, quantities = _merge_lines(lines)
        skipped: List[SkippedItem] = []

        # 1. Reject non-positive quantities up front, they never become valid
        for product_id in list(products):
            if quantities[product_id] <= 0:
                product = products.pop(product_id)
                skipped.append(
                    SkippedItem(product.name, SkipReason.INVALID_QUANTITY, quantities[product_id])
                )

        conflicts: Counter = Counter()
        while True:
            # 2. Check stock against the latest known figures
            survivors: List[OrderLine] = []
            for product_id, product in list(products.items()):
                quantity = quantities[product_id]
                try:
                    _check_line(product, quantity)
                except InsufficientStockError as exc:
                    products.pop(product_id)
                    skipped.append(
                        SkippedItem(
                            product.name,
                            SkipReason.INSUFFICIENT_STOCK,
                            quantity,
                            available=exc.available,
                        )
                    )
                    continue
                survivors.append(
                    OrderLine(product.id, product.name, quantity, Decimal(product.price))
                )

            if not survivors:
                logger.info("No valid items for %s, skipped=%s", customer_reference, skipped)
                return NoValidItems(skipped=skipped)

            # 3. One transaction: decrement, insert order and items
            try:
                order = await self._commit_with_retry(customer_reference, survivors, message_id)
            except StockConflict as conflict:
                conflicts[conflict.product_id] += 1
                logger.info(
                    "Stock conflict on product %s (attempt %d) for %s",
                    conflict.product_id,
                    conflicts[conflict.product_id],
                    customer_reference,
                )
                # 4. Second loss for the same product: drop it from the order
                if conflicts[conflict.product_id] >= MAX_STOCK_CONFLICTS:
                    lost = products.pop(conflict.product_id)
                    skipped.append(
                        SkippedItem(
                            lost.name,
                            SkipReason.INSUFFICIENT_STOCK,
                            quantities[conflict.product_id],
                        )
                    )
                await self._refresh(products, skipped, quantities)
                continue

            logger.info(
                "Order %s placed for %s: total=%s items=%d skipped=%d",
                order.id,
                customer_reference,
                order.total,
                len(survivors),
                len(skipped),
            )
            if self._publisher is not None:
                await self._publisher.publish_order_created(order, survivors)
            return OrderResult(order=order, lines=survivors, skipped=skipped)

    async def _refresh(
        self,
        products: Dict[int, Product],
        skipped: List[SkippedItem],
        quantities: Dict[int, int],
    ) -> None:
        fresh = {p.id: p for p in await self._catalog.get_products(list(products))}
        for product_id, stale in list(products.items()):
            if product_id in fresh:
                products[product_id] = fresh[product_id]
            else:
                products.pop(product_id)
                skipped.append(
                    SkippedItem(stale.name, SkipReason.NOT_FOUND, quantities[product_id])
                )

    async def _commit_with_retry(
        self, customer_reference: str, lines: List[OrderLine], message_id: Optional[str] = None
    ) -> Order:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(2),
            retry=retry_if_exception_type(TransientStoreError),
            reraise=True,
        ):
            with attempt:
                return await self._commit(customer_reference, lines, message_id=message_id)

    async def _commit(
        self, customer_reference: str, lines: List[OrderLine], message_id: Optional[str] = None
    ) -> Order:
        total = sum((line.line_total for line in lines), Decimal("0"))
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    for line in lines:
                        result = await session.execute(
                            update(Product)
                            .where(Product.id == line.product_id, Product.stock >= line.quantity)
                            .values(stock=Product.stock - line.quantity)
                            .execution_options(synchronize_session=False)
                        )
                        if result.rowcount != 1:
                            raise StockConflict(line.product_id)

                    order = Order(
                        id=new_order_id(),
                        customer_reference=customer_reference,
                        status=OrderStatus.PENDING,
                        total=total,
                        created_at=utcnow(),
                    )
                    order.items = [
                        OrderItem(
                            product_id=line.product_id,
                            quantity=line.quantity,
                            unit_price=line.unit_price,
                        )
                        for line in lines
                    ]
                    session.add(order)
                    if message_id is not None:
                        await self._attach_to_claim(session, message_id, order.id)
                return order
        except (OperationalError, InterfaceError) as exc:
            logger.warning("Order transaction for %s failed: %s", customer_reference, exc)
            raise TransientStoreError(str(exc)) from exc

    async def _attach_to_claim(self, session: AsyncSession, message_id: str, order_id: str) -> None:
        result = await session.execute(
            update(ProcessedMessage)
            .where(
                ProcessedMessage.message_id == message_id,
                ProcessedMessage.processed_at.is_(None),
                ProcessedMessage.order_id.is_(None),
            )
            .values(order_id=order_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # The claim was released or another delivery already placed the order
            raise DuplicateDeliveryError(message_id)
