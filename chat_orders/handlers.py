import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from chat_orders.catalog import CatalogStore, ProductResolver
from chat_orders.commands import CheckStatus, ListCatalog, PlaceOrder, parse
from chat_orders.errors import (
    AmbiguousMatchError,
    OrderNotFoundError,
    ProductNotFoundError,
    TransientStoreError,
    ValidationError,
)
from chat_orders.models import Product
from chat_orders.orders import NoValidItems, OrderTransactionManager, SkippedItem, SkipReason
from chat_orders.queries import StatusQueryService
from chat_orders.replies import (
    GENERIC_FAILURE_TEXT,
    HELP_TEXT,
    ORDER_NOT_FOUND_TEXT,
    format_catalog,
    format_no_valid_items,
    format_order_confirmation,
    format_order_recovered,
    format_status,
    format_usage,
)
from chat_orders.schemas import InboundDelivery

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Outcome:
    kind: str
    reply: str
    order_id: Optional[str] = None


class CommandHandler:
    """Routes a parsed command to the component that answers it."""

    def __init__(
        self,
        catalog: CatalogStore,
        resolver: ProductResolver,
        orders: OrderTransactionManager,
        status: StatusQueryService,
    ):
        self._catalog = catalog
        self._resolver = resolver
        self._orders = orders
        self._status = status

    async def handle(self, delivery: InboundDelivery) -> Outcome:
        try:
            command = parse(delivery.text)
        except ValidationError as exc:
            return Outcome("validation_error", format_usage(exc.usage))

        if isinstance(command, PlaceOrder):
            return await self._place_order(delivery, command)
        if isinstance(command, CheckStatus):
            return await self._check_status(command)
        if isinstance(command, ListCatalog):
            products = await self._catalog.list_products()
            return Outcome("catalog", format_catalog(products))
        return Outcome("unrecognized", HELP_TEXT)

    async def _resolve_items(self, command: PlaceOrder) -> Tuple[List[Tuple[Product, int]], List[SkippedItem]]:
        resolved: List[Tuple[Product, int]] = []
        skipped: List[SkippedItem] = []
        for token, quantity in command.items:
            try:
                product = await self._resolver.resolve(token)
            except ProductNotFoundError:
                skipped.append(SkippedItem(token, SkipReason.NOT_FOUND, quantity))
                continue
            except AmbiguousMatchError as exc:
                skipped.append(
                    SkippedItem(token, SkipReason.AMBIGUOUS, quantity, candidates=tuple(exc.candidates))
                )
                continue
            resolved.append((product, quantity))
        return resolved, skipped

    async def _place_order(self, delivery: InboundDelivery, command: PlaceOrder) -> Outcome:
        resolved, skipped = await self._resolve_items(command)
        if not resolved:
            return Outcome("no_valid_items", format_no_valid_items(skipped))

        try:
            result = await self._orders.place_order(
                delivery.sender, resolved, message_id=delivery.message_id
            )
        except TransientStoreError:
            logger.exception("Order for %s failed against the store", delivery.sender)
            return Outcome("failed", GENERIC_FAILURE_TEXT)

        if isinstance(result, NoValidItems):
            return Outcome("no_valid_items", format_no_valid_items(skipped + result.skipped))

        result.skipped = skipped + result.skipped
        return Outcome("order_placed", format_order_confirmation(result), order_id=result.order.id)

    async def _check_status(self, command: CheckStatus) -> Outcome:
        try:
            view = await self._status.get_status(command.order_id)
        except OrderNotFoundError:
            return Outcome("not_found", ORDER_NOT_FOUND_TEXT)
        return Outcome("status", format_status(view), order_id=view.id)

    async def recover_order(self, order_id: str) -> Outcome:
        """Rebuild the outcome of an order whose message was never completed."""
        view = await self._status.get_status(order_id)
        return Outcome("order_placed", format_order_recovered(view), order_id=view.id)
