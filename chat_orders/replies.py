"""Reply formatting and dispatch to the Messaging Gateway."""

import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from chat_orders.commands import ORDER_USAGE, STATUS_USAGE
from chat_orders.errors import GatewayError
from chat_orders.gateway import MessagingGateway
from chat_orders.models import Product
from chat_orders.orders import OrderResult, SkippedItem, SkipReason
from chat_orders.schemas import OrderView

logger = logging.getLogger(__name__)

HELP_TEXT = "🤖 Send 'order rice 2', 'status <id>' or 'list'."
NO_VALID_ITEMS_TEXT = "⚠️ No valid products found in your order."
ORDER_NOT_FOUND_TEXT = "⚠️ Order not found with that ID."
GENERIC_FAILURE_TEXT = "Sorry, something went wrong while processing your message. Please try again later."
EMPTY_CATALOG_TEXT = "The catalog is empty right now."


def format_money(amount: Decimal) -> str:
    return f"{Decimal(amount):.2f}"


def describe_skipped(item: SkippedItem) -> str:
    if item.reason == SkipReason.NOT_FOUND:
        return f"'{item.token}' was not found"
    if item.reason == SkipReason.AMBIGUOUS:
        options = ", ".join(item.candidates)
        return f"'{item.token}' matches several products ({options}), please be more specific"
    if item.reason == SkipReason.INVALID_QUANTITY:
        return f"{item.token}: quantity must be at least 1"
    if item.available is not None:
        return f"{item.token}: only {item.available} left in stock"
    return f"{item.token}: not enough stock"


def _skipped_block(skipped: Sequence[SkippedItem]) -> List[str]:
    if not skipped:
        return []
    return ["Skipped:"] + [f"- {describe_skipped(item)}" for item in skipped]


def format_order_confirmation(result: OrderResult) -> str:
    order = result.order
    lines = [
        "✅ Order created!",
        f"ID: {order.id}",
        f"Status: {order.status.value}",
        "Items:",
    ]
    lines += [
        f"- {line.name} x{line.quantity} = {format_money(line.line_total)}"
        for line in result.lines
    ]
    lines.append(f"Total: {format_money(order.total)}")
    lines += _skipped_block(result.skipped)
    return "\n".join(lines)


def format_order_recovered(view: OrderView) -> str:
    """Confirmation rebuilt from the stored order when the original reply was lost."""
    lines = [
        "✅ Order created!",
        f"ID: {view.id}",
        f"Status: {view.status.value}",
        "Items:",
    ]
    lines += [
        f"- {item.name} x{item.quantity} = {format_money(item.line_total)}"
        for item in view.items
    ]
    lines.append(f"Total: {format_money(view.total)}")
    return "\n".join(lines)


def format_no_valid_items(skipped: Sequence[SkippedItem]) -> str:
    return "\n".join([NO_VALID_ITEMS_TEXT] + _skipped_block(skipped) + [ORDER_USAGE])


def format_status(view: OrderView) -> str:
    if view.items:
        items = ", ".join(
            f"{item.quantity}x {item.name} ({format_money(item.line_total)})" for item in view.items
        )
    else:
        items = "none"
    return "\n".join(
        [
            "📦 Order Status",
            f"ID: {view.id}",
            f"Status: {view.status.value}",
            f"Total: {format_money(view.total)}",
            f"Items: {items}",
        ]
    )


def format_catalog(products: Iterable[Product]) -> str:
    rows = []
    for product in products:
        stock = f"{product.stock} in stock" if product.stock > 0 else "out of stock"
        rows.append(f"- {product.name}: {format_money(product.price)} ({stock})")
    if not rows:
        return EMPTY_CATALOG_TEXT
    return "\n".join(["🛒 Catalog"] + rows)


def format_usage(usage: str) -> str:
    return f"⚠️ {usage or STATUS_USAGE}"


class ReplyDispatcher:
    """Hands reply text to the gateway, at most once per dedupe key."""

    def __init__(self, gateway: MessagingGateway, history_size: int = 1024):
        self._gateway = gateway
        self._history_size = history_size
        self._sent: "OrderedDict[str, None]" = OrderedDict()

    async def reply(
        self,
        customer_reference: str,
        message: str,
        *,
        dedupe_key: Optional[str] = None,
        phone_number_id: Optional[str] = None,
    ) -> bool:
        if dedupe_key is not None:
            if dedupe_key in self._sent:
                logger.info("Reply for %s already dispatched, skipping", dedupe_key)
                return False
            self._sent[dedupe_key] = None
            while len(self._sent) > self._history_size:
                self._sent.popitem(last=False)

        try:
            await self._gateway.send(customer_reference, message, phone_number_id=phone_number_id)
        except GatewayError:
            logger.exception("Messaging gateway failed to deliver reply to %s", customer_reference)
            return False
        return True
