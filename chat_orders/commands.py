"""Intent parser for the chat command grammar.

    order <product> [qty], <product> [qty], ...
    status <order-id>
    list
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from chat_orders.errors import ValidationError

STATUS_USAGE = "Send 'status <order-id>' to check an order."
ORDER_USAGE = "Send 'order rice 2, wheat 1' to place an order."

_INTEGER = re.compile(r"^[+-]?\d+$")


@dataclass(frozen=True)
class PlaceOrder:
    items: List[Tuple[str, int]] = field(default_factory=list)


@dataclass(frozen=True)
class CheckStatus:
    order_id: str


@dataclass(frozen=True)
class ListCatalog:
    pass


@dataclass(frozen=True)
class Unrecognized:
    text: str = ""


Command = Union[PlaceOrder, CheckStatus, ListCatalog, Unrecognized]


def _parse_clause(clause: str) -> Optional[Tuple[str, int]]:
    words = clause.split()
    if not words:
        return None
    if len(words) >= 2 and _INTEGER.match(words[-1]):
        return " ".join(words[:-1]), int(words[-1])
    if len(words) == 2:
        # "rice lots": non-numeric quantity defaults to one
        return words[0], 1
    return " ".join(words), 1


def parse(text: str) -> Command:
    stripped = (text or "").strip()
    if not stripped:
        return Unrecognized(text="")

    head, *rest = stripped.split(maxsplit=1)
    keyword = head.lower()
    remainder = rest[0] if rest else ""

    if keyword == "order" or keyword.startswith("order,"):
        if keyword != "order":
            remainder = stripped[len("order"):]
        items = []
        for clause in remainder.split(","):
            parsed = _parse_clause(clause)
            if parsed is not None:
                items.append(parsed)
        return PlaceOrder(items=items)

    if keyword == "status":
        parts = remainder.split()
        if not parts:
            raise ValidationError("status requires an order id", usage=STATUS_USAGE)
        return CheckStatus(order_id=parts[0])

    if stripped.lower() == "list":
        return ListCatalog()

    return Unrecognized(text=stripped)
