from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from chat_orders.models import OrderStatus

WHATSAPP_OBJECT = "whatsapp_business_account"


# --- Inbound webhook envelope ---

class _Passthrough(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class TextBody(_Passthrough):
    body: str


class InboundMessage(_Passthrough):
    id: str = Field(..., min_length=1)
    sender: str = Field(..., alias="from", min_length=1)
    type: str = "text"
    text: Optional[TextBody] = None


class Metadata(_Passthrough):
    phone_number_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("phone_number_id", "phoneNumberId")
    )


class ChangeValue(_Passthrough):
    metadata: Optional[Metadata] = None
    messages: List[InboundMessage] = Field(default_factory=list)


class Change(_Passthrough):
    field: Optional[str] = None
    value: ChangeValue


class Entry(_Passthrough):
    id: Optional[str] = None
    changes: List[Change] = Field(default_factory=list)


class WebhookPayload(_Passthrough):
    object: str
    entry: List[Entry] = Field(default_factory=list)

    def first_delivery(self) -> Optional["InboundDelivery"]:
        """Return the first text message of the payload, if any."""
        if self.object != WHATSAPP_OBJECT:
            return None
        for entry in self.entry:
            for change in entry.changes:
                value = change.value
                if not value.messages:
                    continue
                message = value.messages[0]
                if message.type != "text" or message.text is None:
                    return None
                return InboundDelivery(
                    message_id=message.id,
                    sender=message.sender,
                    text=message.text.body,
                    phone_number_id=value.metadata.phone_number_id if value.metadata else None,
                )
        return None


class InboundDelivery(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_id: str
    sender: str
    text: str
    phone_number_id: Optional[str] = None


# --- Read views ---

class OrderItemView(BaseModel):
    product_id: int
    name: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class OrderView(BaseModel):
    id: str
    status: OrderStatus
    total: Decimal
    created_at: datetime
    items: List[OrderItemView]

    model_config = ConfigDict(from_attributes=True)
