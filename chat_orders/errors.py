class ChatOrderError(Exception):
    """Base class for every error the order pipeline knows how to answer."""


class ValidationError(ChatOrderError):
    def __init__(self, message: str, usage: str = ""):
        super().__init__(message)
        self.usage = usage


class NotFoundError(ChatOrderError):
    pass


class ProductNotFoundError(NotFoundError):
    def __init__(self, token: str):
        super().__init__(f"No product matches '{token}'")
        self.token = token


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class AmbiguousMatchError(ChatOrderError):
    def __init__(self, token: str, candidates: list[str]):
        super().__init__(f"'{token}' matches {len(candidates)} products")
        self.token = token
        self.candidates = candidates


class InsufficientStockError(ChatOrderError):
    def __init__(self, product_id: int, requested: int, available: int):
        super().__init__(
            f"Product {product_id}: requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class TransientStoreError(ChatOrderError):
    """I/O failure against the database. Retried once, then surfaced."""


class DuplicateDeliveryError(ChatOrderError):
    """Internal signal: another delivery already claimed this message id."""

    def __init__(self, message_id: str, record=None):
        super().__init__(f"Message {message_id} already claimed")
        self.message_id = message_id
        self.record = record


class ClaimPendingError(ChatOrderError):
    """Another delivery still holds the claim; the provider should redeliver later."""

    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} is still being processed")
        self.message_id = message_id


class GatewayError(ChatOrderError):
    pass
