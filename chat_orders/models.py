from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import enum

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(enum.Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False, index=True)
    price = Column(Numeric(12, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<Product {self.id} {self.name!r} price={self.price} stock={self.stock}>"


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True)
    customer_reference = Column(String(64), index=True, nullable=False)
    status = Column(
        Enum(
            OrderStatus,
            name="order_status",
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        default=OrderStatus.PENDING,
        nullable=False,
    )
    total = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
    )

    # product_id is a weak reference: products can be deleted without
    # touching historical orders, unit_price keeps the snapshot.
    order_id = Column(
        String(32), ForeignKey("orders.id", ondelete="CASCADE"), primary_key=True
    )
    product_id = Column(Integer, primary_key=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class ProcessedMessage(Base):
    __tablename__ = "processed_messages"

    message_id = Column(String(128), primary_key=True)
    customer_reference = Column(String(64), nullable=True)
    claimed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    # Null while the claiming delivery is still processing.
    processed_at = Column(DateTime(timezone=True), nullable=True)
    outcome = Column(String(32), nullable=True)
    reply = Column(Text, nullable=True)
    # Set in the order transaction; a claim with an order is never released.
    order_id = Column(String(32), nullable=True)

    @property
    def completed(self) -> bool:
        return self.processed_at is not None
