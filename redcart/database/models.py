"""SQLAlchemy database models for checkout, payments and receipts."""
import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere
JsonType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(10, 2)


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class OrderStatus(str, enum.Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    CONFIRMED = "CONFIRMED"


class PaymentMethod(str, enum.Enum):
    MPESA = "MPESA"
    CARD = "CARD"


class PaymentProvider(str, enum.Enum):
    MPESA = "MPESA"
    CARD = "CARD"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class PayerNameSource(str, enum.Enum):
    CALLBACK_REGISTERED_NAME = "CALLBACK_REGISTERED_NAME"
    CHECKOUT_DECLARED_NAME = "CHECKOUT_DECLARED_NAME"
    SHIPPING_NAME = "SHIPPING_NAME"
    ACCOUNT_NAME = "ACCOUNT_NAME"
    UNKNOWN = "UNKNOWN"


def _enum(enum_cls: type, name: str) -> Enum:
    return Enum(enum_cls, name=name, native_enum=False, length=40)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """Account holder. Identity is issued by the upstream auth layer."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class Product(Base):
    """Catalog product with stock on hand."""

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (CheckConstraint("stock >= 0", name="non_negative_stock"),)

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, slug={self.slug}, stock={self.stock})>"


class ProductStockLog(Base):
    """Append-only stock movement audit."""

    __tablename__ = "product_stock_logs"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class Cart(Base):
    __tablename__ = "carts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )

    items: Mapped[List["CartItem"]] = relationship(
        back_populates="cart", cascade="all, delete-orphan"
    )


class CartItem(Base):
    __tablename__ = "cart_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    cart_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    cart: Mapped[Cart] = relationship(back_populates="items")
    product: Mapped[Product] = relationship()

    __table_args__ = (CheckConstraint("quantity > 0", name="positive_cart_quantity"),)


class Order(Base):
    """
    Customer order.

    Immutable after checkout except for ``status``. Line items carry the
    price snapshot taken at order time.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[OrderStatus] = mapped_column(
        _enum(OrderStatus, "order_status"), nullable=False, default=OrderStatus.PENDING_PAYMENT
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        _enum(PaymentMethod, "payment_method"), nullable=False
    )
    total: Mapped[Decimal] = mapped_column(Money, nullable=False)
    shipping_name: Mapped[str] = mapped_column(String(255), nullable=False)
    shipping_phone: Mapped[str] = mapped_column(String(50), nullable=False)
    shipping_email: Mapped[str] = mapped_column(String(255), nullable=False)
    shipping_street: Mapped[str] = mapped_column(String(255), nullable=False)
    shipping_city: Mapped[str] = mapped_column(String(120), nullable=False)
    shipping_country: Mapped[str] = mapped_column(String(120), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    user: Mapped[User] = relationship()
    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan"
    )
    payment: Mapped[Optional["Payment"]] = relationship(back_populates="order", uselist=False)
    receipt: Mapped[Optional["Receipt"]] = relationship(back_populates="order", uselist=False)

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, status={self.status}, total={self.total})>"


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")
    product: Mapped[Product] = relationship()


class Payment(Base):
    """
    Payment attached to exactly one order.

    ``meta`` holds provider-namespaced reconciliation state
    (``{"mpesa": {...}}``) that is merged on every update, never replaced.
    The ordered history lives in ``payment_events``.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    provider: Mapped[PaymentProvider] = mapped_column(
        _enum(PaymentProvider, "payment_provider"), nullable=False
    )
    status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, "payment_status"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    transaction_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    order: Mapped[Order] = relationship(back_populates="payment")
    receipt: Mapped[Optional["Receipt"]] = relationship(back_populates="payment", uselist=False)
    events: Mapped[List["PaymentEvent"]] = relationship(
        back_populates="payment", order_by="PaymentEvent.id"
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        Index("idx_payments_provider_status", "provider", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, "
            f"provider={self.provider}, status={self.status})>"
        )


class PaymentEvent(Base):
    """
    Reconciliation events audit trail table.

    Ordered, append-only log of typed events (see ``core.events``).
    Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    payment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JsonType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    payment: Mapped[Payment] = relationship(back_populates="events")

    def __repr__(self) -> str:
        return (
            f"<PaymentEvent(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.event_type})>"
        )


class Receipt(Base):
    """
    Receipt issued once per successful payment.

    Uniqueness on ``payment_id`` and ``order_id`` is what makes concurrent
    issuance converge on a single row.
    """

    __tablename__ = "receipts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    receipt_number: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    payment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("payments.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    payer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payer_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payer_name_source: Mapped[PayerNameSource] = mapped_column(
        _enum(PayerNameSource, "payer_name_source"),
        nullable=False,
        default=PayerNameSource.UNKNOWN,
    )
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False)
    tax: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    shipping_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    items_snapshot: Mapped[List[Dict[str, Any]]] = mapped_column(JsonType, nullable=False)
    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column(JsonType, nullable=True)
    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    order: Mapped[Order] = relationship(back_populates="receipt")
    payment: Mapped[Payment] = relationship(back_populates="receipt")

    def __repr__(self) -> str:
        return f"<Receipt(id={self.id}, number={self.receipt_number}, payment_id={self.payment_id})>"
