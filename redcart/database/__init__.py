"""Database package for RedCart."""
from .connection import (
    build_session_factory,
    close_db,
    create_engine_for,
    get_engine,
    get_session_factory,
    init_db,
)
from .models import (
    Base,
    Cart,
    CartItem,
    Order,
    OrderItem,
    OrderStatus,
    PayerNameSource,
    Payment,
    PaymentEvent,
    PaymentMethod,
    PaymentProvider,
    PaymentStatus,
    Product,
    ProductStockLog,
    Receipt,
    User,
)

__all__ = [
    "Base",
    "Cart",
    "CartItem",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PayerNameSource",
    "Payment",
    "PaymentEvent",
    "PaymentMethod",
    "PaymentProvider",
    "PaymentStatus",
    "Product",
    "ProductStockLog",
    "Receipt",
    "User",
    "build_session_factory",
    "close_db",
    "create_engine_for",
    "get_engine",
    "get_session_factory",
    "init_db",
]
