"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CheckoutRequest,
    CheckoutResponse,
    PaymentStatusResponse,
    ReceiptResponse,
    StkPushRequest,
    StkPushResponse,
)

__all__ = [
    "app",
    "CheckoutRequest",
    "CheckoutResponse",
    "PaymentStatusResponse",
    "ReceiptResponse",
    "StkPushRequest",
    "StkPushResponse",
]
