"""
Pydantic schemas for API request/response models.

JSON field names are camelCase; Python attributes stay snake_case.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from redcart.database.models import PaymentMethod


class ApiModel(BaseModel):
    """Base for every request/response body."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorResponse(ApiModel):
    message: str


class CheckoutRequest(ApiModel):
    """Request schema for placing an order from the cart."""

    payment_method: PaymentMethod = Field(..., description="MPESA or CARD")
    shipping_name: str = Field(..., min_length=2)
    shipping_phone: str = Field(..., min_length=7)
    shipping_email: str = Field(..., min_length=3, max_length=255)
    shipping_street: str = Field(..., min_length=3)
    shipping_city: str = Field(..., min_length=2)
    shipping_country: str = Field(..., min_length=2)
    mpesa_payer_name: Optional[str] = Field(
        default=None,
        min_length=2,
        max_length=120,
        description="Name the M-Pesa payment is made under (required for MPESA)",
    )

    @field_validator("shipping_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Basic email shape check."""
        local, _, domain = v.strip().partition("@")
        if not local or "." not in domain:
            raise ValueError("Invalid email address")
        return v.strip()

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "paymentMethod": "MPESA",
                    "shippingName": "Jane Wanjiku",
                    "shippingPhone": "0712345678",
                    "shippingEmail": "jane@example.com",
                    "shippingStreet": "Moi Avenue 12",
                    "shippingCity": "Nairobi",
                    "shippingCountry": "Kenya",
                    "mpesaPayerName": "Jane Wanjiku",
                }
            ]
        },
    )


class PaymentSummary(ApiModel):
    id: str
    provider: str
    status: str
    amount: float
    transaction_ref: Optional[str] = None


class CheckoutResponse(ApiModel):
    """Response schema for checkout."""

    order_id: str
    status: str
    payment: PaymentSummary
    total: float
    next_action: str


class OrderRef(ApiModel):
    id: str
    status: str


class ProductRef(ApiModel):
    id: str
    name: str
    slug: str


class OrderItemResponse(ApiModel):
    id: str
    product_id: str
    quantity: int
    unit_price: float
    subtotal: float
    product: Optional[ProductRef] = None


class OrderPaymentResponse(ApiModel):
    id: str
    provider: str
    status: str
    amount: float
    transaction_ref: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


class OrderResponse(ApiModel):
    """One order in the order list."""

    id: str
    status: str
    payment_method: str
    total: float
    shipping_name: str
    shipping_phone: str
    shipping_email: str
    shipping_street: str
    shipping_city: str
    shipping_country: str
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse]
    payment: Optional[OrderPaymentResponse] = None


class OrderStatusPayment(ApiModel):
    status: str
    provider: str
    transaction_ref: Optional[str] = None


class OrderStatusResponse(ApiModel):
    id: str
    status: str
    total: float
    payment: Optional[OrderStatusPayment] = None
    updated_at: datetime


class StkPushRequest(ApiModel):
    """Request schema for triggering an STK push."""

    payment_id: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=7, description="Kenyan phone number")

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={"examples": [{"paymentId": "b9f3...", "phoneNumber": "0712345678"}]},
    )


class StkPushPayment(ApiModel):
    id: str
    status: str
    amount: Optional[float] = None
    transaction_ref: Optional[str] = None


class StkPushResponse(ApiModel):
    """
    Response schema for STK push initiation.

    ``order`` and ``mpesa`` are absent when the payment had already succeeded.
    """

    message: str
    order: Optional[OrderRef] = None
    payment: StkPushPayment
    mpesa: Optional[Dict[str, Any]] = None


class CallbackAck(ApiModel):
    message: str
    result_code: int


class PaymentStatusResponse(ApiModel):
    """Response schema for payment status."""

    id: str
    status: str
    amount: float
    transaction_ref: Optional[str] = None
    order: OrderRef
    meta: Optional[Dict[str, Any]] = None


class ReceiptOrderInfo(ApiModel):
    id: str
    created_at: datetime
    shipping_name: str
    shipping_email: str
    shipping_phone: str
    shipping_street: str
    shipping_city: str
    shipping_country: str


class ReceiptPaymentInfo(ApiModel):
    id: str
    provider: str
    status: str
    transaction_ref: Optional[str] = None
    created_at: datetime


class ReceiptResponse(ApiModel):
    """Response schema for a receipt."""

    id: str
    receipt_number: str
    order_id: str
    payment_id: str
    payer_phone: Optional[str] = None
    payer_name: Optional[str] = None
    payer_name_source: str
    subtotal: float
    tax: float
    shipping_fee: float
    total: float
    currency: str
    items_snapshot: List[Dict[str, Any]]
    meta: Optional[Dict[str, Any]] = None
    issued_at: datetime
    order: ReceiptOrderInfo
    payment: ReceiptPaymentInfo


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")
