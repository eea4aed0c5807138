"""
API routes for checkout, M-Pesa payments, orders and receipts.

Read paths reconcile pending M-Pesa payments with the provider before
answering, so a lost callback is recovered the next time the customer looks.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from redcart.core.checkout import CheckoutService
from redcart.core.orders import OrderQueries
from redcart.core.payment_processor import PaymentProcessor
from redcart.core.receipts import ReceiptIssuer
from redcart.core.reconciliation import (
    SOURCE_ORDER_STATUS,
    SOURCE_ORDERS_LIST,
    ReconciliationEngine,
)
from redcart.database.models import Order, Payment, Receipt
from redcart.integrations.callback_handler import MpesaCallbackHandler
from redcart.monitoring.health import HealthCheck

from .dependencies import (
    get_callback_handler,
    get_checkout_service,
    get_current_user_id,
    get_health_check,
    get_order_queries,
    get_payment_processor,
    get_receipt_issuer,
    get_reconciliation_engine,
)
from .schemas import (
    CallbackAck,
    CheckoutRequest,
    CheckoutResponse,
    ErrorResponse,
    HealthCheckResponse,
    OrderItemResponse,
    OrderPaymentResponse,
    OrderRef,
    OrderResponse,
    OrderStatusPayment,
    OrderStatusResponse,
    PaymentStatusResponse,
    ProductRef,
    ReceiptOrderInfo,
    ReceiptPaymentInfo,
    ReceiptResponse,
    StkPushRequest,
    StkPushResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
receipt_router = APIRouter(prefix="/receipts", tags=["receipts"])
monitoring_router = APIRouter(tags=["monitoring"])

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
}


def _amount(value: Optional[Decimal]) -> float:
    return float(value) if value is not None else 0.0


def _order_response(order: Order) -> OrderResponse:
    payment: Optional[Payment] = order.payment
    return OrderResponse(
        id=order.id,
        status=order.status.value,
        payment_method=order.payment_method.value,
        total=_amount(order.total),
        shipping_name=order.shipping_name,
        shipping_phone=order.shipping_phone,
        shipping_email=order.shipping_email,
        shipping_street=order.shipping_street,
        shipping_city=order.shipping_city,
        shipping_country=order.shipping_country,
        created_at=order.created_at,
        updated_at=order.updated_at,
        items=[
            OrderItemResponse(
                id=item.id,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=_amount(item.unit_price),
                subtotal=_amount(item.subtotal),
                product=(
                    ProductRef(id=item.product.id, name=item.product.name, slug=item.product.slug)
                    if item.product
                    else None
                ),
            )
            for item in order.items
        ],
        payment=(
            OrderPaymentResponse(
                id=payment.id,
                provider=payment.provider.value,
                status=payment.status.value,
                amount=_amount(payment.amount),
                transaction_ref=payment.transaction_ref,
                meta=payment.meta,
                created_at=payment.created_at,
                updated_at=payment.updated_at,
            )
            if payment
            else None
        ),
    )


def _receipt_response(receipt: Receipt) -> ReceiptResponse:
    order = receipt.order
    payment = receipt.payment
    return ReceiptResponse(
        id=receipt.id,
        receipt_number=receipt.receipt_number,
        order_id=receipt.order_id,
        payment_id=receipt.payment_id,
        payer_phone=receipt.payer_phone,
        payer_name=receipt.payer_name,
        payer_name_source=receipt.payer_name_source.value,
        subtotal=_amount(receipt.subtotal),
        tax=_amount(receipt.tax),
        shipping_fee=_amount(receipt.shipping_fee),
        total=_amount(receipt.total),
        currency=receipt.currency,
        items_snapshot=receipt.items_snapshot,
        meta=receipt.meta,
        issued_at=receipt.issued_at,
        order=ReceiptOrderInfo(
            id=order.id,
            created_at=order.created_at,
            shipping_name=order.shipping_name,
            shipping_email=order.shipping_email,
            shipping_phone=order.shipping_phone,
            shipping_street=order.shipping_street,
            shipping_city=order.shipping_city,
            shipping_country=order.shipping_country,
        ),
        payment=ReceiptPaymentInfo(
            id=payment.id,
            provider=payment.provider.value,
            status=payment.status.value,
            transaction_ref=payment.transaction_ref,
            created_at=payment.created_at,
        ),
    )


@order_router.post(
    "/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Place an order",
    description="Create an order and its payment from the caller's cart",
)
async def checkout(
    request: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    service: CheckoutService = Depends(get_checkout_service),
) -> CheckoutResponse:
    """Checkout the caller's cart."""
    logger.info(
        "api_checkout_request",
        user_id=user_id,
        payment_method=request.payment_method.value,
    )

    created = await service.checkout(
        user_id=user_id,
        payment_method=request.payment_method,
        shipping_name=request.shipping_name,
        shipping_phone=request.shipping_phone,
        shipping_email=request.shipping_email,
        shipping_street=request.shipping_street,
        shipping_city=request.shipping_city,
        shipping_country=request.shipping_country,
        mpesa_payer_name=request.mpesa_payer_name,
    )
    payment = created["payment"]
    return CheckoutResponse(
        order_id=created["orderId"],
        status=created["status"],
        payment={
            "id": payment["id"],
            "provider": payment["provider"],
            "status": payment["status"],
            "amount": _amount(payment["amount"]),
            "transaction_ref": payment["transactionRef"],
        },
        total=_amount(created["total"]),
        next_action=created["nextAction"],
    )


@order_router.get(
    "",
    response_model=List[OrderResponse],
    responses=ERROR_RESPONSES,
    summary="List orders",
    description="Reconcile pending M-Pesa payments, then list the caller's orders",
)
async def list_orders(
    user_id: str = Depends(get_current_user_id),
    reconciliation: ReconciliationEngine = Depends(get_reconciliation_engine),
    queries: OrderQueries = Depends(get_order_queries),
) -> List[OrderResponse]:
    await reconciliation.reconcile_pending_for_user(user_id, SOURCE_ORDERS_LIST)
    orders = await queries.list_orders(user_id)
    return [_order_response(order) for order in orders]


@order_router.get(
    "/{order_id}/status",
    response_model=OrderStatusResponse,
    responses=ERROR_RESPONSES,
    summary="Get order status",
)
async def get_order_status(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    reconciliation: ReconciliationEngine = Depends(get_reconciliation_engine),
    queries: OrderQueries = Depends(get_order_queries),
) -> OrderStatusResponse:
    """Reconcile the caller's pending payments, then report this order."""
    await reconciliation.reconcile_pending_for_user(user_id, SOURCE_ORDER_STATUS)
    order = await queries.get_order(order_id, user_id)
    payment = order.payment
    return OrderStatusResponse(
        id=order.id,
        status=order.status.value,
        total=_amount(order.total),
        payment=(
            OrderStatusPayment(
                status=payment.status.value,
                provider=payment.provider.value,
                transaction_ref=payment.transaction_ref,
            )
            if payment
            else None
        ),
        updated_at=order.updated_at,
    )


@payment_router.post(
    "/mpesa/stk-push",
    response_model=StkPushResponse,
    response_model_exclude_none=True,
    responses={**ERROR_RESPONSES, 502: {"model": ErrorResponse}},
    summary="Trigger M-Pesa STK push",
    description="Prompt the payer's phone to approve the payment",
)
async def stk_push(
    request: StkPushRequest,
    user_id: str = Depends(get_current_user_id),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> Dict[str, Any]:
    result = await processor.initiate_stk_push(
        user_id=user_id,
        payment_id=request.payment_id,
        phone_number=request.phone_number,
    )
    payment = dict(result["payment"])
    if "amount" in payment:
        payment["amount"] = _amount(payment["amount"])
    if "transactionRef" in payment:
        payment["transaction_ref"] = payment.pop("transactionRef")
    return {**result, "payment": payment}


@payment_router.post(
    "/mpesa/callback/{payment_id}",
    response_model=CallbackAck,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="M-Pesa STK callback",
    description="Result callback posted by the M-Pesa provider (unauthenticated)",
)
async def mpesa_callback(
    payment_id: str,
    body: Any = Body(default=None),
    handler: MpesaCallbackHandler = Depends(get_callback_handler),
) -> Dict[str, Any]:
    return await handler.handle(payment_id, body)


@payment_router.get(
    "/mpesa/{payment_id}/status",
    response_model=PaymentStatusResponse,
    responses=ERROR_RESPONSES,
    summary="Get M-Pesa payment status",
    description="Reconcile with the provider, ensure the receipt, then report status",
)
async def get_payment_status(
    payment_id: str,
    user_id: str = Depends(get_current_user_id),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> PaymentStatusResponse:
    payment = await processor.get_payment_status(payment_id, user_id)
    return PaymentStatusResponse(
        id=payment.id,
        status=payment.status.value,
        amount=_amount(payment.amount),
        transaction_ref=payment.transaction_ref,
        order=OrderRef(id=payment.order.id, status=payment.order.status.value),
        meta=payment.meta,
    )


@receipt_router.get(
    "/order/{order_id}",
    response_model=ReceiptResponse,
    responses=ERROR_RESPONSES,
    summary="Get receipt by order",
)
async def get_receipt_by_order(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    issuer: ReceiptIssuer = Depends(get_receipt_issuer),
) -> ReceiptResponse:
    receipt = await issuer.get_receipt_by_order_for_user(order_id, user_id)
    return _receipt_response(receipt)


@receipt_router.get(
    "/{receipt_id}",
    response_model=ReceiptResponse,
    responses=ERROR_RESPONSES,
    summary="Get receipt",
)
async def get_receipt(
    receipt_id: str,
    user_id: str = Depends(get_current_user_id),
    issuer: ReceiptIssuer = Depends(get_receipt_issuer),
) -> ReceiptResponse:
    receipt = await issuer.get_receipt_for_user(receipt_id, user_id)
    return _receipt_response(receipt)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {"status": "unhealthy", "checks": {"error": str(e)}}


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
