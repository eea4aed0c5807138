"""
Checkout: turn the caller's cart into an order with its payment.

The order, line items, payment, stock decrements, stock log rows and the
cart clear commit together or not at all.
"""
import secrets
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from redcart.core.errors import ConflictError, ValidationError
from redcart.core.events import StatusChanged, append_events
from redcart.core.state_machine import PaymentStateMachine
from redcart.database.connection import get_session_factory
from redcart.database.models import (
    Cart,
    CartItem,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentProvider,
    PaymentStatus,
    Product,
    ProductStockLog,
    new_id,
)
from redcart.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")

NEXT_ACTION_MPESA = (
    "Call POST /payments/mpesa/stk-push with paymentId and phoneNumber to trigger real STK push"
)
NEXT_ACTION_CONFIRMED = "Order confirmed"


def card_transaction_ref() -> str:
    return f"CARD-{int(time.time() * 1000)}-{secrets.randbelow(1000)}"


class CheckoutService:
    """Creates orders from carts."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        state_machine: Optional[PaymentStateMachine] = None,
    ) -> None:
        self.session_factory = session_factory or get_session_factory()
        self.state_machine = state_machine or PaymentStateMachine(self.session_factory)

    async def checkout(
        self,
        user_id: str,
        payment_method: PaymentMethod,
        shipping_name: str,
        shipping_phone: str,
        shipping_email: str,
        shipping_street: str,
        shipping_city: str,
        shipping_country: str,
        mpesa_payer_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Place an order for everything in the user's cart.

        CARD orders are confirmed immediately with a successful payment.
        MPESA orders wait for a push payment; the declared payer name is
        kept for the receipt.

        Returns:
            Dict[str, Any]: Order id, status, payment summary and next action

        Raises:
            ValidationError: Empty cart or missing M-Pesa payer name
            ConflictError: A line asks for more than the stock on hand
        """
        is_card = payment_method == PaymentMethod.CARD
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(Cart)
                        .where(Cart.user_id == user_id)
                        .options(selectinload(Cart.items).selectinload(CartItem.product))
                    )
                    cart = result.scalar_one_or_none()
                    if cart is None or not cart.items:
                        raise ValidationError("Cart is empty")

                    for item in cart.items:
                        if item.quantity > item.product.stock:
                            raise ConflictError(f"Insufficient stock for {item.product.name}")

                    declared_name = (mpesa_payer_name or "").strip()
                    if not is_card and not declared_name:
                        raise ValidationError(
                            "M-Pesa payer name is required for receipt issuance",
                            status_code=422,
                        )

                    order_id = new_id()
                    lines = []
                    total = Decimal("0")
                    for item in cart.items:
                        unit_price = Decimal(item.product.price)
                        subtotal = (unit_price * item.quantity).quantize(CENTS, ROUND_HALF_UP)
                        total += subtotal
                        lines.append(
                            OrderItem(
                                product_id=item.product_id,
                                quantity=item.quantity,
                                unit_price=unit_price,
                                subtotal=subtotal,
                            )
                        )
                    total = total.quantize(CENTS, ROUND_HALF_UP)

                    order = Order(
                        id=order_id,
                        user_id=user_id,
                        status=OrderStatus.CONFIRMED if is_card else OrderStatus.PENDING_PAYMENT,
                        payment_method=payment_method,
                        total=total,
                        shipping_name=shipping_name,
                        shipping_phone=shipping_phone,
                        shipping_email=shipping_email,
                        shipping_street=shipping_street,
                        shipping_city=shipping_city,
                        shipping_country=shipping_country,
                        items=lines,
                    )
                    payment = Payment(
                        id=new_id(),
                        order_id=order_id,
                        provider=PaymentProvider.CARD if is_card else PaymentProvider.MPESA,
                        status=PaymentStatus.SUCCESS if is_card else PaymentStatus.PENDING,
                        amount=total,
                        transaction_ref=card_transaction_ref() if is_card else None,
                        meta=None if is_card else {
                            "mpesa": {"requestedPayerName": declared_name or shipping_name}
                        },
                    )
                    session.add(order)
                    session.add(payment)
                    append_events(
                        session,
                        payment.id,
                        StatusChanged(
                            from_status="",
                            to_status=payment.status.value,
                            via="checkout",
                            transaction_ref=payment.transaction_ref,
                        ),
                    )

                    for item in cart.items:
                        decremented = await session.execute(
                            update(Product)
                            .where(Product.id == item.product_id, Product.stock >= item.quantity)
                            .values(stock=Product.stock - item.quantity)
                            .execution_options(synchronize_session=False)
                        )
                        if decremented.rowcount != 1:
                            raise ConflictError(f"Insufficient stock for {item.product.name}")
                        session.add(
                            ProductStockLog(
                                product_id=item.product_id,
                                delta=-item.quantity,
                                reason=f"Order {order_id}",
                            )
                        )

                    await session.execute(delete(CartItem).where(CartItem.cart_id == cart.id))
        except (ValidationError, ConflictError) as e:
            metrics.record_checkout(payment_method.value, "rejected")
            logger.info(
                "checkout_rejected",
                user_id=user_id,
                payment_method=payment_method.value,
                reason=e.message,
            )
            raise

        metrics.record_checkout(payment_method.value, "created")
        logger.info(
            "checkout_completed",
            user_id=user_id,
            order_id=order.id,
            payment_id=payment.id,
            payment_method=payment_method.value,
            total=str(total),
        )

        if is_card:
            await self.state_machine.confirm_order(
                payment_id=payment.id,
                order_id=order.id,
                email=shipping_email,
                name=shipping_name,
                total=total,
            )

        return {
            "orderId": order.id,
            "status": order.status.value,
            "payment": {
                "id": payment.id,
                "provider": payment.provider.value,
                "status": payment.status.value,
                "amount": payment.amount,
                "transactionRef": payment.transaction_ref,
            },
            "total": total,
            "nextAction": NEXT_ACTION_CONFIRMED if is_card else NEXT_ACTION_MPESA,
        }
