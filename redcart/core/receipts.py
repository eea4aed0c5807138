"""
Idempotent receipt issuance.

A receipt is created the first time any code path sees a successful payment
without one. Concurrent issuers are not locked out; the unique constraints on
``receipts.payment_id`` and ``receipts.receipt_number`` decide the winner and
everyone else reads the winner's row back.
"""
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from redcart.config import Settings, get_settings
from redcart.core.errors import ConflictError, InternalError, NotFoundError
from redcart.core.meta import get_meta_string, get_mpesa_meta
from redcart.database.connection import get_session_factory
from redcart.database.models import (
    Order,
    OrderItem,
    PayerNameSource,
    Payment,
    PaymentStatus,
    Receipt,
)
from redcart.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def generate_receipt_number(now: Optional[datetime] = None) -> str:
    """``RCT-YYYYMMDD-NNNNNN`` with a random six digit suffix."""
    day = (now or datetime.now(timezone.utc)).strftime("%Y%m%d")
    return f"RCT-{day}-{secrets.randbelow(1_000_000):06d}"


@dataclass(frozen=True)
class PayerIdentity:
    name: Optional[str]
    source: PayerNameSource
    phone: Optional[str]


def _join_name(*parts: Optional[str]) -> str:
    return " ".join(part.strip() for part in parts if part and part.strip())


def resolve_payer_identity(payment: Payment) -> PayerIdentity:
    """
    Pick the best available payer name and phone for a receipt.

    Name priority: names reported by the provider callback, the name declared
    at checkout, the shipping name, then the account holder's name.
    Phone priority: callback phone, the phone the push was sent to, then the
    shipping phone.

    ``payment.order`` and ``payment.order.user`` must be loaded.
    """
    mpesa = get_mpesa_meta(payment.meta)
    order = payment.order

    callback_name = _join_name(
        get_meta_string(mpesa, "callbackFirstName"),
        get_meta_string(mpesa, "callbackMiddleName"),
        get_meta_string(mpesa, "callbackLastName"),
    )
    declared_name = get_meta_string(mpesa, "requestedPayerName")
    shipping_name = (order.shipping_name or "").strip()
    account_name = _join_name(order.user.first_name, order.user.last_name) if order.user else ""

    if callback_name:
        name, source = callback_name, PayerNameSource.CALLBACK_REGISTERED_NAME
    elif declared_name:
        name, source = declared_name, PayerNameSource.CHECKOUT_DECLARED_NAME
    elif shipping_name:
        name, source = shipping_name, PayerNameSource.SHIPPING_NAME
    elif account_name:
        name, source = account_name, PayerNameSource.ACCOUNT_NAME
    else:
        name, source = None, PayerNameSource.UNKNOWN

    phone = (
        get_meta_string(mpesa, "callbackPhoneNumber")
        or get_meta_string(mpesa, "phoneNumber")
        or (order.shipping_phone or "").strip()
        or None
    )
    return PayerIdentity(name=name, source=source, phone=phone)


def _money(value: Decimal) -> str:
    return f"{Decimal(value):.2f}"


def build_items_snapshot(order: Order) -> List[Dict[str, Any]]:
    return [
        {
            "productId": item.product_id,
            "productName": item.product.name if item.product else "Unknown Item",
            "productSlug": item.product.slug if item.product else None,
            "quantity": item.quantity,
            "unitPrice": _money(item.unit_price),
            "subtotal": _money(item.subtotal),
        }
        for item in order.items
    ]


class ReceiptIssuer:
    """Creates and looks up receipts for successful payments."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        number_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        """
        Initialize receipt issuer.

        Args:
            session_factory: Optional session factory (global one if not provided)
            settings: Optional settings
            number_factory: Optional receipt number generator
        """
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()
        self.number_factory = number_factory or generate_receipt_number

    async def _load_payment(self, session: AsyncSession, payment_id: str) -> Optional[Payment]:
        result = await session.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .options(
                selectinload(Payment.receipt),
                selectinload(Payment.order).selectinload(Order.user),
                selectinload(Payment.order)
                .selectinload(Order.items)
                .selectinload(OrderItem.product),
            )
        )
        return result.scalar_one_or_none()

    async def _find_receipt_for_payment(self, payment_id: str) -> Optional[Receipt]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Receipt).where(Receipt.payment_id == payment_id)
            )
            return result.scalar_one_or_none()

    def _build_receipt(self, payment: Payment, receipt_number: str) -> Receipt:
        order = payment.order
        identity = resolve_payer_identity(payment)
        items = build_items_snapshot(order)
        subtotal = sum((Decimal(item.subtotal) for item in order.items), Decimal("0"))

        return Receipt(
            receipt_number=receipt_number,
            order_id=order.id,
            payment_id=payment.id,
            payer_phone=identity.phone,
            payer_name=identity.name,
            payer_name_source=identity.source,
            subtotal=subtotal,
            tax=Decimal("0"),
            shipping_fee=Decimal("0"),
            total=order.total,
            currency=self.settings.receipt_currency,
            items_snapshot=items,
            meta={
                "generatedAt": datetime.now(timezone.utc).isoformat(),
                "paymentProvider": payment.provider.value,
                "paymentTransactionRef": payment.transaction_ref,
            },
        )

    async def ensure_receipt(self, payment_id: str) -> Optional[Receipt]:
        """
        Return the receipt for a successful payment, creating it if needed.

        Each insert attempt runs in its own transaction. A uniqueness
        violation means either another issuer won the race (its receipt is
        returned) or the random receipt number collided (a new number is
        tried).

        Args:
            payment_id: Payment to issue a receipt for

        Returns:
            Optional[Receipt]: The receipt, or None while the payment is not SUCCESS

        Raises:
            NotFoundError: If the payment does not exist
            ConflictError: If the payment stopped being SUCCESS mid-issuance
            InternalError: If no unused receipt number was found
        """
        async with self.session_factory() as session:
            payment = await self._load_payment(session, payment_id)

        if payment is None:
            raise NotFoundError("Payment not found")
        if payment.status != PaymentStatus.SUCCESS:
            return None
        if payment.receipt is not None:
            return payment.receipt

        max_attempts = self.settings.receipt_number_max_attempts
        for attempt in range(1, max_attempts + 1):
            receipt_number = self.number_factory()
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        current = await self._load_payment(session, payment_id)
                        if current is None:
                            raise NotFoundError("Payment not found")
                        if current.receipt is not None:
                            return current.receipt
                        if current.status != PaymentStatus.SUCCESS:
                            raise ConflictError(
                                "Cannot issue receipt before successful payment"
                            )

                        receipt = self._build_receipt(current, receipt_number)
                        session.add(receipt)
            except IntegrityError:
                existing = await self._find_receipt_for_payment(payment_id)
                if existing is not None:
                    logger.info(
                        "receipt_issue_race_lost",
                        payment_id=payment_id,
                        receipt_number=existing.receipt_number,
                    )
                    return existing

                metrics.record_receipt_collision()
                logger.warning(
                    "receipt_number_collision",
                    payment_id=payment_id,
                    receipt_number=receipt_number,
                    attempt=attempt,
                )
                continue

            metrics.record_receipt_issued()
            logger.info(
                "receipt_issued",
                payment_id=payment_id,
                order_id=receipt.order_id,
                receipt_number=receipt.receipt_number,
                payer_name_source=receipt.payer_name_source.value,
            )
            return receipt

        logger.error("receipt_number_exhausted", payment_id=payment_id, attempts=max_attempts)
        raise InternalError("Unable to generate unique receipt number")

    async def ensure_receipt_safely(self, payment_id: str) -> Optional[Receipt]:
        """Like ``ensure_receipt`` but logs failures instead of raising."""
        try:
            return await self.ensure_receipt(payment_id)
        except Exception as e:
            logger.error("receipt_ensure_failed", payment_id=payment_id, error=str(e))
            return None

    async def _find_for_user(self, user_id: str, *criteria: Any) -> Receipt:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Receipt)
                .join(Order, Receipt.order_id == Order.id)
                .where(Order.user_id == user_id, *criteria)
                .options(selectinload(Receipt.order), selectinload(Receipt.payment))
            )
            receipt = result.scalar_one_or_none()

        if receipt is None:
            raise NotFoundError("Receipt not found")
        return receipt

    async def get_receipt_for_user(self, receipt_id: str, user_id: str) -> Receipt:
        return await self._find_for_user(user_id, Receipt.id == receipt_id)

    async def get_receipt_by_order_for_user(self, order_id: str, user_id: str) -> Receipt:
        return await self._find_for_user(user_id, Receipt.order_id == order_id)
