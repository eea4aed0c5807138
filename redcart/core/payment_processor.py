"""
M-Pesa push payment initiation and status reads.

Initiation flow:
1. Load the caller's MPESA payment (404 otherwise)
2. Short-circuit if it already succeeded
3. Normalize the phone number and build the callback URL
4. Call the provider (no transaction open)
5. In a short transaction mark the payment PENDING and record the
   provider's request identifiers
"""
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from redcart.config import Settings, get_settings
from redcart.core.errors import InternalError, NotFoundError
from redcart.core.events import StatusChanged, StkPushInitiated, append_events
from redcart.core.meta import merge_mpesa_meta
from redcart.core.receipts import ReceiptIssuer
from redcart.core.reconciliation import SOURCE_STK_QUERY, ReconciliationEngine
from redcart.database.connection import get_session_factory
from redcart.database.models import Order, Payment, PaymentProvider, PaymentStatus
from redcart.integrations.mpesa_client import MpesaClient, normalize_kenyan_phone_number
from redcart.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_API_V1_SUFFIX = re.compile(r"/api/v1$", re.IGNORECASE)


def build_callback_url(base_url: str, payment_id: str) -> str:
    """
    Provider callback URL for a payment.

    ``/api/v1`` is appended to the base unless it already ends with it.
    """
    base = base_url.rstrip("/")
    if _API_V1_SUFFIX.search(base):
        return f"{base}/payments/mpesa/callback/{payment_id}"
    return f"{base}/api/v1/payments/mpesa/callback/{payment_id}"


def order_short_ref(order_id: str) -> str:
    return order_id[-8:]


class PaymentProcessor:
    """Starts STK pushes and serves payment status reads."""

    def __init__(
        self,
        gateway: Optional[MpesaClient] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        reconciliation: Optional[ReconciliationEngine] = None,
        receipt_issuer: Optional[ReceiptIssuer] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Initialize payment processor.

        Args:
            gateway: Optional M-Pesa client
            session_factory: Optional session factory
            reconciliation: Optional reconciliation engine (shares the gateway)
            receipt_issuer: Optional receipt issuer
            settings: Optional settings
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.gateway = gateway or MpesaClient(self.settings)
        self.receipt_issuer = receipt_issuer or ReceiptIssuer(self.session_factory, self.settings)
        self.reconciliation = reconciliation or ReconciliationEngine(
            gateway=self.gateway, session_factory=self.session_factory
        )

    def callback_url_for(self, payment_id: str) -> str:
        base = self.settings.mpesa_callback_base_url
        if not base:
            raise InternalError("Missing M-Pesa configuration: MPESA_CALLBACK_BASE_URL")
        return build_callback_url(base, payment_id)

    async def get_mpesa_payment_for_user(self, payment_id: str, user_id: str) -> Payment:
        """
        Load an MPESA payment owned by ``user_id``, with its order.

        Raises:
            NotFoundError: If missing, not MPESA, or owned by someone else
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment)
                .join(Order, Payment.order_id == Order.id)
                .where(
                    Payment.id == payment_id,
                    Payment.provider == PaymentProvider.MPESA,
                    Order.user_id == user_id,
                )
                .options(selectinload(Payment.order))
            )
            payment = result.scalar_one_or_none()

        if payment is None:
            raise NotFoundError("Payment not found")
        return payment

    @staticmethod
    def _already_completed(payment: Payment) -> Dict[str, Any]:
        return {
            "message": "Payment already completed",
            "payment": {
                "id": payment.id,
                "status": PaymentStatus.SUCCESS.value,
                "transactionRef": payment.transaction_ref,
            },
        }

    async def initiate_stk_push(
        self, user_id: str, payment_id: str, phone_number: str
    ) -> Dict[str, Any]:
        """
        Prompt the payer's phone for an M-Pesa payment.

        Args:
            user_id: Authenticated caller
            payment_id: Payment to collect
            phone_number: Payer phone in any accepted Kenyan format

        Returns:
            Dict[str, Any]: Provider acknowledgement and the pending payment

        Raises:
            NotFoundError: If the payment is not the caller's MPESA payment
            ValidationError: If the phone number is malformed
            UpstreamError: If the provider rejects the push
        """
        payment = await self.get_mpesa_payment_for_user(payment_id, user_id)

        if payment.status == PaymentStatus.SUCCESS:
            metrics.record_stk_push("already_completed")
            return self._already_completed(payment)

        normalized_phone = normalize_kenyan_phone_number(phone_number)
        callback_url = self.callback_url_for(payment.id)
        short_ref = order_short_ref(payment.order_id)

        try:
            push = await self.gateway.initiate_stk_push(
                amount=payment.amount,
                phone_number=normalized_phone,
                reference=f"RedCart-{short_ref}",
                description=f"Payment for order {short_ref}",
                callback_url=callback_url,
            )
        except Exception:
            metrics.record_stk_push("failed")
            raise

        async with self.session_factory() as session:
            async with session.begin():
                current = await session.get(Payment, payment.id, with_for_update=True)
                if current is None:
                    raise NotFoundError("Payment not found")

                from_status = current.status
                result = await session.execute(
                    update(Payment)
                    .where(Payment.id == payment.id, Payment.status != PaymentStatus.SUCCESS)
                    .values(
                        status=PaymentStatus.PENDING,
                        meta=merge_mpesa_meta(
                            current.meta,
                            {
                                "status": PaymentStatus.PENDING.value,
                                "initiatedAt": datetime.now(timezone.utc).isoformat(),
                                "phoneNumber": normalized_phone,
                                "merchantRequestId": push.merchant_request_id,
                                "checkoutRequestId": push.checkout_request_id,
                                "responseCode": push.response_code,
                                "responseDescription": push.response_description,
                                "customerMessage": push.customer_message,
                                "callbackUrl": callback_url,
                            },
                        ),
                    )
                    .execution_options(synchronize_session=False)
                )
                applied = result.rowcount == 1

                if applied:
                    events = [
                        StkPushInitiated(
                            phone_number=normalized_phone,
                            merchant_request_id=push.merchant_request_id,
                            checkout_request_id=push.checkout_request_id,
                            response_code=push.response_code,
                            response_description=push.response_description,
                            customer_message=push.customer_message,
                            callback_url=callback_url,
                        )
                    ]
                    if from_status != PaymentStatus.PENDING:
                        events.append(
                            StatusChanged(
                                from_status=from_status.value,
                                to_status=PaymentStatus.PENDING.value,
                                via="stk_push",
                                transaction_ref=current.transaction_ref,
                            )
                        )
                    append_events(session, payment.id, *events)

        if not applied:
            # A success landed while the push was in flight
            metrics.record_stk_push("already_completed")
            refreshed = await self.get_mpesa_payment_for_user(payment_id, user_id)
            return self._already_completed(refreshed)

        metrics.record_stk_push("initiated")
        logger.info(
            "mpesa_stk_push_initiated",
            payment_id=payment.id,
            order_id=payment.order_id,
            checkout_request_id=push.checkout_request_id,
        )

        return {
            "message": push.customer_message or "STK push initiated",
            "order": {"id": payment.order_id, "status": payment.order.status.value},
            "payment": {
                "id": payment.id,
                "status": PaymentStatus.PENDING.value,
                "amount": payment.amount,
            },
            "mpesa": {
                "merchantRequestId": push.merchant_request_id,
                "checkoutRequestId": push.checkout_request_id,
                "responseCode": push.response_code,
                "responseDescription": push.response_description,
                "customerMessage": push.customer_message,
                "requestTimestamp": push.request_timestamp,
            },
        }

    async def get_payment_status(self, payment_id: str, user_id: str) -> Payment:
        """
        Reconcile a payment with the provider, then return its fresh state.

        Also makes sure a successful payment has its receipt.

        Raises:
            NotFoundError: If the payment is not the caller's MPESA payment
        """
        await self.get_mpesa_payment_for_user(payment_id, user_id)
        await self.reconciliation.reconcile_payment(payment_id, SOURCE_STK_QUERY)
        await self.receipt_issuer.ensure_receipt_safely(payment_id)
        return await self.get_mpesa_payment_for_user(payment_id, user_id)
