"""
Poll-based reconciliation of pending M-Pesa payments.

Callbacks get lost. Whenever a customer reads their orders or a payment
status, pending pushes are queried at the provider and the answer is fed
through the same state machine as callbacks.

Outcomes per payment:
- result code 0: SUCCESS
- any other definite code: FAILED
- no result code yet: status untouched, query audit merged into meta
- provider/transport error: logged, persisted state is used as-is
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from redcart.core.events import PollQueried
from redcart.core.meta import get_checkout_request_id
from redcart.core.state_machine import PaymentStateMachine, first_ref
from redcart.database.connection import get_session_factory
from redcart.database.models import Order, Payment, PaymentProvider, PaymentStatus
from redcart.integrations.mpesa_client import MpesaClient
from redcart.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Which read path triggered the poll; recorded as meta.mpesa.statusQuerySource
SOURCE_STK_QUERY = "STK_QUERY"
SOURCE_ORDERS_LIST = "ORDERS_LIST"
SOURCE_ORDER_STATUS = "ORDER_STATUS"


class ReconciliationEngine:
    """
    Reconciles pending payments against the provider's view.

    Never raises for provider or storage trouble during a poll: the read
    that triggered it must still be served.
    """

    def __init__(
        self,
        gateway: Optional[MpesaClient] = None,
        state_machine: Optional[PaymentStateMachine] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        """
        Initialize reconciliation engine.

        Args:
            gateway: Optional M-Pesa client
            state_machine: Optional state machine
            session_factory: Optional session factory
        """
        self.session_factory = session_factory or get_session_factory()
        self.gateway = gateway or MpesaClient()
        self.state_machine = state_machine or PaymentStateMachine(self.session_factory)

    async def reconcile_payment(self, payment_id: str, source: str = SOURCE_STK_QUERY) -> str:
        """
        Poll the provider for one payment and apply the answer.

        Args:
            payment_id: Payment to reconcile
            source: Read path that triggered the poll

        Returns:
            str: Outcome (success, failed, pending, duplicate, error, skipped)
        """
        async with self.session_factory() as session:
            payment = await session.get(Payment, payment_id)

        if (
            payment is None
            or payment.provider != PaymentProvider.MPESA
            or payment.status != PaymentStatus.PENDING
        ):
            return "skipped"

        checkout_request_id = get_checkout_request_id(payment.meta)
        if not checkout_request_id:
            return "skipped"

        try:
            outcome = await self._poll(payment, checkout_request_id, source)
        except Exception as e:
            logger.error(
                "payment_reconciliation_failed",
                payment_id=payment_id,
                checkout_request_id=checkout_request_id,
                source=source,
                error=str(e),
            )
            outcome = "error"

        metrics.record_poll(source, outcome)
        return outcome

    async def _poll(self, payment: Payment, checkout_request_id: str, source: str) -> str:
        query = await self.gateway.query_stk_status(checkout_request_id)

        query_patch = {
            "lastStatusQueryAt": datetime.now(timezone.utc).isoformat(),
            "statusQuerySource": source,
            "queryResponseCode": query.response_code,
            "queryResponseDescription": query.response_description,
            "queryMerchantRequestId": query.merchant_request_id or None,
            "queryCheckoutRequestId": query.checkout_request_id,
            "queryResultCode": query.result_code,
            "queryResultDesc": query.result_desc,
            "queryRaw": query.raw,
        }
        observation = PollQueried(
            source=source,
            checkout_request_id=query.checkout_request_id,
            response_code=query.response_code,
            response_description=query.response_description,
            result_code=query.result_code,
            result_desc=query.result_desc,
            receipt_number=query.mpesa_receipt_number,
            raw=query.raw,
        )

        logger.info(
            "payment_status_polled",
            payment_id=payment.id,
            source=source,
            result_code=query.result_code,
        )

        if query.result_code == 0:
            result = await self.state_machine.mark_succeeded(
                payment.id,
                via="poll",
                resolve_ref=lambda current: first_ref(
                    current,
                    ("receipt_number", query.mpesa_receipt_number),
                    ("existing", None),
                    ("checkout_request_id", query.checkout_request_id),
                ),
                mpesa_patch={
                    **query_patch,
                    "resultCode": 0,
                    "resultDesc": query.result_desc or "Payment successful",
                    "mpesaReceiptNumber": query.mpesa_receipt_number,
                    "receiptNumber": (
                        query.mpesa_receipt_number
                        or payment.transaction_ref
                        or query.checkout_request_id
                    ),
                },
                observation=observation,
            )
            return "success" if result.applied else "duplicate"

        if query.result_code is not None:
            result = await self.state_machine.mark_failed(
                payment.id,
                via="poll",
                resolve_ref=lambda current: first_ref(
                    current,
                    ("existing", None),
                    ("checkout_request_id", query.checkout_request_id),
                ),
                mpesa_patch={
                    **query_patch,
                    "resultCode": query.result_code,
                    "resultDesc": query.result_desc or "Payment failed",
                },
                observation=observation,
            )
            return "failed" if result.applied else "duplicate"

        current = await self.state_machine.record_observation(
            payment.id,
            {**query_patch, "status": PaymentStatus.PENDING.value},
            observation,
        )
        return "pending" if current == PaymentStatus.PENDING else "duplicate"

    async def reconcile_pending_for_user(
        self, user_id: str, source: str = SOURCE_ORDERS_LIST
    ) -> Dict[str, str]:
        """
        Reconcile every pending M-Pesa payment on the user's orders.

        Returns:
            Dict[str, str]: Outcome per payment id
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment.id)
                .join(Order, Payment.order_id == Order.id)
                .where(
                    Order.user_id == user_id,
                    Payment.provider == PaymentProvider.MPESA,
                    Payment.status == PaymentStatus.PENDING,
                )
            )
            payment_ids: List[str] = list(result.scalars().all())

        outcomes: Dict[str, str] = {}
        for payment_id in payment_ids:
            outcomes[payment_id] = await self.reconcile_payment(payment_id, source)

        if payment_ids:
            logger.info(
                "user_payments_reconciled",
                user_id=user_id,
                source=source,
                outcomes=outcomes,
            )
        return outcomes
