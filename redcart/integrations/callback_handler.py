"""
M-Pesa STK push callback handler.

The provider posts the outcome of a push to
``/payments/mpesa/callback/<payment id>``. Callbacks may arrive more than
once, late, or out of order; the state machine's status guard makes every
delivery after the first success a no-op.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from redcart.core.errors import NotFoundError, ValidationError
from redcart.core.events import CallbackReceived
from redcart.core.state_machine import PaymentStateMachine, first_ref
from redcart.database.connection import get_session_factory
from redcart.database.models import Payment
from redcart.integrations.mpesa_client import parse_int_code
from redcart.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CALLBACK_ACK_MESSAGE = "M-Pesa callback processed"


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _result_code(value: Any) -> int:
    """Provider result code; a missing or unparseable code counts as failure (-1)."""
    code = parse_int_code(value)
    return -1 if code is None else code


@dataclass(frozen=True)
class StkCallback:
    """Decoded ``Body.stkCallback`` envelope."""

    result_code: int
    result_desc: str
    merchant_request_id: str
    checkout_request_id: str
    items: Dict[str, Any]

    def item(self, name: str) -> Any:
        return self.items.get(name)

    def item_text(self, name: str) -> Optional[str]:
        return _text(self.items.get(name)) or None

    @classmethod
    def parse(cls, body: Any) -> "StkCallback":
        """
        Decode the provider envelope.

        Raises:
            ValidationError: If ``Body.stkCallback`` is missing
        """
        envelope = body.get("Body") if isinstance(body, dict) else None
        stk = envelope.get("stkCallback") if isinstance(envelope, dict) else None
        if not isinstance(stk, dict) or not stk:
            raise ValidationError("Invalid M-Pesa callback payload", status_code=400)

        metadata = stk.get("CallbackMetadata")
        raw_items: List[Any] = []
        if isinstance(metadata, dict) and isinstance(metadata.get("Item"), list):
            raw_items = metadata["Item"]

        items: Dict[str, Any] = {}
        for entry in raw_items:
            if isinstance(entry, dict) and isinstance(entry.get("Name"), str):
                items.setdefault(entry["Name"], entry.get("Value"))

        return cls(
            result_code=_result_code(stk.get("ResultCode")),
            result_desc=_text(stk.get("ResultDesc")),
            merchant_request_id=_text(stk.get("MerchantRequestID")),
            checkout_request_id=_text(stk.get("CheckoutRequestID")),
            items=items,
        )


class MpesaCallbackHandler:
    """Applies provider callbacks to payments."""

    def __init__(
        self,
        state_machine: Optional[PaymentStateMachine] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        """
        Initialize callback handler.

        Args:
            state_machine: Optional state machine
            session_factory: Optional session factory for the payment lookup
        """
        self.session_factory = session_factory or get_session_factory()
        self.state_machine = state_machine or PaymentStateMachine(self.session_factory)

    async def handle(self, payment_id: str, body: Any) -> Dict[str, Any]:
        """
        Process one callback delivery.

        Args:
            payment_id: Payment id embedded in the callback URL
            body: Raw JSON body posted by the provider

        Returns:
            Dict[str, Any]: Acknowledgement with the provider's result code

        Raises:
            NotFoundError: If the payment is unknown
            ValidationError: If the envelope is missing
        """
        started = time.perf_counter()

        async with self.session_factory() as session:
            payment = await session.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")

        callback = StkCallback.parse(body)
        received_at = datetime.now(timezone.utc).isoformat()

        logger.info(
            "mpesa_callback_received",
            payment_id=payment_id,
            result_code=callback.result_code,
            checkout_request_id=callback.checkout_request_id,
            payment_status=payment.status.value,
        )

        observation = CallbackReceived(
            result_code=callback.result_code,
            result_desc=callback.result_desc,
            merchant_request_id=callback.merchant_request_id,
            checkout_request_id=callback.checkout_request_id,
            receipt_number=callback.item_text("MpesaReceiptNumber"),
            raw=body if isinstance(body, dict) else {},
        )

        if callback.result_code == 0:
            amount = callback.item("Amount")
            result = await self.state_machine.mark_succeeded(
                payment_id,
                via="callback",
                resolve_ref=lambda current: first_ref(
                    current,
                    ("receipt_number", callback.item_text("MpesaReceiptNumber")),
                    ("checkout_request_id", callback.checkout_request_id),
                ),
                mpesa_patch={
                    "callbackReceivedAt": received_at,
                    "resultCode": callback.result_code,
                    "resultDesc": callback.result_desc,
                    "merchantRequestId": callback.merchant_request_id,
                    "checkoutRequestId": callback.checkout_request_id,
                    "amount": amount if amount is not None else float(payment.amount),
                    "callbackPhoneNumber": callback.item_text("PhoneNumber"),
                    "transactionDate": callback.item("TransactionDate"),
                    "receiptNumber": (
                        callback.item_text("MpesaReceiptNumber") or callback.checkout_request_id
                    ),
                    "callbackFirstName": callback.item_text("FirstName"),
                    "callbackMiddleName": callback.item_text("MiddleName"),
                    "callbackLastName": callback.item_text("LastName"),
                    "rawCallback": body,
                },
                observation=observation,
            )
            outcome = "success" if result.applied else "duplicate"
        else:
            result = await self.state_machine.mark_failed(
                payment_id,
                via="callback",
                resolve_ref=lambda current: first_ref(
                    current,
                    ("checkout_request_id", callback.checkout_request_id),
                    ("existing", None),
                ),
                mpesa_patch={
                    "callbackReceivedAt": received_at,
                    "resultCode": callback.result_code,
                    "resultDesc": callback.result_desc,
                    "merchantRequestId": callback.merchant_request_id,
                    "checkoutRequestId": callback.checkout_request_id,
                    "rawCallback": body,
                },
                observation=observation,
            )
            outcome = "failed" if result.applied else "ignored"

        metrics.record_callback(outcome, time.perf_counter() - started)
        logger.info(
            "mpesa_callback_processed",
            payment_id=payment_id,
            result_code=callback.result_code,
            outcome=outcome,
        )
        return {"message": CALLBACK_ACK_MESSAGE, "resultCode": callback.result_code}
