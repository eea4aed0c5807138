"""
Order/payment state machine.

Every status write goes through a compare-and-set on ``status != SUCCESS``,
so whichever of the callback and the poll commits first wins and the other
becomes a no-op. A SUCCESS payment is never moved anywhere else.

Transitions:
- PENDING/FAILED -> SUCCESS (order CONFIRMED)
- PENDING/FAILED -> FAILED (order back to PENDING_PAYMENT)

Side effects of a success (confirmation email, receipt) run after the
transaction commits and only for the caller that applied the transition.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Literal, Optional, Tuple

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from redcart.core.errors import NotFoundError
from redcart.core.events import BaseEvent, StatusChanged, append_events
from redcart.core.meta import merge_mpesa_meta
from redcart.core.receipts import ReceiptIssuer
from redcart.database.connection import get_session_factory
from redcart.database.models import Order, OrderStatus, Payment, PaymentStatus
from redcart.integrations.email_notifier import EmailNotifier
from redcart.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Via = Literal["callback", "poll", "checkout", "stk_push"]

# Returns (transaction_ref, source tag recorded in meta)
RefResolver = Callable[[Payment], Tuple[Optional[str], Optional[str]]]


@dataclass(frozen=True)
class TransitionResult:
    payment_id: str
    order_id: str
    applied: bool
    status: PaymentStatus
    transaction_ref: Optional[str]


@dataclass(frozen=True)
class _Confirmation:
    order_id: str
    email: str
    name: str
    total: Decimal


def first_ref(payment: Payment, *candidates: Tuple[str, Optional[str]]) -> Tuple[Optional[str], Optional[str]]:
    """
    First non-blank reference among ``(source, value)`` pairs.

    The source ``"existing"`` stands for the payment's current reference.
    """
    for source, value in candidates:
        if source == "existing":
            value = payment.transaction_ref
        if value and value.strip():
            return value.strip(), source
    return None, None


class PaymentStateMachine:
    """
    Applies provider outcomes to payments and their orders.

    Used by the callback handler and the reconciliation engine alike.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        receipt_issuer: Optional[ReceiptIssuer] = None,
        notifier: Optional[EmailNotifier] = None,
    ) -> None:
        self.session_factory = session_factory or get_session_factory()
        self.receipt_issuer = receipt_issuer or ReceiptIssuer(self.session_factory)
        self.notifier = notifier or EmailNotifier()

    async def _transition(
        self,
        payment_id: str,
        to_status: PaymentStatus,
        via: Via,
        resolve_ref: RefResolver,
        mpesa_patch: Dict[str, Any],
        observation: Optional[BaseEvent],
    ) -> Tuple[TransitionResult, Optional[_Confirmation]]:
        order_status = (
            OrderStatus.CONFIRMED if to_status == PaymentStatus.SUCCESS else OrderStatus.PENDING_PAYMENT
        )

        async with self.session_factory() as session:
            async with session.begin():
                payment = await session.get(Payment, payment_id, with_for_update=True)
                if payment is None:
                    raise NotFoundError("Payment not found")

                from_status = payment.status
                if from_status == PaymentStatus.SUCCESS:
                    if observation is not None:
                        append_events(session, payment_id, observation)
                    logger.info(
                        "payment_transition_skipped",
                        payment_id=payment_id,
                        to_status=to_status.value,
                        via=via,
                        reason="already_successful",
                    )
                    return (
                        TransitionResult(
                            payment_id=payment_id,
                            order_id=payment.order_id,
                            applied=False,
                            status=from_status,
                            transaction_ref=payment.transaction_ref,
                        ),
                        None,
                    )

                transaction_ref, ref_source = resolve_ref(payment)
                patch = dict(mpesa_patch)
                patch["status"] = to_status.value
                if ref_source:
                    patch["transactionRefSource"] = ref_source
                new_meta = merge_mpesa_meta(payment.meta, patch)

                result = await session.execute(
                    update(Payment)
                    .where(Payment.id == payment_id, Payment.status != PaymentStatus.SUCCESS)
                    .values(status=to_status, transaction_ref=transaction_ref, meta=new_meta)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Another writer moved it to SUCCESS between our read and write
                    if observation is not None:
                        append_events(session, payment_id, observation)
                    logger.info(
                        "payment_transition_lost_race",
                        payment_id=payment_id,
                        to_status=to_status.value,
                        via=via,
                    )
                    return (
                        TransitionResult(
                            payment_id=payment_id,
                            order_id=payment.order_id,
                            applied=False,
                            status=PaymentStatus.SUCCESS,
                            transaction_ref=None,
                        ),
                        None,
                    )

                await session.execute(
                    update(Order)
                    .where(Order.id == payment.order_id)
                    .values(status=order_status)
                    .execution_options(synchronize_session=False)
                )

                events = []
                if observation is not None:
                    events.append(observation.model_copy(update={"applied": True}))
                events.append(
                    StatusChanged(
                        from_status=from_status.value,
                        to_status=to_status.value,
                        via=via,
                        transaction_ref=transaction_ref,
                    )
                )
                append_events(session, payment_id, *events)

                confirmation = None
                if to_status == PaymentStatus.SUCCESS:
                    order = await session.get(Order, payment.order_id)
                    if order is not None:
                        confirmation = _Confirmation(
                            order_id=order.id,
                            email=order.shipping_email,
                            name=order.shipping_name,
                            total=order.total,
                        )

        metrics.record_transition(to_status.value, via)
        logger.info(
            "payment_status_changed",
            payment_id=payment_id,
            order_id=payment.order_id,
            from_status=from_status.value,
            to_status=to_status.value,
            via=via,
            transaction_ref=transaction_ref,
        )
        return (
            TransitionResult(
                payment_id=payment_id,
                order_id=payment.order_id,
                applied=True,
                status=to_status,
                transaction_ref=transaction_ref,
            ),
            confirmation,
        )

    async def mark_succeeded(
        self,
        payment_id: str,
        via: Via,
        resolve_ref: RefResolver,
        mpesa_patch: Dict[str, Any],
        observation: Optional[BaseEvent] = None,
    ) -> TransitionResult:
        """
        Move a payment to SUCCESS and its order to CONFIRMED.

        No-op when the payment is already SUCCESS. When applied, the
        confirmation email and receipt follow after commit.

        Args:
            payment_id: Payment to update
            via: Which path observed the success
            resolve_ref: Picks the transaction reference from the current row
            mpesa_patch: Keys merged into ``meta.mpesa``
            observation: Event recording what the provider reported

        Returns:
            TransitionResult: Whether this call applied the change
        """
        result, confirmation = await self._transition(
            payment_id,
            PaymentStatus.SUCCESS,
            via,
            resolve_ref,
            mpesa_patch,
            observation,
        )
        if result.applied and confirmation is not None:
            await self.run_success_side_effects(payment_id, confirmation)
        return result

    async def mark_failed(
        self,
        payment_id: str,
        via: Via,
        resolve_ref: RefResolver,
        mpesa_patch: Dict[str, Any],
        observation: Optional[BaseEvent] = None,
    ) -> TransitionResult:
        """Move a non-SUCCESS payment to FAILED and its order back to PENDING_PAYMENT."""
        result, _ = await self._transition(
            payment_id,
            PaymentStatus.FAILED,
            via,
            resolve_ref,
            mpesa_patch,
            observation,
        )
        return result

    async def record_observation(
        self,
        payment_id: str,
        mpesa_patch: Dict[str, Any],
        observation: Optional[BaseEvent] = None,
    ) -> PaymentStatus:
        """
        Merge audit keys into ``meta.mpesa`` without touching status.

        A ``status`` key in the patch is kept only while it still matches the
        row. If a callback moved the payment on while the caller was talking
        to the provider, the key is dropped so meta never contradicts
        ``Payment.status``.

        Returns:
            PaymentStatus: The payment's status when the keys were merged
        """
        async with self.session_factory() as session:
            async with session.begin():
                payment = await session.get(Payment, payment_id, with_for_update=True)
                if payment is None:
                    raise NotFoundError("Payment not found")

                for _ in range(2):
                    patch = dict(mpesa_patch)
                    if patch.get("status") not in (None, payment.status.value):
                        del patch["status"]
                    result = await session.execute(
                        update(Payment)
                        .where(Payment.id == payment_id, Payment.status == payment.status)
                        .values(meta=merge_mpesa_meta(payment.meta, patch))
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        break
                    # Status changed after our read; the failed update now holds the write lock
                    payment = await session.get(Payment, payment_id, populate_existing=True)
                    if payment is None:
                        raise NotFoundError("Payment not found")

                if observation is not None:
                    append_events(session, payment_id, observation)
                return payment.status

    async def run_success_side_effects(
        self, payment_id: str, confirmation: Optional[_Confirmation] = None
    ) -> None:
        """
        Send the confirmation email and make sure a receipt exists.

        Both are best-effort: failures are logged and never raised.
        """
        if confirmation is not None:
            try:
                await self.notifier.send_order_confirmation(
                    order_id=confirmation.order_id,
                    email=confirmation.email,
                    name=confirmation.name,
                    total=confirmation.total,
                )
            except Exception as e:
                logger.error(
                    "order_confirmation_email_failed",
                    payment_id=payment_id,
                    order_id=confirmation.order_id,
                    error=str(e),
                )

        await self.receipt_issuer.ensure_receipt_safely(payment_id)

    async def confirm_order(
        self, payment_id: str, order_id: str, email: str, name: str, total: Decimal
    ) -> None:
        """Post-commit effects for a payment that was created already successful."""
        await self.run_success_side_effects(
            payment_id,
            _Confirmation(order_id=order_id, email=email, name=name, total=total),
        )
