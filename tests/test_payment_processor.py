"""
Payment processor tests.

STK push initiation and the reconciling status read.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from redcart.config import Settings
from redcart.core.errors import InternalError, NotFoundError, UpstreamError, ValidationError
from redcart.core.events import StatusChanged, StkPushInitiated, load_events
from redcart.core.payment_processor import PaymentProcessor, build_callback_url, order_short_ref
from redcart.database.models import Payment, PaymentStatus, User

from tests.helpers import pending_meta, stk_query_result


class TestCallbackUrl:
    """Provider callback URL construction."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "base",
        [
            "https://shop.example.com",
            "https://shop.example.com/",
            "https://shop.example.com/api/v1",
            "https://shop.example.com/API/V1//",
        ],
    )
    def test_api_prefix_is_added_once(self, base: str) -> None:
        url = build_callback_url(base, "pay-1")

        assert url.lower() == "https://shop.example.com/api/v1/payments/mpesa/callback/pay-1"

    @pytest.mark.unit
    def test_missing_base_url(self, test_settings: Settings) -> None:
        processor = PaymentProcessor(
            gateway=AsyncMock(),
            session_factory=MagicMock(),
            reconciliation=MagicMock(),
            receipt_issuer=MagicMock(),
            settings=test_settings.model_copy(update={"mpesa_callback_base_url": None}),
        )

        with pytest.raises(InternalError):
            processor.callback_url_for("pay-1")

    @pytest.mark.unit
    def test_short_ref_is_last_eight_characters(self) -> None:
        assert order_short_ref("0c2f4a8e-1b7d-4f0e-9a51-3de1a9c41b7a") == "a9c41b7a"


class TestInitiateStkPush:
    """Push initiation."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_push_marks_payment_pending_with_provider_ids(
        self,
        processor: PaymentProcessor,
        session_factory: async_sessionmaker[AsyncSession],
        make_mpesa_order,
        gateway: AsyncMock,
        user: User,
    ) -> None:
        payment = await make_mpesa_order(
            status=PaymentStatus.FAILED,
            meta={"mpesa": {"requestedPayerName": "Jane Wanjiku", "resultCode": 1032}},
        )

        result = await processor.initiate_stk_push(user.id, payment.id, "0712 345 678")

        short_ref = order_short_ref(payment.order_id)
        gateway.initiate_stk_push.assert_awaited_once_with(
            amount=Decimal("1500.00"),
            phone_number="254712345678",
            reference=f"RedCart-{short_ref}",
            description=f"Payment for order {short_ref}",
            callback_url=f"https://shop.example.com/api/v1/payments/mpesa/callback/{payment.id}",
        )
        assert result["message"] == "Success. Request accepted for processing"
        assert result["payment"] == {
            "id": payment.id,
            "status": "PENDING",
            "amount": Decimal("1500.00"),
        }
        assert result["order"] == {"id": payment.order_id, "status": "PENDING_PAYMENT"}
        assert result["mpesa"]["checkoutRequestId"] == "ws_CO_191220191020363925"

        async with session_factory() as session:
            stored = await session.get(Payment, payment.id)
            events = await load_events(session, payment.id)

        assert stored.status == PaymentStatus.PENDING
        mpesa = stored.meta["mpesa"]
        assert mpesa["requestedPayerName"] == "Jane Wanjiku"
        assert mpesa["status"] == "PENDING"
        assert mpesa["phoneNumber"] == "254712345678"
        assert mpesa["checkoutRequestId"] == "ws_CO_191220191020363925"
        assert mpesa["merchantRequestId"] == "29115-34620561-1"
        assert mpesa["callbackUrl"].endswith(f"/callback/{payment.id}")
        assert "initiatedAt" in mpesa
        assert [type(event) for event in events] == [StkPushInitiated, StatusChanged]
        assert events[1].from_status == "FAILED"
        assert events[1].via == "stk_push"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_repeat_push_on_pending_payment_logs_no_status_change(
        self,
        processor: PaymentProcessor,
        session_factory: async_sessionmaker[AsyncSession],
        make_mpesa_order,
        user: User,
    ) -> None:
        payment = await make_mpesa_order(meta=pending_meta())

        await processor.initiate_stk_push(user.id, payment.id, "254712345678")

        async with session_factory() as session:
            events = await load_events(session, payment.id)
        assert [type(event) for event in events] == [StkPushInitiated]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_already_completed_payment_is_not_pushed(
        self,
        processor: PaymentProcessor,
        make_mpesa_order,
        gateway: AsyncMock,
        user: User,
    ) -> None:
        payment = await make_mpesa_order(status=PaymentStatus.SUCCESS, transaction_ref="NLJ7RT61SV")

        result = await processor.initiate_stk_push(user.id, payment.id, "not even a phone")

        assert result == {
            "message": "Payment already completed",
            "payment": {"id": payment.id, "status": "SUCCESS", "transactionRef": "NLJ7RT61SV"},
        }
        gateway.initiate_stk_push.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_success_during_push_wins(
        self,
        processor: PaymentProcessor,
        session_factory: async_sessionmaker[AsyncSession],
        make_mpesa_order,
        gateway: AsyncMock,
        user: User,
    ) -> None:
        payment = await make_mpesa_order(meta=pending_meta())

        async def push_and_callback(**kwargs):
            # The callback for an earlier push lands while this request is in flight
            async with session_factory() as session:
                async with session.begin():
                    stored = await session.get(Payment, payment.id)
                    stored.status = PaymentStatus.SUCCESS
                    stored.transaction_ref = "NLJ7RT61SV"
            return gateway.initiate_stk_push.return_value

        gateway.initiate_stk_push.side_effect = push_and_callback

        result = await processor.initiate_stk_push(user.id, payment.id, "0712345678")

        assert result["message"] == "Payment already completed"
        async with session_factory() as session:
            stored = await session.get(Payment, payment.id)
        assert stored.status == PaymentStatus.SUCCESS
        assert stored.meta == pending_meta()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_phone_is_rejected_before_provider_call(
        self, processor: PaymentProcessor, make_mpesa_order, gateway: AsyncMock, user: User
    ) -> None:
        payment = await make_mpesa_order()

        with pytest.raises(ValidationError):
            await processor.initiate_stk_push(user.id, payment.id, "12345")
        gateway.initiate_stk_push.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_provider_rejection_leaves_payment_untouched(
        self,
        processor: PaymentProcessor,
        session_factory: async_sessionmaker[AsyncSession],
        make_mpesa_order,
        gateway: AsyncMock,
        user: User,
    ) -> None:
        payment = await make_mpesa_order(meta=pending_meta())
        gateway.initiate_stk_push.side_effect = UpstreamError("Bad Request - Invalid PhoneNumber")

        with pytest.raises(UpstreamError):
            await processor.initiate_stk_push(user.id, payment.id, "0712345678")

        async with session_factory() as session:
            stored = await session.get(Payment, payment.id)
        assert stored.meta == pending_meta()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_other_users_payment_is_not_found(
        self, processor: PaymentProcessor, make_mpesa_order, other_user: User
    ) -> None:
        payment = await make_mpesa_order()

        with pytest.raises(NotFoundError) as exc_info:
            await processor.initiate_stk_push(other_user.id, payment.id, "0712345678")
        assert exc_info.value.message == "Payment not found"


class TestGetPaymentStatus:
    """Status reads reconcile first."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_status_read_recovers_lost_callback(
        self,
        processor: PaymentProcessor,
        make_mpesa_order,
        gateway: AsyncMock,
        user: User,
    ) -> None:
        payment = await make_mpesa_order(meta=pending_meta())
        gateway.query_stk_status.return_value = stk_query_result(0, mpesa_receipt_number="ABC123")

        current = await processor.get_payment_status(payment.id, user.id)

        assert current.status == PaymentStatus.SUCCESS
        assert current.transaction_ref == "ABC123"
        assert current.order.status.value == "CONFIRMED"
        assert current.meta["mpesa"]["statusQuerySource"] == "STK_QUERY"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_status_read_survives_provider_outage(
        self,
        processor: PaymentProcessor,
        make_mpesa_order,
        gateway: AsyncMock,
        user: User,
    ) -> None:
        payment = await make_mpesa_order(meta=pending_meta())
        gateway.query_stk_status.side_effect = UpstreamError("Service unavailable")

        current = await processor.get_payment_status(payment.id, user.id)

        assert current.status == PaymentStatus.PENDING

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_status_read_backfills_missing_receipt(
        self,
        processor: PaymentProcessor,
        make_mpesa_order,
        gateway: AsyncMock,
        user: User,
    ) -> None:
        payment = await make_mpesa_order(status=PaymentStatus.SUCCESS, transaction_ref="ABC123")

        await processor.get_payment_status(payment.id, user.id)

        gateway.query_stk_status.assert_not_awaited()
        receipt = await processor.receipt_issuer.get_receipt_by_order_for_user(
            payment.order_id, user.id
        )
        assert receipt.payment_id == payment.id
