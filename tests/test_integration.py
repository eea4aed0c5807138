"""
Integration tests for the HTTP API.

Runs the FastAPI app in-process against the test database with the
provider and email mocked.
"""
from typing import Dict, List
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient

from redcart.database.models import Cart, PaymentStatus, Product, User

from tests.helpers import pending_meta, stk_callback_body, stk_query_result

CHECKOUT_BODY = {
    "paymentMethod": "MPESA",
    "shippingName": "Jane Wanjiku",
    "shippingPhone": "0712345678",
    "shippingEmail": "jane@example.com",
    "shippingStreet": "Moi Avenue 12",
    "shippingCity": "Nairobi",
    "shippingCountry": "Kenya",
    "mpesaPayerName": "Jane Wanjiku",
}


class TestAuthentication:
    """Caller identity comes from the auth header."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_identity(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/orders")

        assert response.status_code == 401
        assert response.json() == {"message": "Unauthorized"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_user(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/orders", headers={"X-User-ID": "ghost"})

        assert response.status_code == 401
        assert response.json() == {"message": "Invalid token"}


class TestCheckoutApi:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_mpesa_checkout(
        self, client: AsyncClient, auth_headers: Dict[str, str], cart: Cart
    ) -> None:
        response = await client.post(
            "/api/v1/orders/checkout", json=CHECKOUT_BODY, headers=auth_headers
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "PENDING_PAYMENT"
        assert data["total"] == 3250.5
        assert data["payment"]["status"] == "PENDING"
        assert data["payment"]["provider"] == "MPESA"
        assert data["payment"]["amount"] == 3250.5
        assert data["nextAction"].startswith("Call POST /payments/mpesa/stk-push")
        assert "orderId" in data

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_body_is_422(
        self, client: AsyncClient, auth_headers: Dict[str, str], cart: Cart
    ) -> None:
        response = await client.post(
            "/api/v1/orders/checkout",
            json={**CHECKOUT_BODY, "shippingEmail": "not-an-email"},
            headers=auth_headers,
        )

        assert response.status_code == 422
        assert "Invalid email address" in response.json()["message"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_empty_cart_is_400(
        self, client: AsyncClient, auth_headers: Dict[str, str]
    ) -> None:
        response = await client.post(
            "/api/v1/orders/checkout", json=CHECKOUT_BODY, headers=auth_headers
        )

        assert response.status_code == 400
        assert response.json() == {"message": "Cart is empty"}


class TestMpesaFlow:
    """Checkout, push, callback and receipt through the API."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_push_callback_and_receipt(
        self,
        client: AsyncClient,
        auth_headers: Dict[str, str],
        cart: Cart,
        gateway: AsyncMock,
        notifier: AsyncMock,
    ) -> None:
        checkout = (
            await client.post("/api/v1/orders/checkout", json=CHECKOUT_BODY, headers=auth_headers)
        ).json()
        payment_id = checkout["payment"]["id"]
        order_id = checkout["orderId"]

        push = await client.post(
            "/api/v1/payments/mpesa/stk-push",
            json={"paymentId": payment_id, "phoneNumber": "0712345678"},
            headers=auth_headers,
        )
        assert push.status_code == 200
        push_data = push.json()
        assert push_data["payment"] == {"id": payment_id, "status": "PENDING", "amount": 3250.5}
        assert push_data["order"] == {"id": order_id, "status": "PENDING_PAYMENT"}
        assert push_data["mpesa"]["checkoutRequestId"] == "ws_CO_191220191020363925"

        body = stk_callback_body(checkout_request_id="ws_CO_191220191020363925")
        callback = await client.post(f"/api/v1/payments/mpesa/callback/{payment_id}", json=body)
        assert callback.status_code == 200
        assert callback.json() == {"message": "M-Pesa callback processed", "resultCode": 0}

        replay = await client.post(f"/api/v1/payments/mpesa/callback/{payment_id}", json=body)
        assert replay.status_code == 200
        notifier.send_order_confirmation.assert_awaited_once()

        status_response = await client.get(
            f"/api/v1/orders/{order_id}/status", headers=auth_headers
        )
        assert status_response.json()["status"] == "CONFIRMED"
        assert status_response.json()["payment"]["transactionRef"] == "NLJ7RT61SV"

        receipt = await client.get(f"/api/v1/receipts/order/{order_id}", headers=auth_headers)
        assert receipt.status_code == 200
        receipt_data = receipt.json()
        assert receipt_data["receiptNumber"].startswith("RCT-")
        assert receipt_data["payerName"] == "Jane Wanjiku"
        assert receipt_data["payerNameSource"] == "CHECKOUT_DECLARED_NAME"
        assert receipt_data["total"] == 3250.5
        assert len(receipt_data["itemsSnapshot"]) == 2
        assert receipt_data["payment"]["transactionRef"] == "NLJ7RT61SV"

        by_id = await client.get(f"/api/v1/receipts/{receipt_data['id']}", headers=auth_headers)
        assert by_id.json()["receiptNumber"] == receipt_data["receiptNumber"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_already_completed_push(
        self,
        client: AsyncClient,
        auth_headers: Dict[str, str],
        make_mpesa_order,
        gateway: AsyncMock,
    ) -> None:
        payment = await make_mpesa_order(status=PaymentStatus.SUCCESS, transaction_ref="NLJ7RT61SV")

        response = await client.post(
            "/api/v1/payments/mpesa/stk-push",
            json={"paymentId": payment.id, "phoneNumber": "0712345678"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json() == {
            "message": "Payment already completed",
            "payment": {"id": payment.id, "status": "SUCCESS", "transactionRef": "NLJ7RT61SV"},
        }
        gateway.initiate_stk_push.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_phone_is_422(
        self, client: AsyncClient, auth_headers: Dict[str, str], make_mpesa_order
    ) -> None:
        payment = await make_mpesa_order()

        response = await client.post(
            "/api/v1/payments/mpesa/stk-push",
            json={"paymentId": payment.id, "phoneNumber": "0800 123"},
            headers=auth_headers,
        )

        assert response.status_code == 422
        assert response.json() == {"message": "Invalid Kenyan phone number format for M-Pesa"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_callback_errors(self, client: AsyncClient, make_mpesa_order) -> None:
        payment = await make_mpesa_order(meta=pending_meta())

        unknown = await client.post(
            "/api/v1/payments/mpesa/callback/nope", json=stk_callback_body()
        )
        invalid = await client.post(
            f"/api/v1/payments/mpesa/callback/{payment.id}", json={"hello": "world"}
        )

        assert unknown.status_code == 404
        assert unknown.json() == {"message": "Payment not found"}
        assert invalid.status_code == 400
        assert invalid.json() == {"message": "Invalid M-Pesa callback payload"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_orders_list_reconciles_lost_callback(
        self,
        client: AsyncClient,
        auth_headers: Dict[str, str],
        make_mpesa_order,
        gateway: AsyncMock,
    ) -> None:
        payment = await make_mpesa_order(meta=pending_meta())
        gateway.query_stk_status.return_value = stk_query_result(0, mpesa_receipt_number="ABC123")

        response = await client.get("/api/v1/orders", headers=auth_headers)

        assert response.status_code == 200
        orders: List[dict] = response.json()
        assert len(orders) == 1
        assert orders[0]["status"] == "CONFIRMED"
        assert orders[0]["payment"]["status"] == "SUCCESS"
        assert orders[0]["payment"]["transactionRef"] == "ABC123"
        assert orders[0]["payment"]["meta"]["mpesa"]["statusQuerySource"] == "ORDERS_LIST"
        assert orders[0]["items"][0]["product"]["slug"] == "kikoy-beach-towel"

        status_response = await client.get(
            f"/api/v1/payments/mpesa/{payment.id}/status", headers=auth_headers
        )
        assert status_response.json()["status"] == "SUCCESS"
        assert status_response.json()["order"]["status"] == "CONFIRMED"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_other_users_resources_are_hidden(
        self,
        client: AsyncClient,
        make_mpesa_order,
        other_user: User,
        products: List[Product],
    ) -> None:
        payment = await make_mpesa_order(status=PaymentStatus.SUCCESS)
        headers = {"X-User-ID": other_user.id}

        status_response = await client.get(
            f"/api/v1/payments/mpesa/{payment.id}/status", headers=headers
        )
        order_status = await client.get(f"/api/v1/orders/{payment.order_id}/status", headers=headers)
        receipt = await client.get(f"/api/v1/receipts/order/{payment.order_id}", headers=headers)

        assert status_response.status_code == 404
        assert order_status.status_code == 404
        assert order_status.json() == {"message": "Order not found"}
        assert receipt.status_code == 404


class TestMonitoring:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_endpoints(self, client: AsyncClient) -> None:
        live = await client.get("/health/live")
        ready = await client.get("/api/v1/health/ready")
        metrics = await client.get("/metrics")

        assert live.json()["status"] == "healthy"
        assert ready.status_code == 200
        assert ready.json()["checks"]["database"]["status"] == "healthy"
        assert metrics.status_code == 200
        assert "mpesa_callbacks_total" in metrics.text
