"""
M-Pesa Daraja API client.

Implements:
- OAuth bearer token acquisition with a process-wide, single-flight cache
- STK push initiation
- STK push status query
- Kenyan phone number normalization
"""
import asyncio
import base64
import re
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from redcart.config import Settings, get_settings
from redcart.core.errors import InternalError, UpstreamError, ValidationError
from redcart.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TOKEN_BUFFER_SECONDS = 60
DEFAULT_TOKEN_TTL_SECONDS = 3600

_PHONE_INTERNATIONAL = re.compile(r"^254\d{9}$")
_PHONE_LOCAL = re.compile(r"^0\d{9}$")
_PHONE_SUBSCRIBER = re.compile(r"^\d{9}$")


def normalize_kenyan_phone_number(value: str) -> str:
    """
    Normalize a phone number to the ``2547XXXXXXXX`` form Daraja expects.

    Accepts ``254XXXXXXXXX``, ``0XXXXXXXXX`` and bare ``XXXXXXXXX`` after
    stripping every non-digit character.

    Raises:
        ValidationError: For any other shape
    """
    digits = re.sub(r"\D+", "", value or "")

    if _PHONE_INTERNATIONAL.match(digits):
        return digits
    if _PHONE_LOCAL.match(digits):
        return f"254{digits[1:]}"
    if _PHONE_SUBSCRIBER.match(digits):
        return f"254{digits}"

    raise ValidationError("Invalid Kenyan phone number format for M-Pesa", status_code=422)


def build_timestamp(now: Optional[datetime] = None) -> str:
    """Daraja request timestamp, ``YYYYMMDDHHMMSS``."""
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def parse_int_code(value: Any) -> Optional[int]:
    """
    Integer value of a provider code such as ``ResultCode``.

    Daraja sends codes as numbers or numeric strings. Blank, non-numeric,
    non-finite and fractional values give ``None``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite() or number != number.to_integral_value():
        return None
    return int(number)


@dataclass(frozen=True)
class StkPushResult:
    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    response_description: str
    customer_message: str
    request_timestamp: str


@dataclass(frozen=True)
class StkQueryResult:
    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    response_description: str
    result_code: Optional[int]
    result_desc: Optional[str]
    mpesa_receipt_number: Optional[str]
    request_timestamp: str
    raw: Dict[str, Any]


class TokenCache:
    """
    OAuth token cache shared by every client in the process.

    Refresh is single-flight: concurrent callers that find the token expired
    wait on one lock and the first one through fetches a new token.
    """

    def __init__(self) -> None:
        self._value: Optional[str] = None
        self._expires_at: float = 0.0
        self._lock = asyncio.Lock()

    def peek(self) -> Optional[str]:
        if self._value and self._expires_at > time.monotonic():
            return self._value
        return None

    def store(self, value: str, expires_in_seconds: float) -> None:
        ttl = max(0.0, expires_in_seconds - TOKEN_BUFFER_SECONDS)
        self._value = value
        self._expires_at = time.monotonic() + ttl

    def clear(self) -> None:
        self._value = None
        self._expires_at = 0.0

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock


_process_token_cache = TokenCache()


class MpesaClient:
    """
    Wrapper for the Daraja STK push API.

    Network calls are made with ``httpx.AsyncClient``. Any non-2xx reply or
    malformed body becomes an ``UpstreamError``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        token_cache: Optional[TokenCache] = None,
    ) -> None:
        """
        Initialize M-Pesa client.

        Args:
            settings: Optional settings (defaults to cached settings)
            http_client: Optional HTTP client (one per call if not provided)
            token_cache: Optional token cache (process-wide cache by default)
        """
        self.settings = settings or get_settings()
        self.http_client = http_client
        self.token_cache = token_cache or _process_token_cache

    @property
    def base_url(self) -> str:
        return self.settings.mpesa_api_base_url

    def _require_config(self) -> None:
        if not self.settings.mpesa_enabled:
            raise UpstreamError("M-Pesa is not enabled in this environment", status_code=503)

        required = {
            "MPESA_CONSUMER_KEY": self.settings.mpesa_consumer_key,
            "MPESA_CONSUMER_SECRET": self.settings.mpesa_consumer_secret,
            "MPESA_SHORTCODE": self.settings.mpesa_shortcode,
            "MPESA_PASSKEY": self.settings.mpesa_passkey,
            "MPESA_CALLBACK_BASE_URL": self.settings.mpesa_callback_base_url,
        }
        missing = [key for key, value in required.items() if not value]
        if missing:
            raise InternalError(f"Missing M-Pesa configuration: {', '.join(missing)}")

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        timeout = self.settings.mpesa_timeout_seconds
        if self.http_client is not None:
            return await self.http_client.request(method, url, timeout=timeout, **kwargs)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.request(method, url, **kwargs)

    @staticmethod
    def _json_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def _fetch_access_token(self) -> Dict[str, Any]:
        credentials = base64.b64encode(
            f"{self.settings.mpesa_consumer_key}:{self.settings.mpesa_consumer_secret}".encode()
        ).decode()
        response = await self._request(
            "GET",
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {credentials}"},
        )

        if not response.is_success:
            metrics.record_gateway_call("oauth", "error")
            raise UpstreamError(f"Unable to get M-Pesa access token: {response.text}")

        metrics.record_gateway_call("oauth", "ok")
        return self._json_body(response)

    async def get_access_token(self) -> str:
        """
        Return a cached bearer token, refreshing it when expired.

        Raises:
            UpstreamError: If the provider rejects the credentials
        """
        self._require_config()

        token = self.token_cache.peek()
        if token:
            return token

        async with self.token_cache.lock:
            token = self.token_cache.peek()
            if token:
                return token

            body = await self._fetch_access_token()
            access_token = body.get("access_token")
            if not access_token:
                raise UpstreamError("M-Pesa access token response missing token")

            expires_in = parse_int_code(body.get("expires_in")) or DEFAULT_TOKEN_TTL_SECONDS
            self.token_cache.store(access_token, expires_in)
            logger.info("mpesa_access_token_refreshed", expires_in=expires_in)
            return access_token

    async def verify_connection(self) -> Dict[str, Any]:
        """Check configuration and OAuth connectivity."""
        access_token = await self.get_access_token()
        return {
            "mode": self.settings.mpesa_env,
            "base_url": self.base_url,
            "has_access_token": bool(access_token),
        }

    async def initiate_stk_push(
        self,
        amount: Decimal | float,
        phone_number: str,
        reference: str,
        description: str,
        callback_url: str,
    ) -> StkPushResult:
        """
        Ask the provider to prompt ``phone_number`` for payment.

        Args:
            amount: Amount to charge; rounded, minimum 1
            phone_number: Normalized ``254...`` number
            reference: Account reference shown to the payer
            description: Transaction description
            callback_url: URL the provider posts the result to

        Returns:
            StkPushResult: Provider request identifiers

        Raises:
            UpstreamError: If the provider rejects the request
        """
        self._require_config()

        timestamp = build_timestamp()
        shortcode = self.settings.mpesa_shortcode or ""
        password = build_password(shortcode, self.settings.mpesa_passkey or "", timestamp)
        access_token = await self.get_access_token()
        charge_amount = max(
            1, int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        )

        payload = {
            "BusinessShortCode": shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": self.settings.mpesa_transaction_type,
            "Amount": charge_amount,
            "PartyA": phone_number,
            "PartyB": shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": callback_url,
            "AccountReference": reference,
            "TransactionDesc": description,
        }

        logger.info(
            "mpesa_stk_push_requested",
            amount=charge_amount,
            reference=reference,
            callback_url=callback_url,
        )

        response = await self._request(
            "POST",
            "/mpesa/stkpush/v1/processrequest",
            json=payload,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        body = self._json_body(response)

        if not response.is_success:
            metrics.record_gateway_call("stk_push", "error")
            message = (
                body.get("errorMessage")
                or body.get("ResponseDescription")
                or "M-Pesa STK push request failed"
            )
            logger.error(
                "mpesa_stk_push_failed",
                status_code=response.status_code,
                error_code=body.get("errorCode"),
                error=message,
            )
            raise UpstreamError(message)

        if (
            body.get("ResponseCode") in (None, "")
            or not body.get("CheckoutRequestID")
            or not body.get("MerchantRequestID")
        ):
            metrics.record_gateway_call("stk_push", "error")
            raise UpstreamError("Invalid M-Pesa STK push response")

        metrics.record_gateway_call("stk_push", "ok")
        return StkPushResult(
            merchant_request_id=str(body["MerchantRequestID"]),
            checkout_request_id=str(body["CheckoutRequestID"]),
            response_code=str(body["ResponseCode"]),
            response_description=str(body.get("ResponseDescription") or ""),
            customer_message=str(body.get("CustomerMessage") or ""),
            request_timestamp=timestamp,
        )

    async def query_stk_status(self, checkout_request_id: str) -> StkQueryResult:
        """
        Query the provider for the current state of an STK push.

        ``result_code`` is None while the provider is still processing.

        Raises:
            UpstreamError: If the query fails or the reply is malformed
        """
        self._require_config()

        timestamp = build_timestamp()
        shortcode = self.settings.mpesa_shortcode or ""
        password = build_password(shortcode, self.settings.mpesa_passkey or "", timestamp)
        access_token = await self.get_access_token()

        response = await self._request(
            "POST",
            "/mpesa/stkpushquery/v1/query",
            json={
                "BusinessShortCode": shortcode,
                "Password": password,
                "Timestamp": timestamp,
                "CheckoutRequestID": checkout_request_id,
            },
            headers={"Authorization": f"Bearer {access_token}"},
        )
        body = self._json_body(response)

        if not response.is_success:
            metrics.record_gateway_call("stk_query", "error")
            message = (
                body.get("errorMessage")
                or body.get("ResponseDescription")
                or "M-Pesa STK status query failed"
            )
            raise UpstreamError(message)

        if body.get("ResponseCode") in (None, ""):
            metrics.record_gateway_call("stk_query", "error")
            raise UpstreamError("Invalid M-Pesa STK status response")

        metrics.record_gateway_call("stk_query", "ok")
        return StkQueryResult(
            merchant_request_id=str(body.get("MerchantRequestID") or ""),
            checkout_request_id=str(body.get("CheckoutRequestID") or checkout_request_id),
            response_code=str(body["ResponseCode"]),
            response_description=str(body.get("ResponseDescription") or ""),
            result_code=parse_int_code(body.get("ResultCode")),
            result_desc=body.get("ResultDesc"),
            mpesa_receipt_number=body.get("MpesaReceiptNumber") or None,
            request_timestamp=timestamp,
            raw=body,
        )
