"""Builders for provider payloads and recorded payment state."""
from typing import Any, Dict, List, Optional

from redcart.integrations.mpesa_client import StkPushResult, StkQueryResult


def pending_meta(checkout_request_id: str = "ws_CO_123", **extra: Any) -> Dict[str, Any]:
    """``meta`` of a payment whose push has been initiated."""
    return {
        "mpesa": {
            "requestedPayerName": "Jane Wanjiku",
            "phoneNumber": "254712345678",
            "checkoutRequestId": checkout_request_id,
            "merchantRequestId": "29115-34620561-1",
            **extra,
        }
    }


def stk_push_result(**overrides: Any) -> StkPushResult:
    values = {
        "merchant_request_id": "29115-34620561-1",
        "checkout_request_id": "ws_CO_191220191020363925",
        "response_code": "0",
        "response_description": "Success. Request accepted for processing",
        "customer_message": "Success. Request accepted for processing",
        "request_timestamp": "20260301101500",
    }
    values.update(overrides)
    return StkPushResult(**values)


def stk_query_result(
    result_code: Optional[int],
    checkout_request_id: str = "ws_CO_123",
    mpesa_receipt_number: Optional[str] = None,
    result_desc: Optional[str] = None,
) -> StkQueryResult:
    raw: Dict[str, Any] = {
        "ResponseCode": "0",
        "ResponseDescription": "The service request has been accepted successsfully",
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
    }
    if result_code is not None:
        raw["ResultCode"] = str(result_code)
        raw["ResultDesc"] = result_desc
    return StkQueryResult(
        merchant_request_id="29115-34620561-1",
        checkout_request_id=checkout_request_id,
        response_code="0",
        response_description=raw["ResponseDescription"],
        result_code=result_code,
        result_desc=result_desc,
        mpesa_receipt_number=mpesa_receipt_number,
        request_timestamp="20260301101500",
        raw=raw,
    )


def stk_callback_body(
    result_code: Any = 0,
    checkout_request_id: str = "ws_CO_123",
    receipt_number: Optional[str] = "NLJ7RT61SV",
    phone: Any = 254712345678,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Provider callback envelope; metadata items only on success."""
    stk: Dict[str, Any] = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": (
            "The service request is processed successfully."
            if result_code == 0
            else "Request cancelled by user"
        ),
    }
    if result_code == 0:
        items: List[Dict[str, Any]] = [
            {"Name": "Amount", "Value": 1500.0},
            {"Name": "TransactionDate", "Value": 20260301102115},
            {"Name": "PhoneNumber", "Value": phone},
        ]
        if receipt_number is not None:
            items.append({"Name": "MpesaReceiptNumber", "Value": receipt_number})
        if first_name is not None:
            items.append({"Name": "FirstName", "Value": first_name})
        if last_name is not None:
            items.append({"Name": "LastName", "Value": last_name})
        stk["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": stk}}
