import base64
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

import requests

DEFAULT_MPESA_BASE_URL = "https://sandbox.safaricom.co.ke"
REQUEST_TIMEOUT_SECONDS = 30

_token_cache = {"access_token": None, "expires_at": None}


class MpesaError(Exception):
    pass


def get_base_url(config) -> str:
    return (config.get("MPESA_BASE_URL") or DEFAULT_MPESA_BASE_URL).rstrip("/")


def reset_token_cache() -> None:
    _token_cache["access_token"] = None
    _token_cache["expires_at"] = None


def get_access_token(config) -> str:
    consumer_key = config.get("MPESA_CONSUMER_KEY")
    consumer_secret = config.get("MPESA_CONSUMER_SECRET")
    if not consumer_key or not consumer_secret:
        raise MpesaError("M-Pesa configuration is incomplete.")

    now = datetime.utcnow()
    if (
        _token_cache["access_token"]
        and _token_cache["expires_at"]
        and _token_cache["expires_at"] > now + timedelta(seconds=30)
    ):
        return _token_cache["access_token"]

    credentials = base64.b64encode(
        f"{consumer_key}:{consumer_secret}".encode("utf-8")
    ).decode("ascii")
    try:
        response = requests.get(
            f"{get_base_url(config)}/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {credentials}"},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise MpesaError(f"Failed to generate OAuth token: {exc}")

    access_token = data.get("access_token")
    if not access_token:
        raise MpesaError("OAuth response did not include an access token.")

    _token_cache["access_token"] = access_token
    _token_cache["expires_at"] = now + timedelta(
        seconds=int(data.get("expires_in", 3599) or 3599)
    )
    return access_token


def generate_password(shortcode: str, passkey: str, now: Optional[datetime] = None) -> Tuple[str, str]:
    timestamp = (now or datetime.utcnow()).strftime("%Y%m%d%H%M%S")
    password = base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode(
        "ascii"
    )
    return password, timestamp


def initiate_stk_push(config, phone: str, amount: float, reference: str) -> Dict:
    shortcode = str(config.get("MPESA_SHORTCODE") or "").strip()
    passkey = str(config.get("MPESA_PASSKEY") or "").strip()
    callback_url = str(config.get("MPESA_CALLBACK_URL") or "").strip()
    if not shortcode or not passkey or not callback_url:
        raise MpesaError("M-Pesa configuration is incomplete.")

    access_token = get_access_token(config)
    password, timestamp = generate_password(shortcode, passkey)

    payload = {
        "BusinessShortCode": shortcode,
        "Password": password,
        "Timestamp": timestamp,
        "TransactionType": "CustomerPayBillOnline",
        "Amount": int(round(amount)),
        "PartyA": phone,
        "PartyB": shortcode,
        "PhoneNumber": phone,
        "CallBackURL": callback_url,
        "AccountReference": reference,
        "TransactionDesc": "Payment",
    }
    try:
        response = requests.post(
            f"{get_base_url(config)}/mpesa/stkpush/v1/processrequest",
            json=payload,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        data = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise MpesaError(f"STK push request failed: {exc}")

    if response.status_code != 200 or str(data.get("ResponseCode", "")) != "0":
        raise MpesaError(
            data.get("errorMessage")
            or data.get("ResponseDescription")
            or "STK push was rejected."
        )
    return data


def _callback_metadata(stk_callback: Dict) -> Dict:
    items = (stk_callback.get("CallbackMetadata") or {}).get("Item") or []
    metadata = {}
    for entry in items:
        if isinstance(entry, dict) and entry.get("Name"):
            metadata[entry["Name"]] = entry.get("Value")
    return metadata


def parse_callback(body) -> Tuple[Optional[str], Optional[str], Optional[Dict]]:
    """Extract ``(order_reference, checkout_request_id, payment_payload)``.

    Accepts either the raw Daraja ``Body.stkCallback`` envelope or an already
    normalized ``{"orderReference": ..., "status": "PAID" | "FAILED"}`` body.
    The payload is None when the body carries no recognizable result.
    """
    if not isinstance(body, dict):
        return None, None, None

    stk_callback = (body.get("Body") or {}).get("stkCallback")
    if isinstance(stk_callback, dict):
        metadata = _callback_metadata(stk_callback)
        result_code = stk_callback.get("ResultCode")
        payload = {
            "status": "PAID" if str(result_code) == "0" else "FAILED",
            "resultCode": result_code,
            "resultDesc": stk_callback.get("ResultDesc"),
            "merchantRequestId": stk_callback.get("MerchantRequestID"),
            "checkoutRequestId": stk_callback.get("CheckoutRequestID"),
            "amount": metadata.get("Amount"),
            "receipt": metadata.get("MpesaReceiptNumber"),
            "phone": metadata.get("PhoneNumber"),
            "raw": body,
        }
        reference = metadata.get("AccountReference") or body.get("orderReference")
        return reference, stk_callback.get("CheckoutRequestID"), payload

    reference = (
        body.get("orderReference")
        or body.get("order_reference")
        or body.get("AccountReference")
        or body.get("reference")
    )
    status = str(body.get("status") or "").strip().upper()
    if status not in ("PAID", "FAILED"):
        return reference, body.get("checkoutRequestId"), None
    return reference, body.get("checkoutRequestId"), dict(body)
