"""
Payment provider adapter. PayOS issues a VietQR bank transfer request per
order code and reports whether the exact amount has arrived.
"""
import hashlib
import hmac
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol
from urllib.parse import quote

import httpx

from config import (
    APP_URL,
    PAYMENT_TTL_MINUTES,
    PAYOS_API_KEY,
    PAYOS_API_URL,
    PAYOS_CHECKSUM_KEY,
    PAYOS_CLIENT_ID,
    PAYOS_TIMEOUT,
)
from errors import ProviderError
from schemas import CheckoutReference, ProviderStatus

logger = logging.getLogger(__name__)


class PaymentProviderGateway(Protocol):
    async def create_checkout(self, order_code: str, amount: int, description: str,
                              metadata: Dict[str, Any]) -> CheckoutReference: ...

    async def get_status(self, order_code: str) -> ProviderStatus: ...

    async def cancel_checkout(self, order_code: str, reason: str) -> None: ...


def generate_order_code(now: datetime) -> str:
    """Last ten digits of the millisecond timestamp plus four random digits."""
    millis = int(now.timestamp() * 1000) % 10_000_000_000
    return f"{millis}{random.randint(1000, 9999)}"


def sign(data: Dict[str, Any], key: str) -> str:
    """HMAC-SHA256 over `k=v` pairs joined by `&` in key order."""
    payload = "&".join(f"{k}={'' if data[k] is None else data[k]}" for k in sorted(data))
    return hmac.new(key.encode(), payload.encode(), hashlib.sha256).hexdigest()


def verify_webhook_signature(data: Dict[str, Any], signature: str, key: str = PAYOS_CHECKSUM_KEY) -> bool:
    return hmac.compare_digest(sign(data, key), signature or "")


def vietqr_url(bin_code: str, account_number: str, amount: int, description: str, account_name: str) -> str:
    return (
        f"https://img.vietqr.io/image/{bin_code}-{account_number}-compact2.png"
        f"?amount={amount}&addInfo={quote(description)}&accountName={quote(account_name)}"
    )


class PayOSGateway:
    def __init__(
        self,
        client_id: str = PAYOS_CLIENT_ID,
        api_key: str = PAYOS_API_KEY,
        checksum_key: str = PAYOS_CHECKSUM_KEY,
        base_url: str = PAYOS_API_URL,
        timeout: float = PAYOS_TIMEOUT,
        return_url: str = APP_URL,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.checksum_key = checksum_key
        self.return_url = return_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"x-client-id": client_id, "x-api-key": api_key},
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _call(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self.client.request(method, path, json=json)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise ProviderError(f"PayOS {method} {path} failed: {e}")
        except ValueError:
            raise ProviderError(f"PayOS {method} {path} returned a non-JSON body")
        if not isinstance(body, dict) or body.get("code") != "00" or not body.get("data"):
            desc = body.get("desc") if isinstance(body, dict) else None
            raise ProviderError(f"PayOS {method} {path} rejected: {desc or 'malformed response'}")
        return body["data"]

    async def create_checkout(self, order_code, amount, description, metadata):
        expires_at = metadata.get("expires_at") or datetime.now(timezone.utc) + timedelta(minutes=PAYMENT_TTL_MINUTES)
        request = {
            "orderCode": int(order_code),
            "amount": amount,
            # PayOS caps descriptions at 25 characters
            "description": description[:25],
            "cancelUrl": f"{self.return_url}/order?payment=cancelled",
            "returnUrl": f"{self.return_url}/order?payment=success&orderCode={order_code}",
            "expiredAt": int(expires_at.timestamp()),
        }
        if metadata.get("buyer_name"):
            request["buyerName"] = metadata["buyer_name"]
        if metadata.get("buyer_email"):
            request["buyerEmail"] = metadata["buyer_email"]
        signed = {k: request[k] for k in ("amount", "cancelUrl", "description", "orderCode", "returnUrl")}
        request["signature"] = sign(signed, self.checksum_key)

        data = await self._call("POST", "/v2/payment-requests", json=request)
        try:
            bin_code = str(data["bin"])
            account_number = str(data["accountNumber"])
            account_name = str(data.get("accountName", ""))
            desc = str(data.get("description", request["description"]))
            return CheckoutReference(
                order_code=str(order_code),
                qr_reference=vietqr_url(bin_code, account_number, amount, desc, account_name),
                checkout_url=str(data.get("checkoutUrl", "")),
                account_number=account_number,
                account_name=account_name,
                bin=bin_code,
                description=desc,
                expires_at=expires_at,
            )
        except KeyError as e:
            raise ProviderError(f"PayOS checkout response missing {e}")

    async def get_status(self, order_code):
        data = await self._call("GET", f"/v2/payment-requests/{order_code}")
        status = str(data.get("status", ""))
        try:
            amount_paid = int(data.get("amountPaid") or 0)
        except (TypeError, ValueError):
            raise ProviderError(f"PayOS returned a bad amountPaid for {order_code}")
        return ProviderStatus(is_paid=status == "PAID", amount_paid=amount_paid, status=status)

    async def cancel_checkout(self, order_code, reason):
        await self._call(
            "POST", f"/v2/payment-requests/{order_code}/cancel", json={"cancellationReason": reason}
        )
