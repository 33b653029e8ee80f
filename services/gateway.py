import hashlib
import hmac
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import requests

from core.config import settings
from core.errors import GatewayError
from models.payment import Payment
from schemas.payment import GatewayResult


PAYSTACK_BASE_URL = "https://api.paystack.co"
PAYSTACK_SIGNATURE_HEADER = "x-paystack-signature"


class PaymentGateway(Protocol):
    name: str

    def initialize(self, payment: Payment, email: str, callback_url: Optional[str] = None) -> GatewayResult:
        ...

    def verify(self, transaction_id: str) -> GatewayResult:
        ...


class PaystackGateway:
    """Paystack transaction API. Amounts travel in the currency's minor unit."""

    name = "paystack"

    def __init__(self, secret_key: Optional[str] = None, base_url: str = PAYSTACK_BASE_URL, timeout: Optional[int] = None):
        self.secret_key = secret_key if secret_key is not None else settings.PAYSTACK_SECRET_KEY
        self.base_url = base_url
        self.timeout = timeout or settings.PAYSTACK_TIMEOUT_SECONDS

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _parse(self, resp: requests.Response) -> Dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            body = None
        if resp.status_code >= 400 or not isinstance(body, dict):
            message = body.get("message") if isinstance(body, dict) else None
            raise GatewayError(message or f"Paystack returned HTTP {resp.status_code}", response=body)
        if not body.get("status"):
            raise GatewayError(body.get("message") or "Paystack rejected the request", response=body)
        return body

    def initialize(self, payment: Payment, email: str, callback_url: Optional[str] = None) -> GatewayResult:
        payload: Dict[str, Any] = {
            "email": email,
            "amount": int((Decimal(payment.amount) * 100).to_integral_value()),
            "currency": payment.currency,
            "reference": payment.transaction_id,
            "metadata": {"order_id": payment.order_id, "payment_id": payment.id},
        }
        if callback_url or settings.PAYSTACK_CALLBACK_URL:
            payload["callback_url"] = callback_url or settings.PAYSTACK_CALLBACK_URL

        try:
            resp = requests.post(
                f"{self.base_url}/transaction/initialize", json=payload, headers=self._headers(), timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise GatewayError(f"Paystack initialize failed: {exc}") from exc
        body = self._parse(resp)
        data = body.get("data") or {}
        return GatewayResult(
            status="pending",
            reference=data.get("reference") or payment.transaction_id,
            authorization_url=data.get("authorization_url"),
            access_code=data.get("access_code"),
            raw=body,
        )

    def verify(self, transaction_id: str) -> GatewayResult:
        try:
            resp = requests.get(
                f"{self.base_url}/transaction/verify/{transaction_id}", headers=self._headers(), timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise GatewayError(f"Paystack verify failed: {exc}") from exc
        body = self._parse(resp)
        return transaction_result(body.get("data") or {}, body, transaction_id)


def get_gateway() -> PaymentGateway:
    """FastAPI dependency; tests override it with a fake gateway."""
    return PaystackGateway()


def transaction_result(data: Dict[str, Any], raw: Dict[str, Any], reference: Optional[str] = None) -> GatewayResult:
    """Build a GatewayResult from a Paystack transaction object (verify response or webhook ``data``)."""
    status = data.get("status") or "failed"
    fees = data.get("fees")
    return GatewayResult(
        status=status,
        reference=data.get("reference") or reference,
        error=None if status == "success" else data.get("gateway_response"),
        fee=(Decimal(str(fees)) / 100) if fees is not None else None,
        raw=raw,
    )


def verify_paystack_signature(body: bytes, signature: Optional[str], secret_key: Optional[str] = None) -> bool:
    """Check a webhook's ``x-paystack-signature``: HMAC-SHA512 of the raw body keyed with the secret key.

    Without a configured secret nothing can be verified, so every
    request is rejected.
    """
    secret = secret_key if secret_key is not None else settings.PAYSTACK_SECRET_KEY
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature)
