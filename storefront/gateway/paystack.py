import hashlib
import hmac
import secrets

import httpx
from loguru import logger

from storefront.core.config import settings
from storefront.errors import GatewayRejected, GatewayUnavailable
from storefront.gateway.port import GatewaySession, PaymentGateway, Verification


def compute_signature(secret_key: str, raw_payload: bytes) -> str:
    return hmac.new(secret_key.encode("utf-8"), raw_payload, hashlib.sha512).hexdigest()


def new_reference(order_id: int) -> str:
    return f"SF-{order_id}-{secrets.token_hex(6)}"


class PaystackGateway(PaymentGateway):
    """Paystack transaction API over httpx."""

    def __init__(self, secret_key: str, base_url: str = "https://api.paystack.co",
                 timeout: float = 10.0, transport: httpx.BaseTransport | None = None):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"},
        )

    def _request(self, method: str, path: str, **kwargs) -> tuple[int, dict]:
        try:
            with self._client() as client:
                resp = client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayUnavailable(f"Payment gateway timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise GatewayUnavailable(f"Payment gateway unreachable: {exc}") from exc
        if resp.status_code >= 500:
            raise GatewayUnavailable(f"Payment gateway error (HTTP {resp.status_code})")
        try:
            body = resp.json()
        except ValueError:
            body = {}
        return resp.status_code, body

    def initialize_session(self, order_id, amount, currency, customer_email, callback_url) -> GatewaySession:
        payload = {
            "email": customer_email,
            "amount": amount,
            "currency": currency,
            "reference": new_reference(order_id),
            "callback_url": callback_url,
            "metadata": {"order_id": order_id},
        }
        status_code, body = self._request("POST", "/transaction/initialize", json=payload)
        data = body.get("data") or {}
        if status_code >= 400 or not body.get("status") or not data.get("authorization_url"):
            raise GatewayRejected(body.get("message") or f"Payment gateway refused the session (HTTP {status_code})")
        return GatewaySession(redirect_url=data["authorization_url"], reference=data.get("reference") or payload["reference"])

    def verify(self, reference: str) -> Verification:
        status_code, body = self._request("GET", f"/transaction/verify/{reference}")
        data = body.get("data") or {}
        if status_code >= 400 or not body.get("status"):
            logger.info(f"gateway declined verification of {reference}: {body.get('message')}")
            return Verification(succeeded=False, amount_paid=0, status=data.get("status", "unknown"))
        authorization = data.get("authorization") or {}
        return Verification(
            succeeded=data.get("status") == "success",
            amount_paid=int(data.get("amount") or 0),
            currency=(data.get("currency") or "").upper(),
            authorization_token=authorization.get("authorization_code"),
            status=data.get("status", ""),
        )

    def verify_webhook_signature(self, raw_payload: bytes, signature: str | None) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(compute_signature(self.secret_key, raw_payload), signature)


def build_gateway() -> PaystackGateway:
    if not settings.PAYSTACK_SECRET_KEY:
        raise GatewayUnavailable("Payment gateway is not configured")
    return PaystackGateway(
        secret_key=settings.PAYSTACK_SECRET_KEY,
        base_url=settings.PAYSTACK_BASE_URL,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )
