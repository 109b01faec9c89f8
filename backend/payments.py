# Payment provider clients
from __future__ import annotations
import hashlib
import hmac
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel

from config import Settings, get_settings
from errors import PaymentProviderError
from schemas import PaymentProvider as ProviderName

logger = structlog.get_logger(__name__)


class PaymentSession(BaseModel):
    id: str
    amount: float
    currency: str
    payload: dict[str, Any] = {}


def _json(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class PaymentProvider:
    name: ProviderName = ProviderName.UNKNOWN

    def __init__(self, base_url: str, timeout: float, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    def client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport, **kwargs)

    async def create_session(self, amount: float, currency: str, idempotency_key: str) -> PaymentSession:
        raise NotImplementedError


class RazorpayProvider(PaymentProvider):
    name = ProviderName.RAZORPAY
    generic_error = "Something went wrong while initialising the razorpay order."

    def __init__(self, key_id: str, key_secret: str, base_url: str = "https://api.razorpay.com", timeout: float = 15.0, transport=None):
        super().__init__(base_url, timeout, transport)
        self.key_id = key_id
        self.key_secret = key_secret

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RazorpayProvider":
        settings = settings or get_settings()
        return cls(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET, settings.RAZORPAY_BASE_URL, settings.PAYMENT_TIMEOUT_SECONDS)

    async def create_session(self, amount: float, currency: str, idempotency_key: str) -> PaymentSession:
        if not self.key_id or not self.key_secret:
            logger.error("razorpay_not_configured")
            raise PaymentProviderError("Internal server error")

        # Razorpay takes the amount in the smallest currency unit (paise)
        minor_amount = int(round(amount * 100))
        try:
            async with self.client(auth=(self.key_id, self.key_secret)) as client:
                response = await client.post(
                    "/v1/orders",
                    json={"amount": minor_amount, "currency": currency, "receipt": idempotency_key},
                )
        except httpx.HTTPError as exc:
            logger.error("razorpay_request_failed", error=str(exc))
            raise PaymentProviderError(self.generic_error)

        data = _json(response)
        if response.is_error or not data.get("id"):
            error = data.get("error") or {}
            reason = error.get("reason") or error.get("description")
            logger.error("razorpay_order_failed", status_code=response.status_code, reason=reason)
            raise PaymentProviderError(reason or self.generic_error)

        return PaymentSession(id=data["id"], amount=minor_amount, currency=currency, payload=data)

    def signature_for(self, order_id: str, payment_id: str) -> str:
        body = f"{order_id}|{payment_id}"
        return hmac.new(self.key_secret.encode(), body.encode(), hashlib.sha256).hexdigest()

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        return hmac.compare_digest(self.signature_for(order_id, payment_id), signature or "")


class PaypalProvider(PaymentProvider):
    name = ProviderName.PAYPAL
    generic_error = "Something went wrong while initialising the paypal order."

    def __init__(
        self,
        client_id: str,
        secret: str,
        base_url: str = "https://api-m.sandbox.paypal.com",
        currency: str = "USD",
        exchange_rate: float = 1.0,
        timeout: float = 15.0,
        transport=None,
    ):
        super().__init__(base_url, timeout, transport)
        self.client_id = client_id
        self.secret = secret
        self.currency = currency
        self.exchange_rate = exchange_rate

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PaypalProvider":
        settings = settings or get_settings()
        return cls(
            settings.PAYPAL_CLIENT_ID,
            settings.PAYPAL_SECRET,
            settings.PAYPAL_BASE_URL,
            settings.PAYPAL_CURRENCY,
            settings.PAYPAL_EXCHANGE_RATE,
            settings.PAYMENT_TIMEOUT_SECONDS,
        )

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        try:
            response = await client.post(
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.secret),
            )
        except httpx.HTTPError as exc:
            logger.error("paypal_token_failed", error=str(exc))
            raise PaymentProviderError("Error while generating paypal auth token")

        token = _json(response).get("access_token")
        if response.is_error or not token:
            logger.error("paypal_token_failed", status_code=response.status_code)
            raise PaymentProviderError("Error while generating paypal auth token")
        return token

    async def _orders_api(self, endpoint: str, body: dict[str, Any], request_id: str) -> httpx.Response:
        async with self.client() as client:
            token = await self._access_token(client)
            return await client.post(
                f"/v2/checkout/orders{endpoint}",
                json=body,
                headers={"Authorization": f"Bearer {token}", "PayPal-Request-Id": request_id},
            )

    async def create_session(self, amount: float, currency: str, idempotency_key: str) -> PaymentSession:
        converted = round(amount * self.exchange_rate, 2)
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {"amount": {"currency_code": self.currency, "value": f"{converted:.2f}"}},
            ],
        }
        try:
            response = await self._orders_api("", body, idempotency_key)
        except httpx.HTTPError as exc:
            logger.error("paypal_request_failed", error=str(exc))
            raise PaymentProviderError(self.generic_error)

        data = _json(response)
        if response.is_error or not data.get("id"):
            reason = data.get("message") or data.get("name")
            logger.error("paypal_order_failed", status_code=response.status_code, reason=reason)
            raise PaymentProviderError(reason or self.generic_error)

        return PaymentSession(id=data["id"], amount=converted, currency=self.currency, payload=data)

    async def capture(self, order_id: str) -> dict[str, Any]:
        try:
            response = await self._orders_api(f"/{order_id}/capture", {}, f"capture-{order_id}")
        except httpx.HTTPError as exc:
            logger.error("paypal_capture_failed", order_id=order_id, error=str(exc))
            raise PaymentProviderError("Something went wrong with the paypal payment")
        return _json(response)


def get_razorpay() -> RazorpayProvider:
    return RazorpayProvider.from_settings()


def get_paypal() -> PaypalProvider:
    return PaypalProvider.from_settings()
