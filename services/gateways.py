"""
Payment gateway adapters.

Both adapters expose the same two calls, ``initialize`` and ``verify``, and
normalize the provider's answer to ``success``, ``failed`` or ``pending``.
Amounts cross this boundary in minor units (kobo, cents).
"""
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import requests
import stripe

from services.errors import GatewayError

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILED = "failed"
PENDING = "pending"

PAYSTACK_BASE_URL = "https://api.paystack.co"
PAYSTACK_FAILED_STATUSES = {"failed", "abandoned", "reversed"}


@dataclass
class CheckoutSession:
    authorization_url: str
    gateway_reference: Optional[str] = None


@dataclass
class GatewayVerification:
    status: str
    amount_minor: Optional[int] = None
    paid_at: Optional[datetime] = None
    raw_status: Optional[str] = None
    raw: dict = field(default_factory=dict)


def _parse_timestamp(value):
    if not value:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class PaymentGateway(ABC):
    name = "gateway"
    # verify needs the id handed back by initialize (Stripe checkout sessions)
    requires_gateway_reference = False

    @abstractmethod
    def initialize(self, email, amount_minor, reference, callback_url, metadata=None) -> CheckoutSession:
        """Open a hosted checkout and return where to send the payer."""

    @abstractmethod
    def verify(self, reference, gateway_reference=None) -> GatewayVerification:
        """Server-to-server status lookup. The only source of truth for a payment."""


class PaystackGateway(PaymentGateway):
    name = "paystack"

    def __init__(self, secret_key, base_url=PAYSTACK_BASE_URL, timeout=15, currency=None, http=None):
        if not secret_key:
            raise ValueError("Paystack secret key missing (PAYSTACK_SECRET_KEY)")
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.currency = currency
        self.http = http or requests.Session()

    def _request(self, method, path, **kwargs):
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        try:
            resp = self.http.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.error("Paystack %s %s failed: %s", method, path, exc)
            raise GatewayError(upstream_code="network_error", upstream_message=str(exc))

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if not resp.ok or not body.get("status"):
            upstream_message = body.get("message") or resp.reason
            logger.error("Paystack %s %s returned %s: %s", method, path, resp.status_code, upstream_message)
            raise GatewayError(upstream_code=str(resp.status_code), upstream_message=upstream_message)
        return body.get("data") or {}

    def initialize(self, email, amount_minor, reference, callback_url, metadata=None) -> CheckoutSession:
        payload = {
            "email": email,
            "amount": int(amount_minor),
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata or {},
        }
        if self.currency:
            payload["currency"] = self.currency
        data = self._request("POST", "/transaction/initialize", json=payload)
        if not data.get("authorization_url"):
            raise GatewayError(upstream_code="missing_authorization_url")
        return CheckoutSession(authorization_url=data["authorization_url"], gateway_reference=None)

    def verify(self, reference, gateway_reference=None) -> GatewayVerification:
        data = self._request("GET", f"/transaction/verify/{reference}")
        raw_status = (data.get("status") or "").lower()
        if raw_status == "success":
            status = SUCCESS
        elif raw_status in PAYSTACK_FAILED_STATUSES:
            status = FAILED
        else:
            status = PENDING
        amount = data.get("amount")
        return GatewayVerification(
            status=status,
            amount_minor=int(amount) if amount is not None else None,
            paid_at=_parse_timestamp(data.get("paid_at")),
            raw_status=raw_status,
            raw={
                "reference": data.get("reference"),
                "channel": data.get("channel"),
                "currency": data.get("currency"),
                "gateway_response": data.get("gateway_response"),
            },
        )

    def verify_signature(self, raw_body: bytes, signature: str) -> bool:
        """Checks ``x-paystack-signature`` (HMAC-SHA512 of the raw body)."""
        if not signature:
            return False
        expected = hmac.new(self.secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature)


class StripeGateway(PaymentGateway):
    name = "stripe"
    requires_gateway_reference = True

    def __init__(self, secret_key, webhook_secret=None, currency="ngn", product_name="Mentorship session"):
        if not secret_key:
            raise ValueError("Stripe secret key missing (STRIPE_SECRET_KEY)")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = (currency or "ngn").lower()
        self.product_name = product_name

    def _upstream_error(self, exc):
        code = getattr(exc, "code", None) or type(exc).__name__
        logger.error("Stripe call failed (%s): %s", code, exc)
        return GatewayError(upstream_code=code, upstream_message=getattr(exc, "user_message", None) or str(exc))

    def initialize(self, email, amount_minor, reference, callback_url, metadata=None) -> CheckoutSession:
        stripe.api_key = self.secret_key
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                customer_email=email,
                client_reference_id=reference,
                line_items=[{
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {"name": self.product_name},
                        "unit_amount": int(amount_minor),
                    },
                    "quantity": 1,
                }],
                success_url=callback_url,
                cancel_url=callback_url,
                # Stripe metadata values must be strings
                metadata={k: str(v) for k, v in (metadata or {}).items() if v is not None},
            )
        except stripe.StripeError as exc:
            raise self._upstream_error(exc)
        return CheckoutSession(authorization_url=session["url"], gateway_reference=session["id"])

    def verify(self, reference, gateway_reference=None) -> GatewayVerification:
        if not gateway_reference:
            raise GatewayError(upstream_code="missing_checkout_session")
        stripe.api_key = self.secret_key
        try:
            session = stripe.checkout.Session.retrieve(gateway_reference)
        except stripe.StripeError as exc:
            raise self._upstream_error(exc)

        if session.get("client_reference_id") not in (None, reference):
            raise GatewayError(upstream_code="reference_mismatch")

        payment_status = session.get("payment_status")
        if payment_status in ("paid", "no_payment_required"):
            status = SUCCESS
        elif session.get("status") == "expired":
            status = FAILED
        else:
            status = PENDING
        amount = session.get("amount_total")
        return GatewayVerification(
            status=status,
            amount_minor=int(amount) if amount is not None else None,
            paid_at=None,
            raw_status=payment_status,
            raw={"checkout_session": session.get("id"), "status": session.get("status")},
        )

    def construct_event(self, payload: bytes, sig_header: str):
        if not self.webhook_secret:
            raise ValueError("Webhook secret not configured")
        return stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)


def build_gateway(config) -> PaymentGateway:
    name = (config.get("PAYMENT_GATEWAY") or "paystack").lower()
    if name == "stripe":
        return StripeGateway(
            secret_key=config.get("STRIPE_SECRET_KEY"),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            currency=config.get("CURRENCY"),
        )
    if name == "paystack":
        return PaystackGateway(
            secret_key=config.get("PAYSTACK_SECRET_KEY"),
            base_url=config.get("PAYSTACK_BASE_URL") or PAYSTACK_BASE_URL,
            timeout=config.get("GATEWAY_TIMEOUT_SECONDS", 15),
            currency=config.get("CURRENCY"),
        )
    raise ValueError(f"Unknown PAYMENT_GATEWAY: {name}")
