"""
Payment gateway adapter, the only module that talks to Stripe.

An "order" is a PaymentIntent, a "payment" is a Charge. Amounts cross this boundary as
integer minor units; every stripe.StripeError is wrapped into GatewayError here.
Secret key is never exposed; only backend code uses this.
"""
import hashlib
import hmac
import logging
from decimal import ROUND_HALF_UP, Decimal

import stripe
from django.conf import settings

from billing.errors import GatewayError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
WEBHOOK_TOLERANCE_SECONDS = 300

# Stripe event type -> canonical gateway event name
EVENT_NAMES = {
    "payment_intent.amount_capturable_updated": "authorized",
    "charge.succeeded": "captured",
    "charge.failed": "failed",
    "payment_intent.succeeded": "order.paid",
}


def to_minor_units(amount) -> int:
    """Decimal major units -> integer minor units (12.345 -> 1235)."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> Decimal:
    return (Decimal(int(value)) / 100).quantize(CENT, rounding=ROUND_HALF_UP)


def is_configured() -> bool:
    """Return True if Stripe secret key is set and non-empty."""
    key = getattr(settings, "STRIPE_SECRET_KEY", None) or ""
    return bool(key.strip())


def _wrap(exc: stripe.StripeError, action: str) -> GatewayError:
    msg = getattr(exc, "user_message", None) or str(exc)
    if not msg or "api" in msg.lower():
        msg = f"Payment provider error during {action}. Please try again."
    logger.warning("gateway: %s failed code=%s status=%s", action, exc.code, exc.http_status)
    return GatewayError(msg, code=exc.code, gateway_status=exc.http_status)


class StripeGateway:
    def __init__(self, api_key=None, webhook_secret=None, signing_secret=None):
        self.api_key = api_key if api_key is not None else getattr(settings, "STRIPE_SECRET_KEY", "")
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else getattr(settings, "STRIPE_WEBHOOK_SECRET", "")
        )
        self.signing_secret = (
            signing_secret if signing_secret is not None else getattr(settings, "PAYMENT_SIGNING_SECRET", "")
        )

    def _require_key(self):
        if not (self.api_key or "").strip():
            raise GatewayError("Payment is not configured. Please try again later.", code="not_configured")

    def create_order(self, amount_minor: int, currency: str, receipt: str, metadata: dict = None) -> dict:
        """Create a PaymentIntent (not confirmed). Returns {id, amount, currency, receipt, client_secret}."""
        self._require_key()
        if amount_minor <= 0:
            raise GatewayError("Invalid amount for payment.", code="invalid_amount")
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=amount_minor,
                currency=currency,
                confirm=False,
                description=receipt,
                metadata=dict(metadata or {}, receipt=receipt),
                payment_method_types=["card"],
                idempotency_key=f"order:{receipt}:{amount_minor}",
            )
        except stripe.StripeError as e:
            raise _wrap(e, "create_order")
        return {
            "id": intent.id,
            "amount": intent.amount,
            "currency": intent.currency,
            "receipt": receipt,
            "client_secret": intent.client_secret,
        }

    def get_order(self, order_id: str):
        self._require_key()
        try:
            return stripe.PaymentIntent.retrieve(order_id, api_key=self.api_key)
        except stripe.StripeError as e:
            raise _wrap(e, "get_order")

    def get_payment(self, payment_id: str):
        self._require_key()
        try:
            return stripe.Charge.retrieve(payment_id, api_key=self.api_key)
        except stripe.StripeError as e:
            raise _wrap(e, "get_payment")

    def capture_payment(self, payment_id: str, amount_minor: int = None):
        self._require_key()
        kwargs = {"api_key": self.api_key}
        if amount_minor is not None:
            kwargs["amount"] = amount_minor
        try:
            return stripe.Charge.capture(payment_id, **kwargs)
        except stripe.StripeError as e:
            raise _wrap(e, "capture_payment")

    def create_refund(self, payment_id: str, amount_minor: int = None, metadata: dict = None, idempotency_key=None):
        self._require_key()
        kwargs = {"api_key": self.api_key, "charge": payment_id, "metadata": metadata or {}}
        if amount_minor is not None:
            kwargs["amount"] = amount_minor
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key
        try:
            return stripe.Refund.create(**kwargs)
        except stripe.StripeError as e:
            raise _wrap(e, "create_refund")

    def create_transfer(self, amount_minor: int, currency: str, destination: str, metadata: dict = None, idempotency_key=None):
        """Move mentor earnings to their connected account."""
        self._require_key()
        kwargs = {
            "api_key": self.api_key,
            "amount": amount_minor,
            "currency": currency,
            "destination": destination,
            "metadata": metadata or {},
        }
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key
        try:
            return stripe.Transfer.create(**kwargs)
        except stripe.StripeError as e:
            raise _wrap(e, "create_transfer")

    def sign(self, order_id: str, payment_id: str) -> str:
        return hmac.new(
            (self.signing_secret or "").encode(),
            f"{order_id}|{payment_id}".encode(),
            hashlib.sha256,
        ).hexdigest()

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Checkout confirmation signature: HMAC-SHA256 of "order_id|payment_id"."""
        if not self.signing_secret or not signature:
            return False
        return hmac.compare_digest(self.sign(order_id, payment_id), str(signature))

    def verify_webhook_signature(self, payload, signature_header: str) -> bool:
        """Verify the Stripe-Signature header against the raw request body."""
        if not self.webhook_secret or not signature_header:
            return False
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                return False
        try:
            return stripe.WebhookSignature.verify_header(
                payload, signature_header, self.webhook_secret, tolerance=WEBHOOK_TOLERANCE_SECONDS
            )
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.warning("gateway: webhook signature verification failed %s", e)
            return False

    @staticmethod
    def translate_event(event: dict):
        """Stripe event -> (canonical name, entity dict). Name is None for events we do not handle."""
        event_type = event.get("type", "")
        entity = (event.get("data") or {}).get("object") or {}
        return EVENT_NAMES.get(event_type), entity
