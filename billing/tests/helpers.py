import hashlib
import hmac
import time
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

from django.utils import timezone

from accounts.models import CustomUser, PricingModel
from billing.errors import GatewayError
from billing.services.gateway import StripeGateway
from general.models import Session


def make_user(email, **extra):
    return CustomUser.objects.create_user(email=email, password="pass12345", **extra)


def make_session(mentor, mentee, start=None, minutes=60, pricing_type="ONE_TIME", status=Session.SCHEDULED):
    start = start or timezone.now() + timedelta(days=2)
    return Session.objects.create(
        mentor=mentor,
        mentee=mentee,
        start_datetime=start,
        end_datetime=start + timedelta(minutes=minutes),
        pricing_type=pricing_type,
        status=status,
    )


def make_pricing(mentor, type, price, duration=None, is_active=True):
    return PricingModel.objects.create(
        mentor=mentor,
        type=type,
        price=Decimal(str(price)),
        duration=duration,
        is_active=is_active,
    )


class FakeGateway(StripeGateway):
    """In-memory stand-in for Stripe with the real signature helpers."""

    def __init__(self):
        super().__init__(api_key="sk_test_fake", webhook_secret="whsec_test", signing_secret="test-signing-secret")
        self.orders = {}
        self.payments = {}
        self.refunds = []
        self.transfers = []
        self.fail_with = None
        self._seq = 0

    def _next(self, prefix):
        self._seq += 1
        return f"{prefix}_test_{self._seq}"

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def create_order(self, amount_minor, currency, receipt, metadata=None):
        self._maybe_fail()
        order_id = self._next("pi")
        self.orders[order_id] = SimpleNamespace(
            id=order_id,
            amount=amount_minor,
            currency=currency,
            client_secret=f"{order_id}_secret",
            metadata=metadata or {},
        )
        return {
            "id": order_id,
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "client_secret": f"{order_id}_secret",
        }

    def get_order(self, order_id):
        self._maybe_fail()
        return self.orders[order_id]

    def pay(self, order_id, amount_minor=None, status="succeeded"):
        """Simulate the mentee paying an order. Returns (payment_id, signature)."""
        order = self.orders[order_id]
        payment_id = self._next("ch")
        self.payments[payment_id] = SimpleNamespace(
            id=payment_id,
            amount=order.amount if amount_minor is None else amount_minor,
            status=status,
            payment_intent=order_id,
        )
        return payment_id, self.sign(order_id, payment_id)

    def get_payment(self, payment_id):
        self._maybe_fail()
        return self.payments[payment_id]

    def create_refund(self, payment_id, amount_minor=None, metadata=None, idempotency_key=None):
        self._maybe_fail()
        refund = SimpleNamespace(id=self._next("re"), charge=payment_id, amount=amount_minor)
        self.refunds.append(refund)
        return refund

    def create_transfer(self, amount_minor, currency, destination, metadata=None, idempotency_key=None):
        self._maybe_fail()
        transfer = SimpleNamespace(id=self._next("tr"), amount=amount_minor, destination=destination)
        self.transfers.append(transfer)
        return transfer


def gateway_down():
    return GatewayError("Payment provider unavailable.", code="api_connection_error", gateway_status=503)


def stripe_signature_header(payload: str, secret: str, timestamp=None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook deliveries."""
    timestamp = int(timestamp or time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"
