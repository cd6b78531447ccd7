"""
Pricing model handlers. Each pricing type validates a booking, prices it, opens the pending
charge with its side rows and finalizes it once the mentee's payment is confirmed.

Hourly sessions are billed on an estimate and settled afterwards with an append-only
adjustment transaction for the difference.
"""
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from django.db import models, transaction
from django.utils import timezone

from audit.services import AuditTrail
from billing import config
from billing.errors import ConflictError, GatewayError, ValidationError
from billing.models import Transaction, UsageTracking
from billing.repositories import SubscriptionRepository, TransactionRepository, UsageTrackingRepository
from billing.services.gateway import StripeGateway, to_minor_units
from billing.services.jobs import JobQueue
from billing.services.ledger import CENT, Ledger, quantize, split_amount
from general import sessions

logger = logging.getLogger(__name__)


class PricingType(models.TextChoices):
    ONE_TIME = "ONE_TIME", "One-time session"
    HOURLY = "HOURLY", "Hourly"
    SUBSCRIPTION = "SUBSCRIPTION", "Monthly subscription"


@dataclass
class BookingRequest:
    session: object  # general.Session
    mentee: object
    pricing_model: object  # accounts.PricingModel
    duration: int = None  # estimated minutes (hourly)
    payment_method: str = "card"


@dataclass
class BookingCheck:
    valid: bool
    error: str = ""
    reason: str = ""


OK = BookingCheck(valid=True)


def receipt_for(prefix, obj_id) -> str:
    return f"{prefix}_{obj_id}_{int(time.time())}"


class PricingHandler:
    pricing_type = None

    def __init__(self, ledger=None, gateway=None, transactions=None, usage=None, subscriptions=None, jobs=None, audit=None):
        self.audit = audit or AuditTrail()
        self.gateway = gateway or StripeGateway()
        self.transactions = transactions or TransactionRepository()
        self.usage = usage or UsageTrackingRepository()
        self.subscriptions = subscriptions or SubscriptionRepository()
        self.ledger = ledger or Ledger(transactions=self.transactions, audit=self.audit)
        self.jobs = jobs or JobQueue(gateway=self.gateway, audit=self.audit)

    def _check_pricing_model(self, booking) -> BookingCheck:
        model = booking.pricing_model
        if model.type != self.pricing_type or not model.is_active:
            return BookingCheck(False, "This pricing option is not available.", "pricing_model_unavailable")
        session = booking.session
        if model.mentor_id != session.mentor_id:
            return BookingCheck(False, "Pricing model does not belong to this mentor.", "pricing_model_mismatch")
        if session.pricing_type and session.pricing_type != model.type:
            return BookingCheck(False, "Pricing model does not match the session's pricing type.", "pricing_model_mismatch")
        # agreed_price is the unit price agreed at booking: session price, hourly rate or monthly fee
        if session.agreed_price is not None and abs(quantize(session.agreed_price) - quantize(model.price)) > CENT:
            return BookingCheck(False, "Price does not match the price agreed for this session.", "amount_mismatch")
        return OK

    def validate_booking(self, booking) -> BookingCheck:
        return self._check_pricing_model(booking)

    def calculate_amount(self, booking) -> Decimal:
        return quantize(booking.pricing_model.price)

    def process_payment(self, booking, amount, actor=None) -> dict:
        tx, reused = self._pending_charge(booking, amount, actor)
        return {"transaction": tx, "reused": reused}

    def finalize(self, tx, payment_id="", actor=None) -> dict:
        return {"transaction": self.ledger.complete(tx.pk, payment_id, actor=actor)}

    def _pending_charge(self, booking, amount, actor):
        """Reuse the session's pending charge on retry (re-priced if needed); never open a second one."""
        session = booking.session
        existing = self.transactions.live_charge_for_session(session.pk)
        if existing is not None and existing.status == Transaction.COMPLETED:
            raise ConflictError("This session has already been paid.", "already_paid")
        if existing is not None and existing.pricing_type != self.pricing_type:
            # Mentee switched pricing option; the old pending charge is abandoned
            self.ledger.fail(existing.pk, "pricing_changed", actor=actor)
            existing = None
        if existing is not None:
            if existing.amount != amount:
                existing = self.ledger.adjust(existing.pk, amount, actor=actor)
                # The old order was for the old amount
                self.transactions.set_order(existing.pk, None)
                existing.gateway_order_id = None
            return existing, True
        tx = self.ledger.create(
            session=session,
            mentor=session.mentor,
            payer=booking.mentee,
            amount=amount,
            kind=Transaction.CHARGE,
            pricing_type=self.pricing_type,
            payment_method=booking.payment_method,
            actor=actor,
        )
        return tx, False

    def open_order(self, tx, receipt) -> dict:
        """Create the gateway order for a pending transaction, or return the one it already has."""
        if tx.gateway_order_id:
            intent = self.gateway.get_order(tx.gateway_order_id)
            return {
                "id": intent.id,
                "amount": intent.amount,
                "currency": intent.currency,
                "receipt": tx.receipt,
                "client_secret": intent.client_secret,
            }
        order = self.gateway.create_order(
            to_minor_units(tx.amount),
            tx.currency,
            receipt,
            metadata={
                "transaction_id": str(tx.pk),
                "mentor_id": str(tx.mentor_id),
                "payer_id": str(tx.payer_id),
                "pricing_type": str(tx.pricing_type),
            },
        )
        self.transactions.set_order(tx.pk, order["id"], receipt)
        tx.gateway_order_id = order["id"]
        tx.receipt = receipt
        return order


class OneTimeHandler(PricingHandler):
    pricing_type = PricingType.ONE_TIME

    def validate_booking(self, booking) -> BookingCheck:
        check = self._check_pricing_model(booking)
        if not check.valid:
            return check
        session = booking.session
        expected = booking.pricing_model.duration
        tolerance = int(config.get("DURATION_TOLERANCE_MINUTES"))
        if expected and abs(session.scheduled_minutes - expected) > tolerance:
            return BookingCheck(False, f"Session must be {expected} minutes long.", "invalid_duration")
        if sessions.has_overlapping_session(session.mentor, session.start_datetime, session.end_datetime, exclude_id=session.pk):
            return BookingCheck(False, "The mentor is not available at this time.", "slot_unavailable")
        return OK


class HourlyHandler(PricingHandler):
    pricing_type = PricingType.HOURLY

    def validate_booking(self, booking) -> BookingCheck:
        check = self._check_pricing_model(booking)
        if not check.valid:
            return check
        low, high = int(config.get("HOURLY_MIN_MINUTES")), int(config.get("HOURLY_MAX_MINUTES"))
        if booking.duration is None or not (low <= int(booking.duration) <= high):
            return BookingCheck(False, f"Duration must be between {low} and {high} minutes.", "invalid_duration")
        return OK

    @staticmethod
    def cost(rate, minutes) -> Decimal:
        """Exact fractional hours, rounded half-up to the cent."""
        return quantize(Decimal(str(rate)) * Decimal(int(minutes)) / Decimal(60))

    def calculate_amount(self, booking) -> Decimal:
        return self.cost(booking.pricing_model.price, booking.duration)

    def process_payment(self, booking, amount, actor=None) -> dict:
        with transaction.atomic():
            tx, reused = self._pending_charge(booking, amount, actor)
            rate = quantize(booking.pricing_model.price)
            usage = getattr(tx, "usage_tracking", None) if reused else None
            if usage is None:
                usage = self.usage.create(
                    transaction=tx,
                    session=booking.session,
                    estimated_minutes=int(booking.duration),
                    hourly_rate=rate,
                    total_cost=amount,
                )
            else:
                self.usage.update_estimate(usage.pk, int(booking.duration), rate, amount)
                usage.refresh_from_db()
        return {"transaction": tx, "usage_tracking": usage, "reused": reused}

    def settle(self, session, actual_minutes, actor=None) -> dict:
        """
        Close the usage record with the real duration. A shorter session appends a completed
        credit adjustment and queues the gateway refund; a longer one appends a pending charge
        with its own order for the mentee to pay.
        """
        if actual_minutes is None or int(actual_minutes) <= 0:
            raise ValidationError("Actual duration must be a positive number of minutes.", "invalid_duration")
        actual_minutes = int(actual_minutes)
        usage = self.usage.for_session(session.pk)
        if usage.status != UsageTracking.ACTIVE:
            raise ConflictError(f"Usage tracking is {usage.status}.", "usage_not_active")
        charge = self.transactions.get(usage.transaction_id)
        if charge.status != Transaction.COMPLETED:
            raise ConflictError("The hourly charge has not been confirmed yet.", "charge_not_confirmed")

        now = timezone.now()
        actual_cost = self.cost(usage.hourly_rate, actual_minutes)
        difference = actual_cost - usage.total_cost
        adjustment = None
        with transaction.atomic():
            if not self.usage.mark_completed(usage.pk, actual_minutes, actual_cost, now):
                raise ConflictError("Usage tracking is no longer active.", "usage_not_active")
            if difference != 0:
                # Charge plus adjustment must split like a direct charge of the actual cost
                actual_fee, _ = split_amount(actual_cost)
                adjustment = self.ledger.create(
                    session=session,
                    parent=charge,
                    mentor=session.mentor,
                    payer=charge.payer,
                    amount=difference,
                    platform_fee=actual_fee - charge.platform_fee,
                    kind=Transaction.ADJUSTMENT,
                    pricing_type=self.pricing_type,
                    payment_method=charge.payment_method,
                    currency=charge.currency,
                    actor=actor,
                )
                if difference < 0:
                    adjustment = self.ledger.complete(adjustment.pk, actor=actor)
                    self.jobs.enqueue_refund(charge, -difference, f"refund:adjustment:{adjustment.pk}")
            sessions.record_completion(session, actual_minutes, now)
            self.audit.log(
                actor,
                "usage_settled",
                "usage_tracking",
                usage.pk,
                {
                    "estimated_minutes": usage.estimated_minutes,
                    "actual_minutes": actual_minutes,
                    "estimated_cost": str(usage.total_cost),
                    "actual_cost": str(actual_cost),
                    "adjustment": str(difference),
                },
            )

        order = None
        if adjustment is not None and difference > 0:
            order = self.open_order(adjustment, receipt_for("session", session.pk))
        usage.refresh_from_db()
        return {"transaction": charge, "usage_tracking": usage, "adjustment": adjustment, "order": order}

    def cancel(self, session, actor=None) -> dict:
        """Cancel an unsettled hourly session: fail the charge if unpaid, refund it if paid."""
        usage = self.usage.for_session(session.pk)
        if usage.status != UsageTracking.ACTIVE:
            raise ConflictError(f"Usage tracking is {usage.status}.", "usage_not_active")
        with transaction.atomic():
            if not self.usage.mark_cancelled(usage.pk, timezone.now()):
                raise ConflictError("Usage tracking is no longer active.", "usage_not_active")
            charge = self.transactions.get(usage.transaction_id)
            if charge.status == Transaction.PENDING:
                charge = self.ledger.fail(charge.pk, "session_cancelled", actor=actor)
            elif charge.status == Transaction.COMPLETED:
                charge = self.ledger.refund(charge.pk, actor=actor)
                self.jobs.enqueue_refund(charge, charge.amount, f"refund:transaction:{charge.pk}")
            sessions.record_cancellation(session)
            self.audit.log(actor, "usage_cancelled", "usage_tracking", usage.pk, {"charge_status": charge.status})
        usage.refresh_from_db()
        return {"transaction": charge, "usage_tracking": usage}


class SubscriptionHandler(PricingHandler):
    pricing_type = PricingType.SUBSCRIPTION

    @staticmethod
    def period() -> timedelta:
        return timedelta(days=int(config.get("SUBSCRIPTION_PERIOD_DAYS")))

    def validate_booking(self, booking) -> BookingCheck:
        check = self._check_pricing_model(booking)
        if not check.valid:
            return check
        if self.subscriptions.has_active(booking.mentee, booking.session.mentor):
            return BookingCheck(False, "You already have an active subscription with this mentor.", "subscription_exists")
        return OK

    def finalize(self, tx, payment_id="", actor=None) -> dict:
        """Complete the first charge and start the subscription in one DB transaction."""
        if tx.kind != Transaction.CHARGE:
            return super().finalize(tx, payment_id, actor)
        try:
            with transaction.atomic():
                current = self.transactions.get_for_update(tx.pk)
                if current.status == Transaction.COMPLETED:
                    return {"transaction": current, "subscription": current.subscription}
                completed = self.ledger.complete(tx.pk, payment_id, actor=actor)
                now = timezone.now()
                next_payment = now + self.period()
                subscription = self.subscriptions.create(
                    mentee_id=completed.payer_id,
                    mentor_id=completed.mentor_id,
                    amount=completed.amount,
                    currency=completed.currency,
                    payment_method=completed.payment_method,
                    start_date=now,
                    next_payment_date=next_payment,
                    current_period_start=now,
                    current_period_end=next_payment,
                )
                Transaction.objects.filter(pk=completed.pk).update(subscription=subscription)
                completed.subscription = subscription
                self.audit.log(actor, "subscription_started", "subscription", subscription.pk, {"transaction_id": completed.pk})
        except ConflictError as e:
            if e.reason != "duplicate_subscription":
                raise
            failed = self.ledger.fail(tx.pk, "duplicate_subscription", actor=actor)
            failed.gateway_payment_id = payment_id or failed.gateway_payment_id
            if failed.gateway_payment_id:
                self.jobs.enqueue_refund(failed, failed.amount, f"refund:transaction:{failed.pk}")
            raise
        return {"transaction": completed, "subscription": subscription}

    def renew(self, subscription, now=None, actor=None):
        """
        Open the next period's RENEWAL charge once the subscription is due. The period advance is a
        compare-and-set on next_payment_date, so a second call for the same period returns None.
        """
        now = now or timezone.now()
        current = self.subscriptions.get(subscription.pk)
        if current.status != current.ACTIVE:
            raise ConflictError("Subscription is not active.", "subscription_not_active")
        if now < current.next_payment_date:
            return None
        due = current.next_payment_date
        new_next = due + self.period()
        with transaction.atomic():
            if not self.subscriptions.advance_period(current.pk, due, new_next, due, new_next):
                return None
            tx = self.ledger.create(
                subscription=current,
                mentor=current.mentor,
                payer=current.mentee,
                amount=current.amount,
                kind=Transaction.RENEWAL,
                pricing_type=self.pricing_type,
                payment_method=current.payment_method,
                currency=current.currency,
                actor=actor,
            )
        try:
            self.open_order(tx, receipt_for("subscription", current.pk))
        except GatewayError as e:
            # The renewal stays PENDING; the mentee can pay it from the billing page
            logger.warning("pricing: renewal order for subscription=%s tx=%s not created: %s", current.pk, tx.pk, e)
        return tx

    def cancel(self, subscription, reason="", actor=None):
        if not self.subscriptions.mark_cancelled(subscription.pk, timezone.now(), reason):
            raise ConflictError("Subscription is not active.", "subscription_not_active")
        self.audit.log(actor, "subscription_cancelled", "subscription", subscription.pk, {"reason": reason})
        return self.subscriptions.get(subscription.pk)


HANDLERS = {
    PricingType.ONE_TIME: OneTimeHandler,
    PricingType.HOURLY: HourlyHandler,
    PricingType.SUBSCRIPTION: SubscriptionHandler,
}


def get_handler(pricing_type, **deps) -> PricingHandler:
    try:
        handler_class = HANDLERS[PricingType(pricing_type)]
    except ValueError:
        raise ValidationError(f"Unknown pricing type {pricing_type}.", "unknown_pricing_type")
    return handler_class(**deps)
