"""
Payment service: the API the views call. Wires ledger, gateway, risk engine, pricing handlers
and payout batcher together for one request, and enforces who may do what.

Failures are audited here, after any rolled-back DB transaction, so the record survives.
"""
import logging
from datetime import timedelta
from decimal import Decimal

from django.db.models import Sum
from django.utils import timezone

from accounts.models import PricingModel
from audit.services import AuditTrail
from billing import config
from billing.errors import AuthorizationError, BillingError, ConflictError, NotFoundError, RiskRejection, ValidationError
from billing.models import Payout, Transaction
from billing.repositories import (
    PayoutRepository,
    SubscriptionRepository,
    TransactionRepository,
    UsageTrackingRepository,
)
from billing.services.gateway import StripeGateway, to_minor_units
from billing.services.jobs import JobQueue
from billing.services.ledger import Ledger, quantize, split_amount
from billing.services.payouts import PayoutBatcher
from billing.services.pricing import BookingRequest, PricingType, get_handler, receipt_for
from billing.services.risk import RiskEngine
from general.models import Session

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def _money(value) -> str:
    return str(quantize(value or ZERO))


def _is_staff(user) -> bool:
    return bool(getattr(user, "is_staff", False))


class PaymentService:
    def __init__(self, audit=None, gateway=None):
        self.audit = audit or AuditTrail()
        self.gateway = gateway or StripeGateway()
        self.transactions = TransactionRepository()
        self.payouts_repo = PayoutRepository()
        self.subscriptions = SubscriptionRepository()
        self.usage = UsageTrackingRepository()
        self.risk = RiskEngine(transactions=self.transactions, audit=self.audit)
        self.ledger = Ledger(
            transactions=self.transactions,
            payouts=self.payouts_repo,
            audit=self.audit,
            on_complete=[self.risk.commit_spend],
        )
        self.jobs = JobQueue(gateway=self.gateway, audit=self.audit)
        self.payouts = PayoutBatcher(
            transactions=self.transactions,
            payouts=self.payouts_repo,
            gateway=self.gateway,
            audit=self.audit,
            jobs=self.jobs,
        )

    def handler(self, pricing_type):
        return get_handler(
            pricing_type,
            ledger=self.ledger,
            gateway=self.gateway,
            transactions=self.transactions,
            usage=self.usage,
            subscriptions=self.subscriptions,
            jobs=self.jobs,
            audit=self.audit,
        )

    # Lookups and permissions

    def _get_session(self, session_id) -> Session:
        try:
            return Session.objects.select_related("mentor", "mentee").get(pk=session_id)
        except (Session.DoesNotExist, ValueError, TypeError):
            raise NotFoundError("Session not found.", "session_not_found")

    @staticmethod
    def _require_mentor_or_staff(user, mentor_id):
        if not (_is_staff(user) or getattr(user, "pk", None) == mentor_id):
            raise AuthorizationError("Only the mentor can do this.", "not_mentor")

    # Checkout

    def initialize_payment(self, session_id, user, pricing_model_id, duration=None, payment_method="card") -> dict:
        """
        Validate the booking, screen it for risk, open (or reuse) the pending charge and its
        gateway order. Retrying for the same session reuses the pending charge.
        """
        try:
            return self._initialize_payment(session_id, user, pricing_model_id, duration, payment_method)
        except BillingError as e:
            self.audit.log(
                user,
                "payment_initialization_failed",
                "transaction",
                None,
                {"session_id": session_id, "pricing_model_id": pricing_model_id, "reason": e.reason},
            )
            raise

    def _initialize_payment(self, session_id, user, pricing_model_id, duration, payment_method):
        session = self._get_session(session_id)
        if session.mentee_id != getattr(user, "pk", None):
            raise AuthorizationError("Only the session's mentee can pay for it.", "not_session_mentee")
        pricing_model = PricingModel.objects.filter(pk=pricing_model_id).first()
        if pricing_model is None:
            raise NotFoundError("Pricing model not found.", "pricing_model_not_found")

        handler = self.handler(pricing_model.type)
        booking = BookingRequest(
            session=session,
            mentee=user,
            pricing_model=pricing_model,
            duration=duration,
            payment_method=payment_method,
        )
        check = handler.validate_booking(booking)
        if not check.valid:
            raise ValidationError(check.error, check.reason)

        amount = handler.calculate_amount(booking)
        currency = config.get("CURRENCY")
        if not config.payment_method_available(payment_method, amount, currency):
            raise ValidationError("This payment method is not available for this amount.", "payment_method_unavailable")

        self.risk.screen(user, amount, payment_method)
        processed = handler.process_payment(booking, amount, actor=user)
        tx = processed["transaction"]
        order = handler.open_order(tx, receipt_for("session", session.pk))

        platform_fee, mentor_earnings = split_amount(amount)
        result = {
            "order": order,
            "available_payment_methods": config.available_payment_methods(amount, currency),
            "pricing_summary": {
                "pricing_type": str(pricing_model.type),
                "base_price": _money(pricing_model.price),
                "duration": duration if duration is not None else pricing_model.duration,
                "amount": _money(amount),
                "platform_fee": _money(platform_fee),
                "mentor_earnings": _money(mentor_earnings),
                "currency": currency,
                "processing_fee_rate": config.PAYMENT_METHODS[payment_method]["processing_fee"],
            },
            "transaction": tx,
        }
        if "usage_tracking" in processed:
            result["usage_tracking"] = processed["usage_tracking"]
        logger.info("payments: initialized tx=%s order=%s amount=%s", tx.pk, order["id"], amount)
        return result

    def confirm_payment(self, order_id, gateway_payment_id, signature, user) -> dict:
        try:
            return self._confirm_payment(order_id, gateway_payment_id, signature, user)
        except BillingError as e:
            self.audit.log(
                user,
                "payment_confirmation_failed",
                "transaction",
                None,
                {"order_id": order_id, "payment_id": gateway_payment_id, "reason": e.reason},
            )
            raise

    def _confirm_payment(self, order_id, payment_id, signature, user):
        tx = self.transactions.get_by_order(order_id)
        if tx.payer_id != getattr(user, "pk", None):
            raise AuthorizationError("Only the payer can confirm this payment.", "not_payer")
        if not self.gateway.verify_signature(order_id, payment_id, signature):
            self.audit.log(user, "invalid_signature", "signature", tx.pk, {"order_id": order_id, "payment_id": payment_id})
            raise ValidationError("Invalid payment signature.", "invalid_signature")
        if tx.status == Transaction.COMPLETED:
            return {"success": True, "transaction": tx}

        try:
            payment = self.gateway.get_payment(payment_id)
        except BillingError as e:
            self.ledger.fail(tx.pk, f"gateway_error: {getattr(e, 'code', None) or e.message}"[:255], actor=user)
            raise
        intent_id = getattr(payment, "payment_intent", None)
        if (
            payment.status != "succeeded"
            or payment.amount != to_minor_units(tx.amount)
            or (intent_id and intent_id != order_id)
        ):
            self.ledger.fail(tx.pk, "payment_mismatch", actor=user)
            raise ValidationError("Payment does not match this order.", "payment_mismatch")

        result = self.finalize(tx, payment_id, actor=user)
        result["success"] = True
        return result

    def finalize(self, tx, payment_id, actor=None) -> dict:
        """
        Run the pricing handler's completion for a paid transaction. If the commit-time risk cap
        vetoes it, the charge fails and the captured money is refunded.
        """
        handler = self.handler(tx.pricing_type or PricingType.ONE_TIME)
        try:
            return handler.finalize(tx, payment_id, actor=actor)
        except RiskRejection as e:
            failed = self.ledger.fail(tx.pk, e.reason, actor=actor)
            failed.gateway_payment_id = payment_id
            self.jobs.enqueue_refund(failed, failed.amount, f"refund:transaction:{failed.pk}")
            raise

    # Hourly sessions

    def settle_hourly_session(self, session_id, actual_minutes, user) -> dict:
        session = self._get_session(session_id)
        self._require_mentor_or_staff(user, session.mentor_id)
        try:
            return self.handler(PricingType.HOURLY).settle(session, actual_minutes, actor=user)
        except BillingError as e:
            self.audit.log(user, "usage_settlement_failed", "usage_tracking", None, {"session_id": session.pk, "reason": e.reason})
            raise

    def cancel_hourly_session(self, session_id, user) -> dict:
        session = self._get_session(session_id)
        if not (_is_staff(user) or getattr(user, "pk", None) in (session.mentor_id, session.mentee_id)):
            raise AuthorizationError("You cannot cancel this session.", "not_participant")
        return self.handler(PricingType.HOURLY).cancel(session, actor=user)

    # Subscriptions

    def cancel_subscription(self, subscription_id, user, reason="") -> object:
        subscription = self.subscriptions.get(subscription_id)
        if not (_is_staff(user) or getattr(user, "pk", None) == subscription.mentee_id):
            raise AuthorizationError("Only the subscriber can cancel this subscription.", "not_subscriber")
        return self.handler(PricingType.SUBSCRIPTION).cancel(subscription, reason, actor=user)

    def renew_due_subscriptions(self, now=None) -> dict:
        """Open renewal charges for every due subscription. Safe to re-run."""
        now = now or timezone.now()
        handler = self.handler(PricingType.SUBSCRIPTION)
        counts = {"renewed": 0, "skipped": 0}
        for subscription in self.subscriptions.due(now):
            try:
                renewal = handler.renew(subscription, now=now)
            except ConflictError:
                # Cancelled since the due query ran
                renewal = None
            if renewal:
                counts["renewed"] += 1
            else:
                counts["skipped"] += 1
        return counts

    # Mentor earnings

    def request_payout(self, mentor, amount, user=None, payout_method=None) -> dict:
        self._require_mentor_or_staff(user or mentor, mentor.pk)
        try:
            amount = Decimal(str(amount))
        except ArithmeticError:
            raise ValidationError("Invalid payout amount.", "invalid_amount")
        try:
            return self.payouts.request_payout(mentor, amount, payout_method=payout_method, actor=user or mentor)
        except BillingError as e:
            self.audit.log(user or mentor, "payout_request_failed", "payout", None, {"amount": str(amount), "reason": e.reason})
            raise

    def get_earnings(self, mentor, user=None) -> dict:
        self._require_mentor_or_staff(user or mentor, mentor.pk)
        completed = self.transactions.completed_for_mentor(mentor)
        total = completed.aggregate(total=Sum("mentor_earnings"))["total"] or ZERO
        sessions_completed = (
            completed.filter(kind=Transaction.CHARGE, session__isnull=False).values("session").distinct().count()
        )
        since = timezone.now() - timedelta(days=30)
        last_30_days = completed.filter(completed_at__gte=since).aggregate(total=Sum("mentor_earnings"))["total"] or ZERO
        return {
            "total_earnings": _money(total),
            "available_for_payout": _money(self.payouts.available_for_payout(mentor)),
            "pending_payouts": _money(self.payouts_repo.total(mentor, Payout.PENDING)),
            "processed_payouts": _money(self.payouts_repo.total(mentor, Payout.COMPLETED)),
            "sessions_completed": sessions_completed,
            "average_session_earnings": _money(total / sessions_completed) if sessions_completed else _money(ZERO),
            "projected_monthly_earnings": _money(last_30_days),
        }

    def generate_tax_report(self, mentor, year, month=None, user=None) -> dict:
        self._require_mentor_or_staff(user or mentor, mentor.pk)
        if month is not None and not 1 <= int(month) <= 12:
            raise ValidationError("Month must be between 1 and 12.", "invalid_month")
        rows = self.transactions.completed_for_mentor(mentor).filter(completed_at__year=int(year))
        if month is not None:
            rows = rows.filter(completed_at__month=int(month))
        rows = rows.order_by("completed_at", "id")
        totals = rows.aggregate(
            gross=Sum("amount"),
            fees=Sum("platform_fee"),
            earnings=Sum("mentor_earnings"),
        )
        return {
            "mentor_id": mentor.pk,
            "year": int(year),
            "month": int(month) if month is not None else None,
            "gross_revenue": _money(totals["gross"]),
            "platform_fees": _money(totals["fees"]),
            "total_earnings": _money(totals["earnings"]),
            "sessions_count": rows.filter(session__isnull=False).values("session").distinct().count(),
            "transactions": [
                {
                    "id": tx.pk,
                    "kind": tx.kind,
                    "session_id": tx.session_id,
                    "amount": _money(tx.amount),
                    "platform_fee": _money(tx.platform_fee),
                    "mentor_earnings": _money(tx.mentor_earnings),
                    "completed_at": tx.completed_at.isoformat(),
                }
                for tx in rows
            ],
        }

    def get_receipt(self, transaction_id, user) -> dict:
        tx = self.transactions.get(transaction_id)
        if not (_is_staff(user) or getattr(user, "pk", None) in (tx.payer_id, tx.mentor_id)):
            raise AuthorizationError("You cannot view this receipt.", "not_participant")
        return {
            "transaction_id": tx.pk,
            "receipt": tx.receipt,
            "kind": tx.kind,
            "pricing_type": tx.pricing_type,
            "session_id": tx.session_id,
            "subscription_id": tx.subscription_id,
            "status": tx.status,
            "amount": _money(tx.amount),
            "platform_fee": _money(tx.platform_fee),
            "currency": tx.currency,
            "payment_method": tx.payment_method,
            "gateway_payment_id": tx.gateway_payment_id,
            "created_at": tx.created_at.isoformat(),
            "completed_at": tx.completed_at.isoformat() if tx.completed_at else None,
            "refunded_at": tx.refunded_at.isoformat() if tx.refunded_at else None,
        }
