from datetime import timedelta
from decimal import Decimal

from django.test import TestCase
from django.utils import timezone

from billing.errors import ConflictError, ValidationError
from billing.models import BillingJob, Subscription, Transaction, UsageTracking
from billing.services.ledger import Ledger, split_amount
from billing.services.pricing import (
    HANDLERS,
    BookingRequest,
    HourlyHandler,
    OneTimeHandler,
    PricingType,
    SubscriptionHandler,
    get_handler,
)
from billing.tests.helpers import FakeGateway, make_pricing, make_session, make_user
from general.models import Session


class HandlerRegistryTests(TestCase):
    def test_every_pricing_type_has_a_handler(self):
        self.assertEqual(set(HANDLERS), set(PricingType))

    def test_unknown_pricing_type(self):
        with self.assertRaises(ValidationError):
            get_handler("PAY_WHAT_YOU_WANT")


class OneTimeHandlerTests(TestCase):
    def setUp(self):
        self.mentor = make_user("mentor@example.com")
        self.mentee = make_user("mentee@example.com")
        self.pricing = make_pricing(self.mentor, PricingType.ONE_TIME, "25.00", duration=60)
        self.handler = OneTimeHandler(gateway=FakeGateway())

    def _booking(self, session, pricing=None):
        return BookingRequest(session=session, mentee=self.mentee, pricing_model=pricing or self.pricing)

    def test_valid_booking_amount_is_price(self):
        session = make_session(self.mentor, self.mentee, minutes=60)
        booking = self._booking(session)
        self.assertTrue(self.handler.validate_booking(booking).valid)
        self.assertEqual(self.handler.calculate_amount(booking), Decimal("25.00"))

    def test_duration_tolerance_is_five_minutes(self):
        self.assertTrue(self.handler.validate_booking(self._booking(make_session(self.mentor, self.mentee, minutes=65))).valid)
        check = self.handler.validate_booking(
            self._booking(make_session(self.mentor, self.mentee, start=timezone.now() + timedelta(days=5), minutes=66))
        )
        self.assertFalse(check.valid)
        self.assertEqual(check.reason, "invalid_duration")

    def test_overlapping_session_blocks_booking(self):
        start = timezone.now() + timedelta(days=3)
        make_session(self.mentor, make_user("other@example.com"), start=start + timedelta(minutes=30))
        session = make_session(self.mentor, self.mentee, start=start)
        check = self.handler.validate_booking(self._booking(session))
        self.assertFalse(check.valid)
        self.assertEqual(check.reason, "slot_unavailable")

    def test_cancelled_sessions_do_not_block(self):
        start = timezone.now() + timedelta(days=3)
        make_session(self.mentor, make_user("other@example.com"), start=start, status=Session.CANCELLED)
        session = make_session(self.mentor, self.mentee, start=start)
        self.assertTrue(self.handler.validate_booking(self._booking(session)).valid)

    def test_inactive_or_foreign_pricing_model_rejected(self):
        session = make_session(self.mentor, self.mentee)
        inactive = make_pricing(self.mentor, PricingType.ONE_TIME, "25.00", duration=60, is_active=False)
        foreign = make_pricing(make_user("x@example.com"), PricingType.ONE_TIME, "25.00", duration=60)
        self.assertEqual(self.handler.validate_booking(self._booking(session, inactive)).reason, "pricing_model_unavailable")
        self.assertEqual(self.handler.validate_booking(self._booking(session, foreign)).reason, "pricing_model_mismatch")

    def test_session_pricing_type_must_match_model(self):
        session = make_session(self.mentor, self.mentee, pricing_type="HOURLY")
        check = self.handler.validate_booking(self._booking(session))
        self.assertFalse(check.valid)
        self.assertEqual(check.reason, "pricing_model_mismatch")

    def test_agreed_price_must_match_model_price(self):
        session = make_session(self.mentor, self.mentee)
        session.agreed_price = Decimal("500.00")
        session.save()
        check = self.handler.validate_booking(self._booking(session))
        self.assertFalse(check.valid)
        self.assertEqual(check.reason, "amount_mismatch")

        session.agreed_price = Decimal("25.01")
        self.assertTrue(self.handler.validate_booking(self._booking(session)).valid)

    def test_retry_reuses_pending_charge(self):
        session = make_session(self.mentor, self.mentee)
        booking = self._booking(session)
        first = self.handler.process_payment(booking, Decimal("25.00"))
        second = self.handler.process_payment(booking, Decimal("30.00"))

        self.assertTrue(second["reused"])
        self.assertEqual(first["transaction"].pk, second["transaction"].pk)
        self.assertEqual(second["transaction"].amount, Decimal("30.00"))
        self.assertEqual(Transaction.objects.filter(session=session).count(), 1)

    def test_paid_session_cannot_be_charged_again(self):
        session = make_session(self.mentor, self.mentee)
        tx = self.handler.process_payment(self._booking(session), Decimal("25.00"))["transaction"]
        self.handler.ledger.complete(tx.pk)
        with self.assertRaises(ConflictError) as ctx:
            self.handler.process_payment(self._booking(session), Decimal("25.00"))
        self.assertEqual(ctx.exception.reason, "already_paid")


class HourlyHandlerTests(TestCase):
    def setUp(self):
        self.mentor = make_user("mentor@example.com")
        self.mentee = make_user("mentee@example.com")
        self.pricing = make_pricing(self.mentor, PricingType.HOURLY, "50.00")
        self.gateway = FakeGateway()
        self.handler = HourlyHandler(gateway=self.gateway)
        self.session = make_session(self.mentor, self.mentee, pricing_type="HOURLY")

    def _start(self, minutes=60, confirm=True):
        booking = BookingRequest(session=self.session, mentee=self.mentee, pricing_model=self.pricing, duration=minutes)
        amount = self.handler.calculate_amount(booking)
        processed = self.handler.process_payment(booking, amount)
        tx = processed["transaction"]
        if confirm:
            tx = self.handler.ledger.complete(tx.pk, payment_id="ch_hourly")
        return tx, processed["usage_tracking"]

    def test_duration_bounds(self):
        for minutes, valid in [(14, False), (15, True), (480, True), (481, False), (None, False)]:
            booking = BookingRequest(session=self.session, mentee=self.mentee, pricing_model=self.pricing, duration=minutes)
            self.assertEqual(self.handler.validate_booking(booking).valid, valid, minutes)

    def test_estimate_uses_exact_fractional_hours(self):
        self.assertEqual(HourlyHandler.cost(Decimal("50.00"), 60), Decimal("50.00"))
        self.assertEqual(HourlyHandler.cost(Decimal("50.00"), 45), Decimal("37.50"))
        self.assertEqual(HourlyHandler.cost(Decimal("40.00"), 25), Decimal("16.67"))

    def test_process_payment_creates_active_usage(self):
        tx, usage = self._start(confirm=False)
        self.assertEqual(tx.amount, Decimal("50.00"))
        self.assertEqual(usage.status, UsageTracking.ACTIVE)
        self.assertEqual(usage.total_cost, Decimal("50.00"))
        self.assertEqual(usage.estimated_minutes, 60)

    def test_shorter_session_appends_exact_credit(self):
        charge, usage = self._start()

        result = self.handler.settle(self.session, 45)

        adjustment = result["adjustment"]
        self.assertEqual(adjustment.kind, Transaction.ADJUSTMENT)
        self.assertEqual(adjustment.parent_id, charge.pk)
        self.assertEqual(adjustment.amount, Decimal("-12.50"))
        self.assertEqual(adjustment.status, Transaction.COMPLETED)
        self.assertEqual(adjustment.platform_fee + adjustment.mentor_earnings, Decimal("-12.50"))
        self.assertEqual(result["usage_tracking"].status, UsageTracking.COMPLETED)
        self.assertEqual(result["usage_tracking"].total_cost, Decimal("37.50"))
        self.assertIsNone(result["order"])

        charge.refresh_from_db()
        self.assertEqual(charge.amount, Decimal("50.00"))
        self.assertEqual(charge.status, Transaction.COMPLETED)

        job = BillingJob.objects.get(kind=BillingJob.GATEWAY_REFUND)
        self.assertEqual(job.payload["amount_minor"], 1250)
        self.assertEqual(job.payload["payment_id"], "ch_hourly")

        self.session.refresh_from_db()
        self.assertEqual(self.session.status, Session.COMPLETED)
        self.assertEqual(self.session.actual_duration, 45)

    def test_settled_fee_matches_direct_charge_of_actual_cost(self):
        charge, _ = self._start()
        adjustment = self.handler.settle(self.session, 45)["adjustment"]

        fee, earnings = split_amount(Decimal("37.50"))
        self.assertEqual(adjustment.platform_fee, Decimal("-1.87"))
        self.assertEqual(adjustment.mentor_earnings, Decimal("-10.63"))
        self.assertEqual(charge.platform_fee + adjustment.platform_fee, fee)
        self.assertEqual(charge.mentor_earnings + adjustment.mentor_earnings, earnings)

    def test_longer_session_appends_pending_charge_with_order(self):
        self._start()
        result = self.handler.settle(self.session, 90)

        adjustment = result["adjustment"]
        self.assertEqual(adjustment.amount, Decimal("25.00"))
        self.assertEqual(adjustment.status, Transaction.PENDING)
        self.assertEqual(result["order"]["amount"], 2500)
        self.assertEqual(Transaction.objects.get(pk=adjustment.pk).gateway_order_id, result["order"]["id"])

    def test_exact_estimate_needs_no_adjustment(self):
        self._start()
        result = self.handler.settle(self.session, 60)
        self.assertIsNone(result["adjustment"])
        self.assertEqual(Transaction.objects.filter(kind=Transaction.ADJUSTMENT).count(), 0)

    def test_settle_requires_confirmed_charge(self):
        self._start(confirm=False)
        with self.assertRaises(ConflictError) as ctx:
            self.handler.settle(self.session, 45)
        self.assertEqual(ctx.exception.reason, "charge_not_confirmed")

    def test_settle_twice_is_a_conflict(self):
        self._start()
        self.handler.settle(self.session, 45)
        with self.assertRaises(ConflictError) as ctx:
            self.handler.settle(self.session, 45)
        self.assertEqual(ctx.exception.reason, "usage_not_active")
        self.assertEqual(Transaction.objects.filter(kind=Transaction.ADJUSTMENT).count(), 1)

    def test_cancel_fails_unpaid_charge(self):
        tx, usage = self._start(confirm=False)
        result = self.handler.cancel(self.session)
        self.assertEqual(result["transaction"].status, Transaction.FAILED)
        self.assertEqual(result["usage_tracking"].status, UsageTracking.CANCELLED)
        self.session.refresh_from_db()
        self.assertEqual(self.session.status, Session.CANCELLED)

    def test_cancel_refunds_paid_charge(self):
        tx, usage = self._start()
        result = self.handler.cancel(self.session)
        self.assertEqual(result["transaction"].status, Transaction.REFUNDED)
        job = BillingJob.objects.get(dedupe_key=f"refund:transaction:{tx.pk}")
        self.assertEqual(job.payload["amount_minor"], 5000)
        with self.assertRaises(ConflictError):
            self.handler.cancel(self.session)


class SubscriptionHandlerTests(TestCase):
    def setUp(self):
        self.mentor = make_user("mentor@example.com")
        self.mentee = make_user("mentee@example.com")
        self.pricing = make_pricing(self.mentor, PricingType.SUBSCRIPTION, "200.00")
        self.gateway = FakeGateway()
        self.handler = SubscriptionHandler(gateway=self.gateway)

    def _subscribe(self):
        session = make_session(self.mentor, self.mentee, pricing_type="SUBSCRIPTION")
        booking = BookingRequest(session=session, mentee=self.mentee, pricing_model=self.pricing)
        tx = self.handler.process_payment(booking, self.handler.calculate_amount(booking))["transaction"]
        return self.handler.finalize(tx, "ch_sub")

    def test_finalize_starts_subscription(self):
        result = self._subscribe()
        subscription = result["subscription"]
        self.assertEqual(result["transaction"].status, Transaction.COMPLETED)
        self.assertEqual(subscription.status, Subscription.ACTIVE)
        self.assertEqual(subscription.amount, Decimal("200.00"))
        self.assertEqual(subscription.next_payment_date - subscription.start_date, timedelta(days=30))
        self.assertEqual(Transaction.objects.get(pk=result["transaction"].pk).subscription_id, subscription.pk)

    def test_finalize_replay_returns_same_subscription(self):
        result = self._subscribe()
        again = self.handler.finalize(result["transaction"], "ch_sub")
        self.assertEqual(again["subscription"].pk, result["subscription"].pk)
        self.assertEqual(Subscription.objects.count(), 1)

    def test_second_active_subscription_is_rejected_at_validation(self):
        self._subscribe()
        session = make_session(self.mentor, self.mentee, start=timezone.now() + timedelta(days=9), pricing_type="SUBSCRIPTION")
        check = self.handler.validate_booking(BookingRequest(session=session, mentee=self.mentee, pricing_model=self.pricing))
        self.assertFalse(check.valid)
        self.assertEqual(check.reason, "subscription_exists")

    def test_concurrent_duplicate_fails_charge_and_queues_refund(self):
        self._subscribe()
        # Second checkout that slipped past validation before the first subscription existed
        ledger = Ledger()
        other = ledger.create(
            mentor=self.mentor,
            payer=self.mentee,
            amount=Decimal("200.00"),
            pricing_type=PricingType.SUBSCRIPTION,
        )
        with self.assertRaises(ConflictError) as ctx:
            self.handler.finalize(other, "ch_dup")
        self.assertEqual(ctx.exception.reason, "duplicate_subscription")
        other.refresh_from_db()
        self.assertEqual(other.status, Transaction.FAILED)
        self.assertTrue(BillingJob.objects.filter(dedupe_key=f"refund:transaction:{other.pk}").exists())
        self.assertEqual(Subscription.objects.filter(status=Subscription.ACTIVE).count(), 1)

    def test_renew_twice_in_same_period_creates_one_renewal(self):
        subscription = self._subscribe()["subscription"]
        due = subscription.next_payment_date
        now = due + timedelta(minutes=1)

        first = self.handler.renew(subscription, now=now)
        second = self.handler.renew(subscription, now=now)

        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(first.kind, Transaction.RENEWAL)
        self.assertEqual(first.status, Transaction.PENDING)
        self.assertIsNotNone(Transaction.objects.get(pk=first.pk).gateway_order_id)
        self.assertEqual(Transaction.objects.filter(kind=Transaction.RENEWAL).count(), 1)
        subscription.refresh_from_db()
        self.assertEqual(subscription.next_payment_date, due + timedelta(days=30))

    def test_renew_before_due_is_noop(self):
        subscription = self._subscribe()["subscription"]
        self.assertIsNone(self.handler.renew(subscription, now=timezone.now()))

    def test_stale_period_compare_and_set_loses(self):
        subscription = self._subscribe()["subscription"]
        stale = subscription.next_payment_date - timedelta(days=1)
        self.assertFalse(self.handler.subscriptions.advance_period(subscription.pk, stale, stale, stale, stale))

    def test_cancel_keeps_charge(self):
        result = self._subscribe()
        cancelled = self.handler.cancel(result["subscription"], reason="moving on")
        self.assertEqual(cancelled.status, Subscription.CANCELLED)
        self.assertEqual(cancelled.cancel_reason, "moving on")
        self.assertIsNotNone(cancelled.cancelled_at)
        self.assertEqual(Transaction.objects.get(pk=result["transaction"].pk).status, Transaction.COMPLETED)
        with self.assertRaises(ConflictError):
            self.handler.cancel(result["subscription"])
