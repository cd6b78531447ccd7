from decimal import Decimal

from django.test import TestCase

from accounts.models import MentorProfile
from billing.errors import ConflictError, ValidationError
from billing.models import BillingJob, Payout, PayoutItem, Transaction
from billing.repositories import PayoutRepository
from billing.services.ledger import Ledger
from billing.services.payouts import PayoutBatcher
from billing.tests.helpers import FakeGateway, gateway_down, make_user


class PayoutTestCase(TestCase):
    def setUp(self):
        self.mentor = make_user("mentor@example.com")
        self.mentee = make_user("mentee@example.com")
        self.profile = MentorProfile.objects.create(user=self.mentor, first_name="Ada", last_name="Mentor")
        self.ledger = Ledger()
        self.gateway = FakeGateway()
        self.batcher = PayoutBatcher(gateway=self.gateway)

    def _earn(self, amount="25.00"):
        tx = self.ledger.create(mentor=self.mentor, payer=self.mentee, amount=Decimal(amount))
        return self.ledger.complete(tx.pk, payment_id=f"ch_{tx.pk}")

    def _credit(self, parent, amount="-12.50", platform_fee="-1.87"):
        credit = self.ledger.create(
            mentor=self.mentor,
            payer=self.mentee,
            amount=Decimal(amount),
            platform_fee=Decimal(platform_fee),
            kind=Transaction.ADJUSTMENT,
            parent=parent,
        )
        return self.ledger.complete(credit.pk)


class RequestPayoutTests(PayoutTestCase):
    def test_available_counts_only_completed_unclaimed_earnings(self):
        self._earn()
        self._earn()
        self.ledger.create(mentor=self.mentor, payer=self.mentee, amount=Decimal("80.00"))
        self.assertEqual(self.batcher.available_for_payout(self.mentor), Decimal("42.50"))

    def test_available_never_negative(self):
        tx = self._earn()
        credit = self.ledger.create(
            mentor=self.mentor, payer=self.mentee, amount=Decimal("-40.00"), kind=Transaction.ADJUSTMENT, parent=tx
        )
        self.ledger.complete(credit.pk)
        self.assertEqual(self.batcher.available_for_payout(self.mentor), Decimal("0.00"))

    def test_below_minimum(self):
        self._earn()
        with self.assertRaises(ValidationError) as ctx:
            self.batcher.request_payout(self.mentor, Decimal("9.99"))
        self.assertEqual(ctx.exception.reason, "below_minimum_payout")

    def test_minimum_is_inclusive(self):
        self._earn()
        result = self.batcher.request_payout(self.mentor, Decimal("10.00"))
        self.assertEqual(result["payout"].requested_amount, Decimal("10.00"))

    def test_insufficient_balance(self):
        self._earn()
        with self.assertRaises(ValidationError) as ctx:
            self.batcher.request_payout(self.mentor, Decimal("100.00"))
        self.assertEqual(ctx.exception.reason, "insufficient_balance")
        self.assertEqual(Payout.objects.count(), 0)

    def test_claims_oldest_transactions_covering_amount(self):
        first, second, third = self._earn(), self._earn(), self._earn()

        result = self.batcher.request_payout(self.mentor, Decimal("30.00"))

        payout = result["payout"]
        self.assertEqual(payout.status, Payout.PENDING)
        self.assertEqual(payout.amount, Decimal("42.50"))
        self.assertEqual(payout.requested_amount, Decimal("30.00"))
        self.assertEqual(payout.payout_method, "bank_transfer")
        self.assertEqual(
            set(PayoutItem.objects.filter(payout=payout).values_list("transaction_id", flat=True)),
            {first.pk, second.pk},
        )
        self.assertEqual(result["estimated_processing_time"], "24 hours")
        self.assertEqual(self.batcher.available_for_payout(self.mentor), Decimal("21.25"))
        self.assertTrue(BillingJob.objects.filter(dedupe_key=f"settle_payout:{payout.pk}").exists())

    def test_full_balance_request_nets_unclaimed_credits(self):
        charge = self._earn("50.00")
        credit = self._credit(charge)
        available = self.batcher.available_for_payout(self.mentor)
        self.assertEqual(available, Decimal("31.87"))

        payout = self.batcher.request_payout(self.mentor, available)["payout"]

        self.assertEqual(payout.amount, Decimal("31.87"))
        self.assertEqual(
            set(PayoutItem.objects.filter(payout=payout).values_list("transaction_id", flat=True)),
            {charge.pk, credit.pk},
        )
        self.assertEqual(self.batcher.available_for_payout(self.mentor), Decimal("0.00"))

    def test_credit_after_paid_out_charge_reduces_next_payout(self):
        charge = self._earn("50.00")
        first = self.batcher.request_payout(self.mentor, Decimal("42.50"))["payout"]
        self.batcher.settle(first.pk)
        self._credit(charge)
        self._earn("25.00")
        self.assertEqual(self.batcher.available_for_payout(self.mentor), Decimal("10.62"))

        with self.assertRaises(ValidationError) as ctx:
            self.batcher.request_payout(self.mentor, Decimal("21.25"))
        self.assertEqual(ctx.exception.reason, "insufficient_balance")

        payout = self.batcher.request_payout(self.mentor, Decimal("10.62"))["payout"]
        self.assertEqual(payout.amount, Decimal("10.62"))
        self.assertEqual(self.batcher.available_for_payout(self.mentor), Decimal("0.00"))

    def test_partial_request_still_claims_every_credit(self):
        first = self._earn("50.00")
        self._credit(first)
        self._earn("50.00")

        payout = self.batcher.request_payout(self.mentor, Decimal("20.00"))["payout"]

        self.assertEqual(payout.amount, Decimal("31.87"))
        self.assertEqual(PayoutItem.objects.filter(payout=payout).count(), 2)
        self.assertEqual(self.batcher.available_for_payout(self.mentor), Decimal("42.50"))

    def test_mentor_preferred_payout_method(self):
        self.profile.payout_method = "platform_credit"
        self.profile.save()
        self._earn()
        payout = self.batcher.request_payout(self.mentor, Decimal("20.00"))["payout"]
        self.assertEqual(payout.payout_method, "platform_credit")

    def test_transaction_cannot_be_in_two_live_payouts(self):
        tx = self._earn()
        payout = self.batcher.request_payout(self.mentor, Decimal("20.00"))["payout"]
        other = PayoutRepository().create(
            mentor=self.mentor, amount=tx.mentor_earnings, requested_amount=tx.mentor_earnings, payout_method="bank_transfer"
        )
        with self.assertRaises(ConflictError) as ctx:
            PayoutRepository().claim(other, tx, tx.mentor_earnings)
        self.assertEqual(ctx.exception.reason, "transaction_already_claimed")
        self.assertEqual(PayoutRepository().live_payout_for(tx).pk, payout.pk)

    def test_claimed_transaction_cannot_be_refunded(self):
        tx = self._earn()
        self.batcher.request_payout(self.mentor, Decimal("20.00"))
        with self.assertRaises(ConflictError) as ctx:
            self.ledger.refund(tx.pk)
        self.assertEqual(ctx.exception.reason, "claimed_by_payout")


class SettlementTests(PayoutTestCase):
    def test_settle_without_connected_account(self):
        self._earn()
        payout = self.batcher.request_payout(self.mentor, Decimal("20.00"))["payout"]

        settled = self.batcher.settle(payout.pk)

        self.assertEqual(settled.status, Payout.COMPLETED)
        self.assertIsNotNone(settled.processed_at)
        self.assertEqual(settled.transfer_id, "")
        self.assertEqual(self.gateway.transfers, [])

    def test_settle_transfers_to_connected_account(self):
        self.profile.stripe_account_id = "acct_123"
        self.profile.save()
        self._earn()
        self._earn()
        payout = self.batcher.request_payout(self.mentor, Decimal("40.00"))["payout"]

        settled = self.batcher.settle(payout.pk)

        self.assertEqual(len(self.gateway.transfers), 1)
        self.assertEqual(self.gateway.transfers[0].amount, 4250)
        self.assertEqual(self.gateway.transfers[0].destination, "acct_123")
        self.assertEqual(settled.transfer_id, self.gateway.transfers[0].id)

    def test_settle_is_noop_once_completed(self):
        self.profile.stripe_account_id = "acct_123"
        self.profile.save()
        self._earn()
        payout = self.batcher.request_payout(self.mentor, Decimal("20.00"))["payout"]
        self.batcher.settle(payout.pk)
        again = self.batcher.settle(payout.pk)
        self.assertEqual(again.status, Payout.COMPLETED)
        self.assertEqual(len(self.gateway.transfers), 1)

    def test_fail_releases_claimed_transactions(self):
        self._earn()
        self._earn()
        payout = self.batcher.request_payout(self.mentor, Decimal("40.00"))["payout"]
        self.assertEqual(self.batcher.available_for_payout(self.mentor), Decimal("0.00"))

        failed = self.batcher.fail(payout.pk, "bank_rejected")

        self.assertEqual(failed.status, Payout.FAILED)
        self.assertEqual(failed.failure_reason, "bank_rejected")
        self.assertEqual(self.batcher.available_for_payout(self.mentor), Decimal("42.50"))
        again = self.batcher.request_payout(self.mentor, Decimal("40.00"))["payout"]
        self.assertEqual(again.amount, Decimal("42.50"))

    def test_completed_payout_cannot_fail(self):
        self._earn()
        payout = self.batcher.request_payout(self.mentor, Decimal("20.00"))["payout"]
        self.batcher.settle(payout.pk)
        self.assertEqual(self.batcher.fail(payout.pk, "late").status, Payout.COMPLETED)
        self.assertEqual(self.batcher.available_for_payout(self.mentor), Decimal("0.00"))


class AutomaticPayoutTests(PayoutTestCase):
    def test_automatic_payout_is_idempotent(self):
        tx = self._earn()
        first = self.batcher.automatic_payout(tx)
        second = self.batcher.automatic_payout(tx)
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(first.status, Payout.COMPLETED)
        self.assertEqual(first.amount, Decimal("21.25"))
        self.assertEqual(first.payout_method, "automatic")
        self.assertEqual(Payout.objects.count(), 1)

    def test_pending_transaction_is_not_paid_out(self):
        tx = self.ledger.create(mentor=self.mentor, payer=self.mentee, amount=Decimal("25.00"))
        with self.assertRaises(ConflictError):
            self.batcher.automatic_payout(tx)

    def test_gateway_outage_defers_to_job_queue(self):
        self.profile.stripe_account_id = "acct_123"
        self.profile.save()
        tx = self._earn()
        self.gateway.fail_with = gateway_down()

        payout = self.batcher.automatic_payout(tx)

        self.assertEqual(payout.status, Payout.PENDING)
        self.assertTrue(BillingJob.objects.filter(dedupe_key=f"settle_payout:{payout.pk}").exists())

    def test_completion_signal_pays_out_opted_in_mentor(self):
        self.profile.auto_payout = True
        self.profile.save()
        tx = self.ledger.create(mentor=self.mentor, payer=self.mentee, amount=Decimal("25.00"))

        with self.captureOnCommitCallbacks(execute=True):
            self.ledger.complete(tx.pk, payment_id="ch_auto")

        payout = PayoutRepository().live_payout_for(tx)
        self.assertIsNotNone(payout)
        self.assertEqual(payout.status, Payout.COMPLETED)

    def test_completion_signal_ignores_manual_mentor(self):
        tx = self.ledger.create(mentor=self.mentor, payer=self.mentee, amount=Decimal("25.00"))
        with self.captureOnCommitCallbacks(execute=True):
            self.ledger.complete(tx.pk)
        self.assertEqual(Payout.objects.count(), 0)

    def test_replayed_completion_does_not_announce_again(self):
        self.profile.auto_payout = True
        self.profile.save()
        tx = self._earn()
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            self.ledger.complete(tx.pk)
        self.assertEqual(callbacks, [])

    def test_automatic_payout_nets_unclaimed_credits(self):
        paid = self._earn("50.00")
        credit = self._credit(paid)
        tx = self._earn("25.00")

        payout = self.batcher.automatic_payout(tx)

        self.assertEqual(payout.amount, Decimal("10.62"))
        self.assertEqual(
            set(PayoutItem.objects.filter(payout=payout).values_list("transaction_id", flat=True)),
            {tx.pk, credit.pk},
        )
        self.assertEqual(self.batcher.available_for_payout(self.mentor), Decimal("42.50"))

    def test_credits_larger_than_earnings_defer_automatic_payout(self):
        paid = self._earn()
        self._credit(paid, amount="-40.00", platform_fee="-6.00")
        tx = self._earn()

        self.assertIsNone(self.batcher.automatic_payout(tx))
        self.assertEqual(Payout.objects.count(), 0)
        self.assertEqual(self.batcher.available_for_payout(self.mentor), Decimal("8.50"))
