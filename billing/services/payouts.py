"""
Payout batching. Completed earnings become payable; a payout claims the transactions it covers
through PayoutItem rows, so no transaction can be in two live payouts at once.
Settlement is all-or-nothing: a payout either completes or fails and releases its claims.
"""
import logging
from decimal import Decimal

from django.db import transaction
from django.utils import timezone

from accounts.models import MentorProfile
from audit.services import AuditTrail
from billing import config
from billing.errors import ConflictError, GatewayError, ValidationError
from billing.models import Payout, Transaction
from billing.repositories import PayoutRepository, TransactionRepository
from billing.services.gateway import StripeGateway, to_minor_units
from billing.services.jobs import JobQueue
from billing.services.ledger import quantize

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class PayoutBatcher:
    def __init__(self, transactions=None, payouts=None, gateway=None, audit=None, jobs=None):
        self.transactions = transactions or TransactionRepository()
        self.payouts = payouts or PayoutRepository()
        self.gateway = gateway or StripeGateway()
        self.audit = audit or AuditTrail()
        self.jobs = jobs or JobQueue(gateway=self.gateway, audit=self.audit)

    def available_for_payout(self, mentor) -> Decimal:
        return max(ZERO, self.transactions.unclaimed_earnings(mentor))

    def request_payout(self, mentor, amount, payout_method=None, actor=None) -> dict:
        """
        Claim every unclaimed credit plus the oldest unclaimed earnings covering `amount` into a
        new PENDING payout and queue its settlement. The payout amount is the net of what it claims:
        at least the requested amount and never more than the available balance.
        """
        amount = quantize(amount)
        minimum = config.get_decimal("MIN_PAYOUT")
        if amount < minimum:
            raise ValidationError(f"Minimum payout amount is {minimum}.", "below_minimum_payout")
        payout_method = payout_method or self._preferred_method(mentor)

        with transaction.atomic():
            candidates = list(self.transactions.unclaimed_for_mentor(mentor).select_for_update())
            available = max(ZERO, sum((tx.mentor_earnings for tx in candidates), ZERO))
            if amount > available:
                raise ValidationError("Insufficient balance for payout.", "insufficient_balance")

            # Credits left unclaimed would be paid out again as part of the balance
            selected = [tx for tx in candidates if tx.mentor_earnings < 0]
            covered = sum((tx.mentor_earnings for tx in selected), ZERO)
            for tx in candidates:
                if covered >= amount:
                    break
                if tx.mentor_earnings >= 0:
                    selected.append(tx)
                    covered += tx.mentor_earnings

            payout = self.payouts.create(
                mentor=mentor,
                amount=covered,
                requested_amount=amount,
                currency=selected[0].currency,
                payout_method=payout_method,
            )
            for tx in selected:
                self.payouts.claim(payout, tx, tx.mentor_earnings)
            self.jobs.enqueue_settle_payout(payout)
            self.audit.log(
                actor or mentor,
                "payout_requested",
                "payout",
                payout.pk,
                {
                    "requested_amount": str(amount),
                    "amount": str(covered),
                    "transaction_ids": [tx.pk for tx in selected],
                    "payout_method": payout_method,
                },
            )
        logger.info("payouts: payout %s requested mentor=%s amount=%s", payout.pk, mentor.pk, covered)
        return {"payout": payout, "estimated_processing_time": config.get("PAYOUT_PROCESSING_TIME")}

    def settle(self, payout_id) -> Payout:
        """PENDING -> COMPLETED after disbursement. No-op on a payout that is already settled."""
        payout = self.payouts.get(payout_id)
        if payout.status != Payout.PENDING:
            return payout
        transfer_id = self._disburse(payout)
        if self.payouts.mark_completed(payout.pk, timezone.now(), transfer_id):
            self.audit.log(None, "payout_completed", "payout", payout.pk, {"amount": str(payout.amount), "transfer_id": transfer_id})
            logger.info("payouts: payout %s completed", payout.pk)
        return self.payouts.get(payout_id)

    def fail(self, payout_id, reason) -> Payout:
        """PENDING -> FAILED; the claimed transactions become available again."""
        with transaction.atomic():
            if self.payouts.mark_failed(payout_id, reason, timezone.now()):
                self.audit.log(None, "payout_failed", "payout", payout_id, {"reason": reason})
                logger.warning("payouts: payout %s failed: %s", payout_id, reason)
        return self.payouts.get(payout_id)

    def automatic_payout(self, tx):
        """
        Pay out a completed transaction right away, netted against the mentor's unclaimed credits.
        Returns the existing payout if one covers it, or None when the credits absorb it.
        """
        existing = self.payouts.live_payout_for(tx)
        if existing:
            return existing
        with transaction.atomic():
            tx = self.transactions.get_for_update(tx.pk)
            if tx.status != Transaction.COMPLETED:
                raise ConflictError(f"Transaction {tx.pk} is {tx.status} and cannot be paid out.", "invalid_transition")
            existing = self.payouts.live_payout_for(tx)
            if existing:
                return existing
            credits = list(self.transactions.unclaimed_credits(tx.mentor_id).exclude(pk=tx.pk).select_for_update())
            selected = credits + [tx]
            net = sum((item.mentor_earnings for item in selected), ZERO)
            if net <= 0:
                logger.info("payouts: transaction %s left for a later payout, net earnings %s", tx.pk, net)
                return None
            payout = self.payouts.create(
                mentor_id=tx.mentor_id,
                amount=net,
                requested_amount=net,
                currency=tx.currency,
                payout_method="automatic",
            )
            for item in selected:
                self.payouts.claim(payout, item, item.mentor_earnings)
            self.audit.log(
                None, "payout_requested", "payout", payout.pk, {"automatic": True, "transaction_ids": [item.pk for item in selected]}
            )
        try:
            return self.settle(payout.pk)
        except GatewayError as e:
            logger.warning("payouts: automatic payout %s deferred to job queue: %s", payout.pk, e)
            self.jobs.enqueue_settle_payout(payout)
            return self.payouts.get(payout.pk)

    def _preferred_method(self, mentor) -> str:
        profile = MentorProfile.objects.filter(user=mentor).first()
        return profile.payout_method if profile else "bank_transfer"

    def _disburse(self, payout) -> str:
        """Move the money. Returns the transfer id, or "" when settled outside the gateway."""
        if payout.payout_method == "platform_credit":
            return ""
        profile = MentorProfile.objects.filter(user_id=payout.mentor_id).first()
        if not profile or not profile.stripe_account_id:
            # Bank transfer handled by finance from the payout report
            return ""
        transfer = self.gateway.create_transfer(
            to_minor_units(payout.amount),
            payout.currency,
            profile.stripe_account_id,
            metadata={"payout_id": str(payout.pk)},
            idempotency_key=f"payout:{payout.pk}",
        )
        return transfer.id
