"""
Ledger: the only code that creates transactions or moves them between states.

Transitions are conditional updates (WHERE status = ...) so retries and concurrent callbacks
apply each change at most once. Successful transitions are audited; callers audit failures.
"""
import logging
from decimal import ROUND_HALF_UP, Decimal

from django.db import transaction
from django.utils import timezone

from audit.services import AuditTrail
from billing import config
from billing.errors import ConflictError, ValidationError
from billing.models import Transaction
from billing.repositories import PayoutRepository, TransactionRepository
from billing.signals import transaction_completed

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def quantize(amount) -> Decimal:
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def split_amount(amount, fee_rate=None):
    """Return (platform_fee, mentor_earnings); they always sum to exactly `amount`."""
    amount = quantize(amount)
    rate = Decimal(str(fee_rate)) if fee_rate is not None else config.platform_fee_rate()
    platform_fee = quantize(amount * rate)
    return platform_fee, amount - platform_fee


def _snapshot(tx) -> dict:
    return {"status": tx.status, "amount": str(tx.amount)}


class Ledger:
    def __init__(self, transactions=None, payouts=None, audit=None, on_complete=None):
        self.transactions = transactions or TransactionRepository()
        self.payouts = payouts or PayoutRepository()
        self.audit = audit or AuditTrail()
        # Completion guards: called with the completed transaction inside the same DB transaction.
        # Raising vetoes the completion.
        self.on_complete = list(on_complete or [])

    def create(
        self,
        *,
        mentor,
        payer,
        amount,
        session=None,
        subscription=None,
        parent=None,
        kind=Transaction.CHARGE,
        pricing_type="",
        payment_method="card",
        currency=None,
        fee_rate=None,
        platform_fee=None,
        actor=None,
    ) -> Transaction:
        """Open a PENDING transaction. An explicit platform_fee overrides the split (adjustments)."""
        amount = quantize(amount)
        if kind != Transaction.ADJUSTMENT and amount <= 0:
            raise ValidationError("Amount must be positive.", "invalid_amount")
        if platform_fee is None:
            platform_fee, mentor_earnings = split_amount(amount, fee_rate)
        else:
            platform_fee = quantize(platform_fee)
            mentor_earnings = amount - platform_fee
        tx = self.transactions.create(
            session=session,
            subscription=subscription,
            parent=parent,
            mentor=mentor,
            payer=payer,
            kind=kind,
            pricing_type=pricing_type,
            amount=amount,
            platform_fee=platform_fee,
            mentor_earnings=mentor_earnings,
            payment_method=payment_method,
            currency=currency or config.get("CURRENCY"),
            status=Transaction.PENDING,
        )
        self.audit.log(
            actor or payer,
            "transaction_created",
            "transaction",
            tx.pk,
            {"before": None, "after": _snapshot(tx), "kind": kind, "platform_fee": str(platform_fee)},
        )
        return tx

    def complete(self, pk, payment_id="", actor=None) -> Transaction:
        """PENDING -> COMPLETED. Completing an already COMPLETED transaction returns it unchanged."""
        with transaction.atomic():
            now = timezone.now()
            won = self.transactions.mark_completed(pk, now, payment_id)
            tx = self.transactions.get(pk)
            if not won:
                if tx.status == Transaction.COMPLETED:
                    return tx
                raise ConflictError(
                    f"Transaction {pk} is {tx.status} and cannot be completed.", "invalid_transition"
                )
            for guard in self.on_complete:
                guard(tx)
            self.audit.log(
                actor,
                "transaction_completed",
                "transaction",
                tx.pk,
                {"before": {"status": Transaction.PENDING, "amount": str(tx.amount)}, "after": _snapshot(tx)},
            )
            transaction.on_commit(lambda: self._announce(tx))
        logger.info("ledger: transaction %s completed amount=%s", tx.pk, tx.amount)
        return tx

    @staticmethod
    def _announce(tx):
        for receiver, response in transaction_completed.send_robust(sender=Transaction, transaction=tx):
            if isinstance(response, Exception):
                logger.warning("ledger: transaction_completed receiver %s failed for tx=%s: %s", receiver, tx.pk, response)

    def fail(self, pk, reason, actor=None) -> Transaction:
        """PENDING -> FAILED. Replaying on a FAILED transaction returns it unchanged."""
        with transaction.atomic():
            won = self.transactions.mark_failed(pk, reason)
            tx = self.transactions.get(pk)
            if not won:
                if tx.status == Transaction.FAILED:
                    return tx
                raise ConflictError(f"Transaction {pk} is {tx.status} and cannot fail.", "invalid_transition")
            self.audit.log(
                actor,
                "transaction_failed",
                "transaction",
                tx.pk,
                {"before": {"status": Transaction.PENDING, "amount": str(tx.amount)}, "after": _snapshot(tx), "reason": reason},
            )
        logger.info("ledger: transaction %s failed reason=%s", tx.pk, reason)
        return tx

    def refund(self, pk, actor=None) -> Transaction:
        """COMPLETED -> REFUNDED. Not allowed once a live payout has claimed the earnings."""
        with transaction.atomic():
            tx = self.transactions.get_for_update(pk)
            if tx.status == Transaction.REFUNDED:
                raise ConflictError(f"Transaction {pk} is already refunded.", "already_refunded")
            if tx.status != Transaction.COMPLETED:
                raise ConflictError(f"Transaction {pk} is {tx.status} and cannot be refunded.", "invalid_transition")
            if self.payouts.is_claimed(tx.pk):
                raise ConflictError(f"Transaction {pk} has already been paid out.", "claimed_by_payout")
            self.transactions.mark_refunded(tx.pk, timezone.now())
            tx.refresh_from_db()
            self.audit.log(
                actor,
                "transaction_refunded",
                "transaction",
                tx.pk,
                {"before": {"status": Transaction.COMPLETED, "amount": str(tx.amount)}, "after": _snapshot(tx)},
            )
        logger.info("ledger: transaction %s refunded", tx.pk)
        return tx

    def adjust(self, pk, new_amount, fee_rate=None, actor=None) -> Transaction:
        """Re-price a PENDING transaction in place, keeping amount == fee + earnings."""
        new_amount = quantize(new_amount)
        platform_fee, mentor_earnings = split_amount(new_amount, fee_rate)
        with transaction.atomic():
            before = self.transactions.get(pk)
            if not self.transactions.update_amounts(pk, new_amount, platform_fee, mentor_earnings):
                raise ConflictError(f"Transaction {pk} is {before.status} and cannot be adjusted.", "invalid_transition")
            tx = self.transactions.get(pk)
            self.audit.log(
                actor,
                "transaction_adjusted",
                "transaction",
                tx.pk,
                {"before": _snapshot(before), "after": _snapshot(tx)},
            )
        return tx
