"""
Risk screening for payer spend. Hard daily/monthly limits reject outright; softer signals
(large amount, burst of transactions) add to a score that rejects at RISK_REJECT_SCORE.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal

from django.utils import timezone

from audit.services import AuditTrail
from billing import config
from billing.errors import RiskRejection
from billing.models import SpendCounter
from billing.repositories import SpendCounterRepository, TransactionRepository

logger = logging.getLogger(__name__)

LARGE_AMOUNT_SCORE = 30
HIGH_VELOCITY_SCORE = 40


@dataclass
class RiskAssessment:
    approved: bool
    score: int = 0
    reason: str = ""
    flags: list = field(default_factory=list)


def _day_start(now):
    return timezone.localtime(now).replace(hour=0, minute=0, second=0, microsecond=0)


def _month_start(now):
    return _day_start(now).replace(day=1)


class RiskEngine:
    def __init__(self, transactions=None, counters=None, audit=None):
        self.transactions = transactions or TransactionRepository()
        self.counters = counters or SpendCounterRepository()
        self.audit = audit or AuditTrail()

    def assess(self, payer, amount, payment_method="card", now=None) -> RiskAssessment:
        """Score a prospective payment. Never raises; see screen() for the raising variant."""
        now = now or timezone.now()
        amount = Decimal(amount)
        daily = self.transactions.completed_spend(payer, _day_start(now))
        if daily + amount > config.get_decimal("MAX_DAILY_AMOUNT"):
            return RiskAssessment(approved=False, reason="daily_limit_exceeded")
        monthly = self.transactions.completed_spend(payer, _month_start(now))
        if monthly + amount > config.get_decimal("MAX_MONTHLY_AMOUNT"):
            return RiskAssessment(approved=False, reason="monthly_limit_exceeded")

        score = 0
        flags = []
        if amount > config.get_decimal("SUSPICIOUS_AMOUNT_THRESHOLD"):
            score += LARGE_AMOUNT_SCORE
            flags.append("large_amount")
        window_start = now - timedelta(minutes=int(config.get("VELOCITY_WINDOW_MINUTES")))
        if self.transactions.created_since(payer, window_start) > int(config.get("VELOCITY_MAX_TRANSACTIONS")):
            score += HIGH_VELOCITY_SCORE
            flags.append("high_velocity")

        if score >= int(config.get("RISK_REJECT_SCORE")):
            return RiskAssessment(approved=False, score=score, reason="high_risk_transaction", flags=flags)
        return RiskAssessment(approved=True, score=score, flags=flags)

    def screen(self, payer, amount, payment_method="card", now=None) -> RiskAssessment:
        """Assess and audit; raise RiskRejection when not approved."""
        result = self.assess(payer, amount, payment_method, now=now)
        self.audit.log(
            payer,
            "risk_approved" if result.approved else "risk_rejected",
            "risk",
            getattr(payer, "pk", None),
            {
                "amount": str(amount),
                "payment_method": payment_method,
                "score": result.score,
                "reason": result.reason,
                "flags": result.flags,
            },
        )
        if not result.approved:
            logger.info("risk: rejected payer=%s amount=%s reason=%s", getattr(payer, "pk", None), amount, result.reason)
            message = "high risk transaction" if result.reason == "high_risk_transaction" else "Spending limit exceeded."
            raise RiskRejection(message, result.reason)
        return result

    def commit_spend(self, tx, now=None):
        """
        Completion guard: count a completed transaction against the payer's daily and monthly caps.
        Must run inside the DB transaction that completes `tx`. Credits are not counted.
        """
        if tx.amount <= 0:
            return
        now = now or tx.completed_at or timezone.now()
        checks = [
            (SpendCounter.DAY, _day_start(now).date(), config.get_decimal("MAX_DAILY_AMOUNT"), "daily_limit_exceeded"),
            (SpendCounter.MONTH, _month_start(now).date(), config.get_decimal("MAX_MONTHLY_AMOUNT"), "monthly_limit_exceeded"),
        ]
        for period, start, limit, reason in checks:
            if not self.counters.increment(tx.payer_id, period, start, tx.amount, limit):
                raise RiskRejection("Spending limit exceeded.", reason)
