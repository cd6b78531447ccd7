"""
Storage access for billing. Every state transition is a conditional write that reports whether
it won, so concurrent callers never both apply the same change. Services get these injected.
"""
from decimal import Decimal

from django.db import IntegrityError, transaction
from django.db.models import F, Sum

from billing.errors import ConflictError, NotFoundError
from billing.models import Payout, PayoutItem, SpendCounter, Subscription, Transaction, UsageTracking

ZERO = Decimal("0.00")


def _sum(queryset, field) -> Decimal:
    return queryset.aggregate(total=Sum(field))["total"] or ZERO


class TransactionRepository:
    model = Transaction

    def get(self, pk) -> Transaction:
        try:
            return Transaction.objects.get(pk=pk)
        except Transaction.DoesNotExist:
            raise NotFoundError(f"Transaction {pk} not found.", "transaction_not_found")

    def get_for_update(self, pk) -> Transaction:
        try:
            return Transaction.objects.select_for_update().get(pk=pk)
        except Transaction.DoesNotExist:
            raise NotFoundError(f"Transaction {pk} not found.", "transaction_not_found")

    def get_by_order(self, order_id) -> Transaction:
        try:
            return Transaction.objects.select_related("session").get(gateway_order_id=order_id)
        except Transaction.DoesNotExist:
            raise NotFoundError("No transaction for this order.", "order_not_found")

    def create(self, **fields) -> Transaction:
        try:
            with transaction.atomic():
                return Transaction.objects.create(**fields)
        except IntegrityError:
            raise ConflictError("This session already has an open or paid charge.", "duplicate_charge")

    def live_charge_for_session(self, session_id):
        return (
            Transaction.objects.filter(
                session_id=session_id,
                kind=Transaction.CHARGE,
                status__in=[Transaction.PENDING, Transaction.COMPLETED],
            )
            .order_by("-created_at")
            .first()
        )

    def mark_completed(self, pk, now, payment_id="") -> bool:
        fields = {"status": Transaction.COMPLETED, "completed_at": now}
        if payment_id:
            fields["gateway_payment_id"] = payment_id
        return Transaction.objects.filter(pk=pk, status=Transaction.PENDING).update(**fields) == 1

    def mark_failed(self, pk, reason) -> bool:
        return Transaction.objects.filter(pk=pk, status=Transaction.PENDING).update(
            status=Transaction.FAILED,
            failure_reason=(reason or "")[:255],
        ) == 1

    def mark_refunded(self, pk, now) -> bool:
        return Transaction.objects.filter(pk=pk, status=Transaction.COMPLETED).update(
            status=Transaction.REFUNDED,
            refunded_at=now,
        ) == 1

    def update_amounts(self, pk, amount, platform_fee, mentor_earnings) -> bool:
        return Transaction.objects.filter(pk=pk, status=Transaction.PENDING).update(
            amount=amount,
            platform_fee=platform_fee,
            mentor_earnings=mentor_earnings,
        ) == 1

    def set_order(self, pk, order_id, receipt=""):
        Transaction.objects.filter(pk=pk).update(gateway_order_id=order_id, receipt=receipt)

    def completed_spend(self, payer, since) -> Decimal:
        return _sum(
            Transaction.objects.filter(
                payer=payer,
                status=Transaction.COMPLETED,
                completed_at__gte=since,
                amount__gt=0,
            ),
            "amount",
        )

    def created_since(self, payer, since) -> int:
        return Transaction.objects.filter(payer=payer, created_at__gte=since).count()

    def completed_for_mentor(self, mentor):
        return Transaction.objects.filter(mentor=mentor, status=Transaction.COMPLETED)

    def unclaimed_for_mentor(self, mentor):
        """COMPLETED transactions of the mentor not covered by a live payout, oldest first."""
        return (
            self.completed_for_mentor(mentor)
            .exclude(payout_items__released=False)
            .order_by("completed_at", "id")
        )

    def unclaimed_credits(self, mentor):
        """Unclaimed rows with negative earnings, such as hourly session credits."""
        return self.unclaimed_for_mentor(mentor).filter(mentor_earnings__lt=0)

    def unclaimed_earnings(self, mentor) -> Decimal:
        return _sum(self.unclaimed_for_mentor(mentor), "mentor_earnings")


class UsageTrackingRepository:
    def create(self, **fields) -> UsageTracking:
        return UsageTracking.objects.create(**fields)

    def for_session(self, session_id) -> UsageTracking:
        usage = (
            UsageTracking.objects.select_related("transaction")
            .filter(session_id=session_id)
            .order_by("-created_at")
            .first()
        )
        if usage is None:
            raise NotFoundError("No usage tracking for this session.", "usage_not_found")
        return usage

    def mark_completed(self, pk, actual_minutes, total_cost, now) -> bool:
        return UsageTracking.objects.filter(pk=pk, status=UsageTracking.ACTIVE).update(
            status=UsageTracking.COMPLETED,
            actual_minutes=actual_minutes,
            total_cost=total_cost,
            settled_at=now,
        ) == 1

    def mark_cancelled(self, pk, now) -> bool:
        return UsageTracking.objects.filter(pk=pk, status=UsageTracking.ACTIVE).update(
            status=UsageTracking.CANCELLED,
            settled_at=now,
        ) == 1

    def update_estimate(self, pk, estimated_minutes, hourly_rate, total_cost) -> bool:
        return UsageTracking.objects.filter(pk=pk, status=UsageTracking.ACTIVE).update(
            estimated_minutes=estimated_minutes,
            hourly_rate=hourly_rate,
            total_cost=total_cost,
        ) == 1


class SubscriptionRepository:
    def get(self, pk) -> Subscription:
        try:
            return Subscription.objects.get(pk=pk)
        except Subscription.DoesNotExist:
            raise NotFoundError(f"Subscription {pk} not found.", "subscription_not_found")

    def has_active(self, mentee, mentor) -> bool:
        return Subscription.objects.filter(mentee=mentee, mentor=mentor, status=Subscription.ACTIVE).exists()

    def create(self, **fields) -> Subscription:
        try:
            with transaction.atomic():
                return Subscription.objects.create(**fields)
        except IntegrityError:
            raise ConflictError("An active subscription with this mentor already exists.", "duplicate_subscription")

    def advance_period(self, pk, expected_next, new_next, period_start, period_end) -> bool:
        """Compare-and-set on next_payment_date: only the caller that saw `expected_next` wins."""
        return Subscription.objects.filter(
            pk=pk,
            status=Subscription.ACTIVE,
            next_payment_date=expected_next,
        ).update(
            next_payment_date=new_next,
            current_period_start=period_start,
            current_period_end=period_end,
        ) == 1

    def mark_cancelled(self, pk, now, reason) -> bool:
        return Subscription.objects.filter(pk=pk, status=Subscription.ACTIVE).update(
            status=Subscription.CANCELLED,
            cancelled_at=now,
            cancel_reason=(reason or "")[:255],
        ) == 1

    def due(self, now):
        return Subscription.objects.filter(status=Subscription.ACTIVE, next_payment_date__lte=now).order_by("next_payment_date")


class PayoutRepository:
    def get(self, pk) -> Payout:
        try:
            return Payout.objects.get(pk=pk)
        except Payout.DoesNotExist:
            raise NotFoundError(f"Payout {pk} not found.", "payout_not_found")

    def create(self, **fields) -> Payout:
        return Payout.objects.create(**fields)

    def claim(self, payout, tx, amount) -> PayoutItem:
        try:
            with transaction.atomic():
                return PayoutItem.objects.create(payout=payout, transaction=tx, amount=amount)
        except IntegrityError:
            raise ConflictError(
                f"Transaction {tx.pk} is already claimed by another payout.",
                "transaction_already_claimed",
            )

    def live_payout_for(self, tx):
        item = PayoutItem.objects.select_related("payout").filter(transaction=tx, released=False).first()
        return item.payout if item else None

    def is_claimed(self, tx_id) -> bool:
        return PayoutItem.objects.filter(transaction_id=tx_id, released=False).exists()

    def mark_completed(self, pk, now, transfer_id="") -> bool:
        return Payout.objects.filter(pk=pk, status=Payout.PENDING).update(
            status=Payout.COMPLETED,
            processed_at=now,
            transfer_id=transfer_id or "",
        ) == 1

    def mark_failed(self, pk, reason, now) -> bool:
        won = Payout.objects.filter(pk=pk, status=Payout.PENDING).update(
            status=Payout.FAILED,
            failure_reason=(reason or "")[:255],
            processed_at=now,
        ) == 1
        if won:
            PayoutItem.objects.filter(payout_id=pk, released=False).update(released=True)
        return won

    def total(self, mentor, status) -> Decimal:
        return _sum(Payout.objects.filter(mentor=mentor, status=status), "amount")


class SpendCounterRepository:
    def increment(self, payer_id, period, period_start, amount, limit) -> bool:
        """Add `amount` to the period's counter only if the result stays within `limit`."""
        SpendCounter.objects.get_or_create(payer_id=payer_id, period=period, period_start=period_start)
        return SpendCounter.objects.filter(
            payer_id=payer_id,
            period=period,
            period_start=period_start,
            total__lte=limit - amount,
        ).update(total=F("total") + amount) == 1
