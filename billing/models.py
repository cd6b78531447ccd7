"""
Billing models. Transaction is the ledger row; everything else hangs off it.
Stripe is the source of truth for card movements; the ledger is the source of truth for earnings.
Money is Decimal with two places, in major units of `currency`.
"""
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.db.models import Q

MONEY = dict(max_digits=12, decimal_places=2)


class Transaction(models.Model):
    """One money movement between a payer and a mentor. amount == platform_fee + mentor_earnings."""

    CHARGE = "CHARGE"
    ADJUSTMENT = "ADJUSTMENT"
    RENEWAL = "RENEWAL"
    KIND_CHOICES = [
        (CHARGE, "Charge"),
        (ADJUSTMENT, "Adjustment"),
        (RENEWAL, "Subscription renewal"),
    ]

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    STATUS_CHOICES = [
        (PENDING, "Pending"),
        (COMPLETED, "Completed"),
        (FAILED, "Failed"),
        (REFUNDED, "Refunded"),
    ]

    session = models.ForeignKey(
        "general.Session",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="transactions",
    )  # null for subscription renewals
    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="transactions",
    )
    parent = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="adjustments",
    )  # set on ADJUSTMENT rows
    mentor = models.ForeignKey("accounts.CustomUser", on_delete=models.PROTECT, related_name="earning_transactions")
    payer = models.ForeignKey("accounts.CustomUser", on_delete=models.PROTECT, related_name="paid_transactions")

    kind = models.CharField(max_length=20, choices=KIND_CHOICES, default=CHARGE)
    pricing_type = models.CharField(max_length=20, blank=True)  # ONE_TIME / HOURLY / SUBSCRIPTION
    amount = models.DecimalField(**MONEY)  # negative for credits
    platform_fee = models.DecimalField(**MONEY)
    mentor_earnings = models.DecimalField(**MONEY)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PENDING)
    payment_method = models.CharField(max_length=30, default="card")
    currency = models.CharField(max_length=10, default="usd")

    gateway_order_id = models.CharField(max_length=255, unique=True, null=True, blank=True)
    gateway_payment_id = models.CharField(max_length=255, blank=True)
    receipt = models.CharField(max_length=100, blank=True)
    failure_reason = models.CharField(max_length=255, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            # A session has at most one charge that is still pending or paid
            models.UniqueConstraint(
                fields=["session"],
                condition=Q(kind="CHARGE", status__in=["PENDING", "COMPLETED"]),
                name="one_live_charge_per_session",
            ),
        ]
        indexes = [
            models.Index(fields=["payer", "status", "completed_at"], name="tx_payer_status_idx"),
            models.Index(fields=["mentor", "status", "completed_at"], name="tx_mentor_status_idx"),
        ]

    def __str__(self):
        return f"Transaction {self.pk} {self.kind} {self.amount} ({self.status})"

    @property
    def is_terminal(self) -> bool:
        return self.status != self.PENDING


class UsageTracking(models.Model):
    """Metered usage of one hourly session, settled once the real duration is known."""

    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    STATUS_CHOICES = [
        (ACTIVE, "Active"),
        (COMPLETED, "Completed"),
        (CANCELLED, "Cancelled"),
    ]

    transaction = models.OneToOneField(Transaction, on_delete=models.PROTECT, related_name="usage_tracking")
    session = models.ForeignKey("general.Session", on_delete=models.PROTECT, related_name="usage_records")
    estimated_minutes = models.PositiveIntegerField()
    actual_minutes = models.PositiveIntegerField(null=True, blank=True)
    hourly_rate = models.DecimalField(**MONEY)
    total_cost = models.DecimalField(**MONEY)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)
    settled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        verbose_name = "Usage tracking"
        verbose_name_plural = "Usage tracking"

    def __str__(self):
        return f"Usage session={self.session_id} {self.status}"


class Subscription(models.Model):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    STATUS_CHOICES = [
        (ACTIVE, "Active"),
        (CANCELLED, "Cancelled"),
    ]

    mentee = models.ForeignKey("accounts.CustomUser", on_delete=models.PROTECT, related_name="subscriptions")
    mentor = models.ForeignKey("accounts.CustomUser", on_delete=models.PROTECT, related_name="subscribers")
    amount = models.DecimalField(**MONEY)
    currency = models.CharField(max_length=10, default="usd")
    payment_method = models.CharField(max_length=30, default="card")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=ACTIVE)
    start_date = models.DateTimeField()
    next_payment_date = models.DateTimeField()
    current_period_start = models.DateTimeField()
    current_period_end = models.DateTimeField()
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancel_reason = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["mentee", "mentor"],
                condition=Q(status="ACTIVE"),
                name="one_active_subscription_per_pair",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "next_payment_date"], name="sub_due_idx"),
        ]

    def __str__(self):
        return f"Subscription {self.mentee_id}->{self.mentor_id} ({self.status})"


class Payout(models.Model):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STATUS_CHOICES = [
        (PENDING, "Pending"),
        (COMPLETED, "Completed"),
        (FAILED, "Failed"),
    ]

    mentor = models.ForeignKey("accounts.CustomUser", on_delete=models.PROTECT, related_name="payouts")
    amount = models.DecimalField(**MONEY)  # earnings actually covered by the claimed transactions
    requested_amount = models.DecimalField(**MONEY)
    currency = models.CharField(max_length=10, default="usd")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PENDING)
    payout_method = models.CharField(max_length=30, default="bank_transfer")
    transfer_id = models.CharField(max_length=255, blank=True)
    failure_reason = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"Payout {self.pk} {self.amount} ({self.status})"


class PayoutItem(models.Model):
    """Claim of one transaction by one payout. Released when the payout fails."""

    payout = models.ForeignKey(Payout, on_delete=models.CASCADE, related_name="items")
    transaction = models.ForeignKey(Transaction, on_delete=models.PROTECT, related_name="payout_items")
    amount = models.DecimalField(**MONEY)
    released = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["transaction"],
                condition=Q(released=False),
                name="one_live_payout_per_transaction",
            ),
        ]

    def __str__(self):
        return f"PayoutItem payout={self.payout_id} tx={self.transaction_id}"


class SpendCounter(models.Model):
    """Running completed spend of a payer per day/month; the hard risk cap is enforced against it."""

    DAY = "DAY"
    MONTH = "MONTH"
    PERIOD_CHOICES = [
        (DAY, "Day"),
        (MONTH, "Month"),
    ]

    payer = models.ForeignKey("accounts.CustomUser", on_delete=models.CASCADE, related_name="spend_counters")
    period = models.CharField(max_length=10, choices=PERIOD_CHOICES)
    period_start = models.DateField()
    total = models.DecimalField(**MONEY, default=0)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["payer", "period", "period_start"], name="one_counter_per_period"),
        ]

    def __str__(self):
        return f"SpendCounter {self.payer_id} {self.period} {self.period_start}: {self.total}"


class BillingJob(models.Model):
    """Durable background job. Delivered at least once; handlers are idempotent."""

    SETTLE_PAYOUT = "settle_payout"
    GATEWAY_REFUND = "gateway_refund"
    KIND_CHOICES = [
        (SETTLE_PAYOUT, "Settle payout"),
        (GATEWAY_REFUND, "Gateway refund"),
    ]

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    STATUS_CHOICES = [
        (QUEUED, "Queued"),
        (RUNNING, "Running"),
        (DONE, "Done"),
        (FAILED, "Failed"),
    ]

    kind = models.CharField(max_length=40, choices=KIND_CHOICES)
    payload = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    dedupe_key = models.CharField(max_length=120, unique=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=QUEUED)
    attempts = models.PositiveIntegerField(default=0)
    max_attempts = models.PositiveIntegerField(default=5)
    run_after = models.DateTimeField()
    last_error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["run_after", "id"]
        indexes = [
            models.Index(fields=["status", "run_after"], name="job_due_idx"),
        ]

    def __str__(self):
        return f"BillingJob {self.kind} {self.dedupe_key} ({self.status})"
