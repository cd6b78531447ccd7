from django.contrib import admin
from .models import BillingJob, Payout, PayoutItem, SpendCounter, Subscription, Transaction, UsageTracking


class ReadOnlyAdmin(admin.ModelAdmin):
    """Ledger rows change only through billing services."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Transaction)
class TransactionAdmin(ReadOnlyAdmin):
    list_display = ("id", "kind", "pricing_type", "mentor", "payer", "amount", "platform_fee", "mentor_earnings", "status", "created_at")
    list_filter = ("status", "kind", "pricing_type", "currency")
    search_fields = ("gateway_order_id", "gateway_payment_id", "receipt", "mentor__email", "payer__email")


@admin.register(UsageTracking)
class UsageTrackingAdmin(ReadOnlyAdmin):
    list_display = ("id", "session", "estimated_minutes", "actual_minutes", "hourly_rate", "total_cost", "status", "settled_at")
    list_filter = ("status",)


@admin.register(Subscription)
class SubscriptionAdmin(ReadOnlyAdmin):
    list_display = ("id", "mentee", "mentor", "amount", "status", "next_payment_date", "cancelled_at")
    list_filter = ("status",)
    search_fields = ("mentee__email", "mentor__email")


class PayoutItemInline(admin.TabularInline):
    model = PayoutItem
    extra = 0
    can_delete = False
    readonly_fields = ("transaction", "amount", "released", "created_at")


@admin.register(Payout)
class PayoutAdmin(ReadOnlyAdmin):
    list_display = ("id", "mentor", "amount", "requested_amount", "payout_method", "status", "created_at", "processed_at")
    list_filter = ("status", "payout_method")
    search_fields = ("mentor__email", "transfer_id")
    inlines = [PayoutItemInline]


@admin.register(SpendCounter)
class SpendCounterAdmin(ReadOnlyAdmin):
    list_display = ("payer", "period", "period_start", "total")
    list_filter = ("period",)


@admin.register(BillingJob)
class BillingJobAdmin(ReadOnlyAdmin):
    list_display = ("id", "kind", "dedupe_key", "status", "attempts", "max_attempts", "run_after", "updated_at")
    list_filter = ("kind", "status")
    search_fields = ("dedupe_key",)
