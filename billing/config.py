"""
Billing configuration: single source of truth for platform fees, risk limits and payout rules.

Money values are decimal strings in major units (dollars). Any key can be overridden through
the BILLING dict in settings; read values with get() so override_settings works in tests.
"""
from decimal import Decimal

from django.conf import settings

DEFAULTS = {
    # Platform commission taken from every transaction (0.15 = 15%)
    "PLATFORM_FEE_RATE": "0.15",
    "CURRENCY": "usd",
    # Risk screening
    "MAX_DAILY_AMOUNT": "5000",
    "MAX_MONTHLY_AMOUNT": "50000",
    "SUSPICIOUS_AMOUNT_THRESHOLD": "1000",
    "VELOCITY_WINDOW_MINUTES": 60,
    "VELOCITY_MAX_TRANSACTIONS": 5,
    "RISK_REJECT_SCORE": 70,
    # Pricing
    "DURATION_TOLERANCE_MINUTES": 5,
    "HOURLY_MIN_MINUTES": 15,
    "HOURLY_MAX_MINUTES": 480,
    "SUBSCRIPTION_PERIOD_DAYS": 30,
    # Payouts
    "MIN_PAYOUT": "10",
    "PAYOUT_PROCESSING_TIME": "24 hours",
    # Background jobs
    "JOB_MAX_ATTEMPTS": 5,
    "JOB_BACKOFF_SECONDS": 60,
    "GATEWAY_MAX_NETWORK_RETRIES": 2,
    # Audit retention
    "AUDIT_RETENTION_DAYS": 365,
    "AUDIT_PAYMENT_RETENTION_DAYS": 2555,
}

# Payment methods offered at checkout: id -> display name, processing fee rate, amount bounds, currencies
PAYMENT_METHODS = {
    "card": {
        "name": "Credit/Debit Card",
        "enabled": True,
        "processing_fee": "0.029",
        "min_amount": "1",
        "max_amount": "10000",
        "currencies": ["usd", "eur", "gbp"],
    },
    "upi": {
        "name": "UPI",
        "enabled": True,
        "processing_fee": "0",
        "min_amount": "1",
        "max_amount": "5000",
        "currencies": ["inr"],
    },
    "wallet": {
        "name": "Digital Wallet",
        "enabled": True,
        "processing_fee": "0.025",
        "min_amount": "1",
        "max_amount": "2000",
        "currencies": ["usd", "eur", "gbp", "inr"],
    },
    "bank_transfer": {
        "name": "Bank Transfer",
        "enabled": True,
        "processing_fee": "0.01",
        "min_amount": "10",
        "max_amount": "50000",
        "currencies": ["usd", "eur", "gbp", "inr"],
    },
    "platform_credit": {
        "name": "Platform Credit",
        "enabled": True,
        "processing_fee": "0",
        "min_amount": "1",
        "max_amount": "10000",
        "currencies": ["usd", "eur", "gbp", "inr"],
    },
}


def get(name):
    """Return BILLING[name] from settings, falling back to the default above."""
    overrides = getattr(settings, "BILLING", None) or {}
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]


def get_decimal(name) -> Decimal:
    return Decimal(str(get(name)))


def platform_fee_rate() -> Decimal:
    return get_decimal("PLATFORM_FEE_RATE")


def payment_method_available(method_id: str, amount: Decimal, currency: str) -> bool:
    method = PAYMENT_METHODS.get(method_id)
    if not method or not method["enabled"]:
        return False
    if currency.lower() not in method["currencies"]:
        return False
    return Decimal(method["min_amount"]) <= amount <= Decimal(method["max_amount"])


def available_payment_methods(amount: Decimal, currency: str) -> list:
    """Methods usable for this amount and currency, as dicts safe to return to clients."""
    return [
        {
            "id": method_id,
            "name": method["name"],
            "processing_fee": method["processing_fee"],
        }
        for method_id, method in PAYMENT_METHODS.items()
        if payment_method_available(method_id, amount, currency)
    ]
