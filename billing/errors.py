"""
Billing errors. Messages are safe to show to the user; `reason` is a stable machine code.
"""


class BillingError(Exception):
    """Base for every billing failure."""

    http_status = 400
    default_reason = "billing_error"

    def __init__(self, message: str, reason: str = None):
        self.message = message
        self.reason = reason or self.default_reason
        super().__init__(message)


class ValidationError(BillingError):
    default_reason = "invalid_request"


class AuthorizationError(BillingError):
    http_status = 403
    default_reason = "forbidden"


class NotFoundError(BillingError):
    http_status = 404
    default_reason = "not_found"


class ConflictError(BillingError):
    """Illegal state transition or a lost race (duplicate claim, duplicate subscription)."""

    http_status = 409
    default_reason = "conflict"


class RiskRejection(BillingError):
    http_status = 422
    default_reason = "high_risk_transaction"


class GatewayError(BillingError):
    """Payment processor failure. Keeps the processor's error code and HTTP status."""

    http_status = 502
    default_reason = "gateway_error"

    def __init__(self, message: str, code: str = None, gateway_status: int = None):
        self.code = code
        self.gateway_status = gateway_status
        super().__init__(message, reason="gateway_error")
