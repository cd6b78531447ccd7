"""
Billing JSON API and the Stripe webhook endpoint.
Views only parse input, call PaymentService and shape the response; BillingError maps to HTTP status.
"""
import functools
import json
import logging

from django.contrib.admin.views.decorators import staff_member_required
from django.http import HttpResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from audit.services import AuditTrail
from billing.errors import BillingError, ValidationError
from billing.services.gateway import is_configured
from billing.services.payment_service import PaymentService
from billing.services.webhooks import WebhookProcessor

logger = logging.getLogger(__name__)


def _service(request) -> PaymentService:
    return PaymentService(audit=AuditTrail.for_request(request))


def _body(request) -> dict:
    try:
        data = json.loads(request.body or b"{}")
    except ValueError:
        raise ValidationError("Request body must be JSON.", "invalid_json")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.", "invalid_json")
    return data


def _required(data, key):
    value = data.get(key)
    if value in (None, ""):
        raise ValidationError(f"Missing field: {key}.", "missing_field")
    return value


def billing_api(view):
    """Require an authenticated user and turn BillingError into a JSON error response."""

    @functools.wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return JsonResponse({"error": "Authentication required.", "reason": "unauthenticated"}, status=401)
        try:
            return view(request, *args, **kwargs)
        except BillingError as e:
            return JsonResponse({"error": e.message, "reason": e.reason}, status=e.http_status)

    return wrapper


def _transaction(tx):
    if tx is None:
        return None
    return {
        "id": tx.pk,
        "kind": tx.kind,
        "pricing_type": str(tx.pricing_type),
        "status": tx.status,
        "amount": str(tx.amount),
        "platform_fee": str(tx.platform_fee),
        "mentor_earnings": str(tx.mentor_earnings),
        "currency": tx.currency,
        "session_id": tx.session_id,
        "subscription_id": tx.subscription_id,
        "parent_id": tx.parent_id,
        "gateway_order_id": tx.gateway_order_id,
    }


def _usage(usage):
    if usage is None:
        return None
    return {
        "id": usage.pk,
        "status": usage.status,
        "estimated_minutes": usage.estimated_minutes,
        "actual_minutes": usage.actual_minutes,
        "hourly_rate": str(usage.hourly_rate),
        "total_cost": str(usage.total_cost),
    }


def _subscription(subscription):
    if subscription is None:
        return None
    return {
        "id": subscription.pk,
        "status": subscription.status,
        "amount": str(subscription.amount),
        "next_payment_date": subscription.next_payment_date.isoformat(),
        "cancelled_at": subscription.cancelled_at.isoformat() if subscription.cancelled_at else None,
    }


def _payout(payout):
    return {
        "id": payout.pk,
        "status": payout.status,
        "amount": str(payout.amount),
        "requested_amount": str(payout.requested_amount),
        "payout_method": payout.payout_method,
    }


@staff_member_required
def stripe_status(request):
    """
    GET /api/billing/stripe-status/
    Staff-only. Returns JSON: stripe_configured.
    """
    return JsonResponse({"stripe_configured": is_configured()})


@require_POST
@billing_api
def initialize_payment(request):
    """POST /api/billing/payments/initialize/ {session_id, pricing_model_id, duration?, payment_method?}"""
    data = _body(request)
    result = _service(request).initialize_payment(
        _required(data, "session_id"),
        request.user,
        _required(data, "pricing_model_id"),
        duration=data.get("duration"),
        payment_method=data.get("payment_method") or "card",
    )
    order = result["order"]
    return JsonResponse({
        "order": {
            "id": order["id"],
            "amount": order["amount"],
            "currency": order["currency"],
            "receipt": order["receipt"],
            "client_secret": order.get("client_secret"),
        },
        "available_payment_methods": result["available_payment_methods"],
        "pricing_summary": result["pricing_summary"],
        "transaction": _transaction(result["transaction"]),
        "usage_tracking": _usage(result.get("usage_tracking")),
    }, status=201)


@require_POST
@billing_api
def confirm_payment(request):
    """POST /api/billing/payments/confirm/ {order_id, payment_id, signature}"""
    data = _body(request)
    result = _service(request).confirm_payment(
        _required(data, "order_id"),
        _required(data, "payment_id"),
        _required(data, "signature"),
        request.user,
    )
    return JsonResponse({
        "success": result["success"],
        "transaction": _transaction(result["transaction"]),
        "subscription": _subscription(result.get("subscription")),
    })


@require_POST
@billing_api
def settle_hourly_session(request, session_id):
    """POST /api/billing/sessions/<id>/settle/ {actual_minutes}"""
    data = _body(request)
    try:
        actual_minutes = int(_required(data, "actual_minutes"))
    except (TypeError, ValueError):
        raise ValidationError("actual_minutes must be an integer.", "invalid_duration")
    result = _service(request).settle_hourly_session(session_id, actual_minutes, request.user)
    order = result["order"]
    return JsonResponse({
        "transaction": _transaction(result["transaction"]),
        "usage_tracking": _usage(result["usage_tracking"]),
        "adjustment": _transaction(result["adjustment"]),
        "order": {"id": order["id"], "amount": order["amount"], "client_secret": order.get("client_secret")} if order else None,
    })


@require_POST
@billing_api
def cancel_hourly_session(request, session_id):
    """POST /api/billing/sessions/<id>/cancel/"""
    result = _service(request).cancel_hourly_session(session_id, request.user)
    return JsonResponse({
        "transaction": _transaction(result["transaction"]),
        "usage_tracking": _usage(result["usage_tracking"]),
    })


@require_POST
@billing_api
def cancel_subscription(request, subscription_id):
    """POST /api/billing/subscriptions/<id>/cancel/ {reason?}"""
    data = _body(request)
    subscription = _service(request).cancel_subscription(subscription_id, request.user, data.get("reason") or "")
    return JsonResponse({"subscription": _subscription(subscription)})


@require_POST
@billing_api
def request_payout(request):
    """POST /api/billing/payouts/ {amount, payout_method?}"""
    data = _body(request)
    result = _service(request).request_payout(
        request.user,
        _required(data, "amount"),
        user=request.user,
        payout_method=data.get("payout_method"),
    )
    return JsonResponse({
        "payout": _payout(result["payout"]),
        "estimated_processing_time": result["estimated_processing_time"],
    }, status=201)


@require_GET
@billing_api
def earnings(request):
    """GET /api/billing/earnings/"""
    return JsonResponse(_service(request).get_earnings(request.user))


@require_GET
@billing_api
def tax_report(request):
    """GET /api/billing/tax-report/?year=2025&month=3"""
    try:
        year = int(request.GET.get("year", ""))
        month = int(request.GET["month"]) if request.GET.get("month") else None
    except ValueError:
        raise ValidationError("year and month must be integers.", "invalid_period")
    return JsonResponse(_service(request).generate_tax_report(request.user, year, month))


@require_GET
@billing_api
def receipt(request, transaction_id):
    """GET /api/billing/receipts/<transaction_id>/"""
    return JsonResponse(_service(request).get_receipt(transaction_id, request.user))


@csrf_exempt
@require_POST
def stripe_webhook(request):
    """
    POST /api/billing/webhook/
    Stripe webhook endpoint. Verifies the signature over the raw body before reading it;
    unverified deliveries get 400 and change nothing. Replays are harmless.
    """
    sig_header = request.META.get("HTTP_STRIPE_SIGNATURE", "")
    processor = WebhookProcessor(_service(request))
    if not processor.handle(request.body, sig_header):
        return HttpResponse(status=400)
    return HttpResponse(status=200)
