from django.urls import path
from . import views

app_name = "billing"

urlpatterns = [
    path("stripe-status/", views.stripe_status, name="stripe_status"),
    path("webhook/", views.stripe_webhook, name="stripe_webhook"),
    path("payments/initialize/", views.initialize_payment, name="initialize_payment"),
    path("payments/confirm/", views.confirm_payment, name="confirm_payment"),
    path("sessions/<int:session_id>/settle/", views.settle_hourly_session, name="settle_hourly_session"),
    path("sessions/<int:session_id>/cancel/", views.cancel_hourly_session, name="cancel_hourly_session"),
    path("subscriptions/<int:subscription_id>/cancel/", views.cancel_subscription, name="cancel_subscription"),
    path("payouts/", views.request_payout, name="request_payout"),
    path("earnings/", views.earnings, name="earnings"),
    path("tax-report/", views.tax_report, name="tax_report"),
    path("receipts/<int:transaction_id>/", views.receipt, name="receipt"),
]
