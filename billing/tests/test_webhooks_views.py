import json
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase
from django.urls import reverse

from audit.models import AuditLogEntry
from billing.models import Payout, Transaction
from billing.tests.helpers import FakeGateway, make_pricing, make_session, make_user, stripe_signature_header


class BillingApiTestCase(TestCase):
    def setUp(self):
        self.mentor = make_user("mentor@example.com")
        self.mentee = make_user("mentee@example.com")
        self.stranger = make_user("stranger@example.com")
        self.pricing = make_pricing(self.mentor, "ONE_TIME", "25.00", duration=60)
        self.session = make_session(self.mentor, self.mentee)
        self.gateway = FakeGateway()
        patcher = patch("billing.services.payment_service.StripeGateway", return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)

    def post_json(self, url, data=None, **extra):
        return self.client.post(url, data=json.dumps(data or {}), content_type="application/json", **extra)

    def initialize(self):
        self.client.force_login(self.mentee)
        response = self.post_json(
            reverse("billing:initialize_payment"),
            {"session_id": self.session.pk, "pricing_model_id": self.pricing.pk},
        )
        self.assertEqual(response.status_code, 201, response.content)
        return response.json()


class WebhookTests(BillingApiTestCase):
    def setUp(self):
        super().setUp()
        self.order_id = self.initialize()["order"]["id"]
        self.client.logout()

    def deliver(self, event, secret="whsec_test"):
        payload = json.dumps(event)
        return self.client.post(
            reverse("billing:stripe_webhook"),
            data=payload,
            content_type="application/json",
            HTTP_STRIPE_SIGNATURE=stripe_signature_header(payload, secret),
        )

    def charge_event(self, event_type="charge.succeeded", **charge):
        entity = {"id": "ch_webhook", "payment_intent": self.order_id, "amount": 2500}
        entity.update(charge)
        return {"id": "evt_1", "type": event_type, "data": {"object": entity}}

    def tx(self):
        return Transaction.objects.get(gateway_order_id=self.order_id)

    def test_invalid_signature_is_rejected_without_changes(self):
        response = self.deliver(self.charge_event(), secret="whsec_wrong")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.tx().status, Transaction.PENDING)
        self.assertTrue(AuditLogEntry.objects.filter(action="webhook_rejected").exists())

    def test_missing_signature_is_rejected(self):
        response = self.client.post(
            reverse("billing:stripe_webhook"), data=json.dumps(self.charge_event()), content_type="application/json"
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.tx().status, Transaction.PENDING)

    def test_captured_charge_completes_transaction(self):
        response = self.deliver(self.charge_event())
        self.assertEqual(response.status_code, 200)
        tx = self.tx()
        self.assertEqual(tx.status, Transaction.COMPLETED)
        self.assertEqual(tx.gateway_payment_id, "ch_webhook")
        self.assertEqual(tx.mentor_earnings, Decimal("21.25"))

    def test_replayed_delivery_is_harmless(self):
        self.deliver(self.charge_event())
        response = self.deliver(self.charge_event())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.tx().status, Transaction.COMPLETED)
        self.assertEqual(AuditLogEntry.objects.filter(action="transaction_completed").count(), 1)

    def test_order_paid_event_completes_transaction(self):
        event = {
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": self.order_id, "amount_received": 2500, "latest_charge": "ch_pi"}},
        }
        self.assertEqual(self.deliver(event).status_code, 200)
        self.assertEqual(self.tx().gateway_payment_id, "ch_pi")

    def test_amount_mismatch_fails_transaction(self):
        self.deliver(self.charge_event(amount=100))
        tx = self.tx()
        self.assertEqual(tx.status, Transaction.FAILED)
        self.assertEqual(tx.failure_reason, "payment_mismatch")

    def test_failed_charge_fails_transaction(self):
        self.deliver(self.charge_event("charge.failed", failure_message="Your card was declined."))
        tx = self.tx()
        self.assertEqual(tx.status, Transaction.FAILED)
        self.assertEqual(tx.failure_reason, "Your card was declined.")

    def test_failure_after_completion_is_ignored(self):
        self.deliver(self.charge_event())
        response = self.deliver(self.charge_event("charge.failed"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.tx().status, Transaction.COMPLETED)

    def test_unknown_order_and_unhandled_events_are_acknowledged(self):
        self.assertEqual(self.deliver(self.charge_event(payment_intent="pi_unknown")).status_code, 200)
        self.assertEqual(self.deliver({"type": "customer.created", "data": {"object": {}}}).status_code, 200)
        self.assertEqual(self.tx().status, Transaction.PENDING)


class BillingApiTests(BillingApiTestCase):
    def test_requires_authentication(self):
        response = self.post_json(reverse("billing:initialize_payment"), {"session_id": self.session.pk})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["reason"], "unauthenticated")

    def test_initialize_returns_order_and_summary(self):
        data = self.initialize()
        self.assertEqual(data["order"]["amount"], 2500)
        self.assertTrue(data["order"]["client_secret"])
        self.assertEqual(data["pricing_summary"]["platform_fee"], "3.75")
        self.assertEqual(data["transaction"]["status"], Transaction.PENDING)
        self.assertIsNone(data["usage_tracking"])

    def test_initialize_by_non_mentee_is_forbidden(self):
        self.client.force_login(self.stranger)
        response = self.post_json(
            reverse("billing:initialize_payment"),
            {"session_id": self.session.pk, "pricing_model_id": self.pricing.pk},
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["reason"], "not_session_mentee")

    def test_missing_field_and_bad_json(self):
        self.client.force_login(self.mentee)
        response = self.post_json(reverse("billing:initialize_payment"), {"session_id": self.session.pk})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["reason"], "missing_field")

        response = self.client.post(reverse("billing:initialize_payment"), data="{", content_type="application/json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["reason"], "invalid_json")

    def test_unknown_session_is_not_found(self):
        self.client.force_login(self.mentee)
        response = self.post_json(
            reverse("billing:initialize_payment"), {"session_id": 999999, "pricing_model_id": self.pricing.pk}
        )
        self.assertEqual(response.status_code, 404)

    def test_get_not_allowed_on_post_endpoints(self):
        self.client.force_login(self.mentee)
        self.assertEqual(self.client.get(reverse("billing:initialize_payment")).status_code, 405)

    def test_confirm_payment(self):
        order_id = self.initialize()["order"]["id"]
        payment_id, signature = self.gateway.pay(order_id)

        response = self.post_json(
            reverse("billing:confirm_payment"),
            {"order_id": order_id, "payment_id": payment_id, "signature": signature},
        )

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data["success"])
        self.assertEqual(data["transaction"]["status"], Transaction.COMPLETED)
        self.assertEqual(data["transaction"]["mentor_earnings"], "21.25")

    def test_confirm_with_bad_signature(self):
        order_id = self.initialize()["order"]["id"]
        payment_id, _ = self.gateway.pay(order_id)
        response = self.post_json(
            reverse("billing:confirm_payment"),
            {"order_id": order_id, "payment_id": payment_id, "signature": "forged"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["reason"], "invalid_signature")

    def _paid(self):
        order_id = self.initialize()["order"]["id"]
        payment_id, signature = self.gateway.pay(order_id)
        self.post_json(
            reverse("billing:confirm_payment"),
            {"order_id": order_id, "payment_id": payment_id, "signature": signature},
        )
        return Transaction.objects.get(gateway_order_id=order_id)

    def test_earnings_and_payout(self):
        self._paid()
        self.client.force_login(self.mentor)

        response = self.client.get(reverse("billing:earnings"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["available_for_payout"], "21.25")

        response = self.post_json(reverse("billing:request_payout"), {"amount": "5.00"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["reason"], "below_minimum_payout")

        response = self.post_json(reverse("billing:request_payout"), {"amount": "20.00"})
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["payout"]["amount"], "21.25")
        self.assertEqual(response.json()["estimated_processing_time"], "24 hours")
        self.assertEqual(Payout.objects.get().status, Payout.PENDING)

    def test_tax_report(self):
        tx = self._paid()
        self.client.force_login(self.mentor)
        year = tx.completed_at.year

        response = self.client.get(reverse("billing:tax_report"), {"year": year})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["gross_revenue"], "25.00")

        self.assertEqual(self.client.get(reverse("billing:tax_report"), {"year": "soon"}).status_code, 400)

    def test_receipt_access(self):
        tx = self._paid()
        self.assertEqual(self.client.get(reverse("billing:receipt", args=[tx.pk])).status_code, 200)
        self.client.force_login(self.stranger)
        self.assertEqual(self.client.get(reverse("billing:receipt", args=[tx.pk])).status_code, 403)
        self.assertEqual(self.client.get(reverse("billing:receipt", args=[999999])).status_code, 404)

    def test_stripe_status_is_staff_only(self):
        self.client.force_login(self.mentee)
        self.assertEqual(self.client.get(reverse("billing:stripe_status")).status_code, 302)
        staff = make_user("staff@example.com", is_staff=True)
        self.client.force_login(staff)
        response = self.client.get(reverse("billing:stripe_status"))
        self.assertEqual(response.status_code, 200)
        self.assertIn("stripe_configured", response.json())
