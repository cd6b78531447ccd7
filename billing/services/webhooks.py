"""
Gateway webhook processing. The signature is verified before anything in the payload is trusted;
verified events are translated to gateway-neutral names and applied through the ledger.
Every handler is replay-safe because completion and failure are idempotent.
"""
import json
import logging

from billing.errors import BillingError, ConflictError, NotFoundError
from billing.models import Transaction
from billing.services.gateway import to_minor_units

logger = logging.getLogger(__name__)


class WebhookProcessor:
    def __init__(self, service):
        # service: PaymentService
        self.service = service
        self.gateway = service.gateway
        self.audit = service.audit

    def handle(self, payload: bytes, signature_header: str) -> bool:
        """Verify and process one delivery. Returns False (and changes nothing) if it is not authentic."""
        if not self.gateway.verify_webhook_signature(payload, signature_header):
            logger.warning("webhook: rejected delivery with invalid signature")
            self.audit.log(None, "webhook_rejected", "webhook", None, {"reason": "invalid_signature"})
            return False
        try:
            event = json.loads(payload)
        except ValueError as e:
            logger.warning("webhook: invalid payload %s", e)
            return False
        self.process(event)
        return True

    def process(self, event: dict):
        name, entity = self.gateway.translate_event(event)
        if name is None:
            logger.info("webhook: ignoring event type %s", event.get("type"))
            return None
        handlers = {
            "authorized": self._on_authorized,
            "captured": self._on_captured,
            "order.paid": self._on_order_paid,
            "failed": self._on_failed,
        }
        try:
            return handlers[name](entity)
        except NotFoundError:
            logger.warning("webhook: %s for unknown order entity=%s", name, entity.get("id"))
        except ConflictError as e:
            logger.warning("webhook: %s ignored for entity=%s: %s", name, entity.get("id"), e.message)
        except BillingError as e:
            logger.warning("webhook: %s failed for entity=%s: %s", name, entity.get("id"), e.message)
            self.audit.log(None, "webhook_failed", "webhook", entity.get("id"), {"event": name, "reason": e.reason})
        return None

    def _on_authorized(self, intent):
        tx = self.service.transactions.get_by_order(intent.get("id"))
        self.audit.log(None, "payment_authorized", "transaction", tx.pk, {"order_id": intent.get("id")})
        return tx

    def _complete(self, order_id, payment_id, amount_minor):
        tx = self.service.transactions.get_by_order(order_id)
        if tx.status == Transaction.COMPLETED:
            return tx
        if amount_minor is not None and int(amount_minor) != to_minor_units(tx.amount):
            logger.warning("webhook: amount mismatch for order=%s got=%s", order_id, amount_minor)
            return self.service.ledger.fail(tx.pk, "payment_mismatch")
        return self.service.finalize(tx, payment_id or "")["transaction"]

    def _on_captured(self, charge):
        return self._complete(charge.get("payment_intent"), charge.get("id"), charge.get("amount"))

    def _on_order_paid(self, intent):
        return self._complete(intent.get("id"), intent.get("latest_charge"), intent.get("amount_received"))

    def _on_failed(self, charge):
        tx = self.service.transactions.get_by_order(charge.get("payment_intent"))
        reason = charge.get("failure_message") or charge.get("failure_code") or "payment_failed"
        return self.service.ledger.fail(tx.pk, reason)
