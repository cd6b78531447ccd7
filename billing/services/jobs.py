"""
Durable background jobs (payout settlement, gateway refunds).

Jobs are delivered at least once: a job is claimed with a conditional update, retried with
exponential backoff on GatewayError, and given up after max_attempts. Handlers are idempotent.
"""
import logging
from datetime import timedelta

from django.db.models import F, Q
from django.utils import timezone

from audit.services import AuditTrail
from billing import config
from billing.errors import BillingError, GatewayError
from billing.models import BillingJob
from billing.services.gateway import StripeGateway, to_minor_units

logger = logging.getLogger(__name__)

# A RUNNING job not touched for this long is assumed to belong to a dead worker
STALE_AFTER = timedelta(minutes=15)


class JobQueue:
    def __init__(self, gateway=None, audit=None):
        self.gateway = gateway or StripeGateway()
        self.audit = audit or AuditTrail()

    def enqueue(self, kind, payload, dedupe_key, run_after=None) -> BillingJob:
        """Queue a job once per dedupe_key; re-enqueueing returns the existing job."""
        job, created = BillingJob.objects.get_or_create(
            dedupe_key=dedupe_key[:120],
            defaults={
                "kind": kind,
                "payload": payload,
                "run_after": run_after or timezone.now(),
                "max_attempts": int(config.get("JOB_MAX_ATTEMPTS")),
            },
        )
        if created:
            logger.info("jobs: queued %s key=%s", kind, dedupe_key)
        return job

    def enqueue_settle_payout(self, payout):
        return self.enqueue(BillingJob.SETTLE_PAYOUT, {"payout_id": payout.pk}, f"settle_payout:{payout.pk}")

    def enqueue_refund(self, tx, amount, dedupe_key):
        """Refund `amount` of the gateway payment behind `tx`."""
        payload = {
            "transaction_id": tx.pk,
            "payment_id": tx.gateway_payment_id,
            "amount_minor": to_minor_units(amount),
        }
        return self.enqueue(BillingJob.GATEWAY_REFUND, payload, dedupe_key)

    def _claim(self, job_id, now) -> bool:
        claimable = Q(status=BillingJob.QUEUED, run_after__lte=now) | Q(
            status=BillingJob.RUNNING, updated_at__lt=now - STALE_AFTER
        )
        return BillingJob.objects.filter(claimable, pk=job_id).update(
            status=BillingJob.RUNNING,
            attempts=F("attempts") + 1,
            updated_at=now,
        ) == 1

    def due_jobs(self, now, limit):
        return list(
            BillingJob.objects.filter(
                Q(status=BillingJob.QUEUED, run_after__lte=now)
                | Q(status=BillingJob.RUNNING, updated_at__lt=now - STALE_AFTER)
            ).values_list("pk", flat=True)[:limit]
        )

    def run_due(self, now=None, limit=100) -> dict:
        """Run every due job once. Returns counts by outcome."""
        now = now or timezone.now()
        counts = {"done": 0, "retried": 0, "failed": 0, "skipped": 0}
        for job_id in self.due_jobs(now, limit):
            if not self._claim(job_id, now):
                counts["skipped"] += 1
                continue
            outcome = self.run_job(BillingJob.objects.get(pk=job_id), now)
            counts[outcome] += 1
        return counts

    def run_job(self, job, now=None) -> str:
        now = now or timezone.now()
        handler = {
            BillingJob.SETTLE_PAYOUT: self._settle_payout,
            BillingJob.GATEWAY_REFUND: self._gateway_refund,
        }[job.kind]
        try:
            handler(job)
        except GatewayError as e:
            if job.attempts >= job.max_attempts:
                self._give_up(job, e, now)
                return "failed"
            delay = int(config.get("JOB_BACKOFF_SECONDS")) * (2 ** max(job.attempts - 1, 0))
            BillingJob.objects.filter(pk=job.pk).update(
                status=BillingJob.QUEUED,
                run_after=now + timedelta(seconds=delay),
                last_error=str(e)[:2000],
                updated_at=now,
            )
            logger.warning("jobs: %s key=%s attempt %s failed, retry in %ss: %s", job.kind, job.dedupe_key, job.attempts, delay, e)
            return "retried"
        except BillingError as e:
            self._give_up(job, e, now)
            return "failed"
        BillingJob.objects.filter(pk=job.pk).update(status=BillingJob.DONE, last_error="", updated_at=now)
        return "done"

    def _give_up(self, job, error, now):
        BillingJob.objects.filter(pk=job.pk).update(status=BillingJob.FAILED, last_error=str(error)[:2000], updated_at=now)
        logger.warning("jobs: %s key=%s gave up after %s attempts: %s", job.kind, job.dedupe_key, job.attempts, error)
        if job.kind == BillingJob.SETTLE_PAYOUT:
            from billing.services.payouts import PayoutBatcher

            PayoutBatcher(gateway=self.gateway, audit=self.audit, jobs=self).fail(
                job.payload["payout_id"], f"disbursement_failed: {error}"
            )
        else:
            self.audit.log(
                None,
                "refund_failed",
                "refund",
                job.payload.get("transaction_id"),
                {"payment_id": job.payload.get("payment_id"), "amount_minor": job.payload.get("amount_minor"), "error": str(error)},
            )

    def _settle_payout(self, job):
        from billing.services.payouts import PayoutBatcher

        PayoutBatcher(gateway=self.gateway, audit=self.audit, jobs=self).settle(job.payload["payout_id"])

    def _gateway_refund(self, job):
        payload = job.payload
        if not payload.get("payment_id"):
            raise BillingError("Transaction has no gateway payment to refund.", "missing_payment_id")
        refund = self.gateway.create_refund(
            payload["payment_id"],
            amount_minor=payload.get("amount_minor"),
            metadata={"transaction_id": str(payload.get("transaction_id"))},
            idempotency_key=job.dedupe_key,
        )
        self.audit.log(
            None,
            "refund_issued",
            "refund",
            payload.get("transaction_id"),
            {"refund_id": getattr(refund, "id", ""), "amount_minor": payload.get("amount_minor")},
        )
