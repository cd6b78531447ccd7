"""
Audit trail writer. Every money mutation and every rejected or failed attempt is recorded here.

Writing an entry must never fail the operation being audited: the insert runs in its own
savepoint and errors are reported on the "audit" logger instead of raised.
"""
import logging
from datetime import timedelta

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from audit.models import AuditLogEntry
from billing import config

logger = logging.getLogger("audit")

# Resources whose entries are kept for the long (payment) retention period
PAYMENT_RESOURCES = {"transaction", "payout", "subscription", "usage_tracking", "refund"}
SAFETY_RESOURCES = {"risk", "webhook", "signature"}


def retention_tag_for(resource: str) -> str:
    if resource in SAFETY_RESOURCES:
        return AuditLogEntry.SAFETY
    if resource in PAYMENT_RESOURCES:
        return AuditLogEntry.PAYMENT
    return AuditLogEntry.GENERAL


def _client_ip(request) -> str:
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR", "")
    if forwarded:
        return forwarded.split(",")[0].strip()[:64]
    return (request.META.get("REMOTE_ADDR") or "")[:64]


class AuditTrail:
    """Audit writer bound to the requester's IP/user agent (empty for jobs and commands)."""

    def __init__(self, ip: str = "", user_agent: str = ""):
        self.ip = ip or ""
        self.user_agent = (user_agent or "")[:255]

    @classmethod
    def for_request(cls, request):
        return cls(ip=_client_ip(request), user_agent=request.META.get("HTTP_USER_AGENT", ""))

    def log(self, actor, action: str, resource: str, resource_id=None, details=None, retention_tag=None):
        """
        Append one entry. Returns the entry, or None when the write failed.
        `actor` may be a user, None (system) or a SimpleNamespace-like object with an id.
        """
        try:
            with transaction.atomic():
                return AuditLogEntry.objects.create(
                    actor_id=getattr(actor, "pk", None),
                    action=action[:80],
                    resource=resource[:80],
                    resource_id="" if resource_id is None else str(resource_id)[:80],
                    details=details or {},
                    retention_tag=retention_tag or retention_tag_for(resource),
                    ip=self.ip,
                    user_agent=self.user_agent,
                )
        except Exception:
            logger.exception("audit: failed to write %s %s:%s", action, resource, resource_id)
            return None

    @staticmethod
    def purge_expired(now=None) -> int:
        """
        Delete entries past their retention period. Payment and safety entries are kept
        for AUDIT_PAYMENT_RETENTION_DAYS, everything else for AUDIT_RETENTION_DAYS.
        Returns the number of rows deleted. Safe to re-run.
        """
        now = now or timezone.now()
        general_cutoff = now - timedelta(days=int(config.get("AUDIT_RETENTION_DAYS")))
        long_cutoff = now - timedelta(days=int(config.get("AUDIT_PAYMENT_RETENTION_DAYS")))
        expired = AuditLogEntry.objects.filter(
            Q(retention_tag=AuditLogEntry.GENERAL, created_at__lt=general_cutoff)
            | Q(retention_tag__in=[AuditLogEntry.PAYMENT, AuditLogEntry.SAFETY], created_at__lt=long_cutoff)
        )
        deleted, _ = expired.delete()
        logger.info("audit: purged %s expired entries", deleted)
        return deleted
