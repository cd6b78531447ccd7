"""
Audit log. One row per security- or money-relevant event.
Append-only: rows are never updated; only the retention sweep deletes.
"""
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models


class AuditLogEntry(models.Model):
    GENERAL = "GENERAL"
    PAYMENT = "PAYMENT"
    SAFETY = "SAFETY"
    RETENTION_CHOICES = [
        (GENERAL, "General"),
        (PAYMENT, "Payment"),
        (SAFETY, "Safety"),
    ]

    actor = models.ForeignKey(
        "accounts.CustomUser",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="audit_entries",
    )  # null for system events (jobs, webhooks)
    action = models.CharField(max_length=80)  # e.g. transaction_completed, risk_rejected
    resource = models.CharField(max_length=80)  # e.g. transaction, payout
    resource_id = models.CharField(max_length=80, blank=True)
    details = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    retention_tag = models.CharField(max_length=10, choices=RETENTION_CHOICES, default=GENERAL)

    ip = models.CharField(max_length=64, blank=True)
    user_agent = models.CharField(max_length=255, blank=True)

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        verbose_name = "Audit log entry"
        verbose_name_plural = "Audit log"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["resource", "resource_id"], name="audit_resource_idx"),
        ]

    def __str__(self):
        return f"{self.action} {self.resource}:{self.resource_id}"
