from django.db import models


class Session(models.Model):
    """
    A booked mentoring session. Owned by the booking pages; billing reads
    identity, timing and pricing and writes back status/actual duration.
    """

    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"
    STATUS_CHOICES = [
        (SCHEDULED, "Scheduled"),
        (IN_PROGRESS, "In progress"),
        (COMPLETED, "Completed"),
        (CANCELLED, "Cancelled"),
        (NO_SHOW, "No show"),
    ]
    # Sessions in these states block the mentor's calendar
    BLOCKING_STATUSES = (SCHEDULED, IN_PROGRESS)

    PRICING_CHOICES = [
        ("ONE_TIME", "One-time session"),
        ("HOURLY", "Hourly"),
        ("SUBSCRIPTION", "Monthly subscription"),
    ]

    mentor = models.ForeignKey("accounts.CustomUser", on_delete=models.CASCADE, related_name="mentor_sessions")
    mentee = models.ForeignKey("accounts.CustomUser", on_delete=models.CASCADE, related_name="mentee_sessions")
    start_datetime = models.DateTimeField()
    end_datetime = models.DateTimeField(help_text="Scheduled end")
    actual_start = models.DateTimeField(blank=True, null=True)
    actual_end = models.DateTimeField(blank=True, null=True)
    actual_duration = models.PositiveIntegerField(blank=True, null=True, help_text="Minutes, set on completion")
    pricing_type = models.CharField(max_length=20, choices=PRICING_CHOICES, default="ONE_TIME")
    agreed_price = models.DecimalField(max_digits=12, decimal_places=2, blank=True, null=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=SCHEDULED)
    note = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Session"
        verbose_name_plural = "Sessions"
        ordering = ['-start_datetime']
        indexes = [
            models.Index(fields=["mentor", "status", "start_datetime"], name="session_mentor_status_idx"),
        ]

    def __str__(self):
        return f"Session on {self.start_datetime.strftime('%Y-%m-%d %H:%M')}"

    @property
    def scheduled_minutes(self) -> float:
        return (self.end_datetime - self.start_datetime).total_seconds() / 60
