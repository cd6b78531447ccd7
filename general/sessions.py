"""
Session helpers used by billing: calendar overlap checks and status write-back.
"""
from django.utils import timezone

from general.models import Session


def has_overlapping_session(mentor, start, end, exclude_id=None) -> bool:
    """True if the mentor has another scheduled or running session intersecting [start, end)."""
    clashes = Session.objects.filter(
        mentor=mentor,
        status__in=Session.BLOCKING_STATUSES,
        start_datetime__lt=end,
        end_datetime__gt=start,
    )
    if exclude_id is not None:
        clashes = clashes.exclude(pk=exclude_id)
    return clashes.exists()


def record_completion(session, actual_minutes: int, now=None):
    """Mark the session COMPLETED with its measured duration."""
    now = now or timezone.now()
    session.status = Session.COMPLETED
    session.actual_duration = actual_minutes
    if session.actual_end is None:
        session.actual_end = now
    session.save(update_fields=["status", "actual_duration", "actual_end"])
    return session


def record_cancellation(session):
    session.status = Session.CANCELLED
    session.save(update_fields=["status"])
    return session
