from datetime import timedelta

from django.test import TestCase
from django.utils import timezone

from accounts.models import CustomUser
from general.models import Session
from general.sessions import has_overlapping_session, record_cancellation, record_completion


class SessionHelperTests(TestCase):
    def setUp(self):
        self.mentor = CustomUser.objects.create_user(email="mentor@example.com", password="pass12345")
        self.mentee = CustomUser.objects.create_user(email="mentee@example.com", password="pass12345")
        self.start = timezone.now() + timedelta(days=1)
        self.session = Session.objects.create(
            mentor=self.mentor,
            mentee=self.mentee,
            start_datetime=self.start,
            end_datetime=self.start + timedelta(hours=1),
        )

    def test_overlap_is_half_open(self):
        end = self.start + timedelta(hours=1)
        self.assertTrue(has_overlapping_session(self.mentor, self.start + timedelta(minutes=59), end + timedelta(hours=1)))
        self.assertFalse(has_overlapping_session(self.mentor, end, end + timedelta(hours=1)))
        self.assertFalse(has_overlapping_session(self.mentor, self.start, end, exclude_id=self.session.pk))

    def test_only_blocking_statuses_clash(self):
        record_cancellation(self.session)
        self.assertFalse(has_overlapping_session(self.mentor, self.start, self.start + timedelta(hours=1)))

    def test_record_completion(self):
        record_completion(self.session, 45)
        self.session.refresh_from_db()
        self.assertEqual(self.session.status, Session.COMPLETED)
        self.assertEqual(self.session.actual_duration, 45)
        self.assertIsNotNone(self.session.actual_end)
        self.assertEqual(self.session.scheduled_minutes, 60)
