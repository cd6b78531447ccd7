"""
Django management command to delete audit log entries past their retention period.

Usage:
    python manage.py cleanup_audit_log
"""
import sys
import traceback

from django.core.management.base import BaseCommand
from django.utils import timezone

from audit.services import AuditTrail


class Command(BaseCommand):
    help = 'Delete audit log entries older than their retention period'

    def handle(self, *args, **options):
        try:
            self.stdout.write(f'[{timezone.now()}] Starting audit log cleanup...')
            deleted = AuditTrail.purge_expired()
            self.stdout.write(
                self.style.SUCCESS(f'[{timezone.now()}] Audit cleanup completed: {deleted} entries deleted')
            )
        except Exception as e:
            self.stderr.write(f'[{timezone.now()}] ERROR in cleanup_audit_log: {str(e)}')
            self.stderr.write(traceback.format_exc())
            sys.exit(1)
