"""
Django management command to run due billing jobs (payout settlement, gateway refunds).

Usage:
    python manage.py run_billing_jobs [--limit 100]
"""
import sys
import traceback

from django.core.management.base import BaseCommand
from django.utils import timezone

from billing.services.jobs import JobQueue


class Command(BaseCommand):
    help = 'Run queued billing jobs whose run_after time has passed'

    def add_arguments(self, parser):
        parser.add_argument('--limit', type=int, default=100, help='Maximum number of jobs to run')

    def handle(self, *args, **options):
        try:
            self.stdout.write(f'[{timezone.now()}] Running billing jobs...')
            counts = JobQueue().run_due(limit=options['limit'])
            self.stdout.write(
                self.style.SUCCESS(
                    f'[{timezone.now()}] Billing jobs completed: '
                    f'{counts["done"]} done, '
                    f'{counts["retried"]} retried, '
                    f'{counts["failed"]} failed, '
                    f'{counts["skipped"]} skipped'
                )
            )
        except Exception as e:
            self.stderr.write(f'[{timezone.now()}] ERROR in run_billing_jobs: {str(e)}')
            self.stderr.write(traceback.format_exc())
            sys.exit(1)
