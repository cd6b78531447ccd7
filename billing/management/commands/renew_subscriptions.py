"""
Django management command to open renewal charges for subscriptions whose period has ended.

Usage:
    python manage.py renew_subscriptions
"""
import sys
import traceback

from django.core.management.base import BaseCommand
from django.utils import timezone

from billing.services.payment_service import PaymentService


class Command(BaseCommand):
    help = 'Create renewal transactions for due subscriptions'

    def handle(self, *args, **options):
        try:
            self.stdout.write(f'[{timezone.now()}] Renewing due subscriptions...')
            counts = PaymentService().renew_due_subscriptions()
            self.stdout.write(
                self.style.SUCCESS(
                    f'[{timezone.now()}] Renewal completed: '
                    f'{counts["renewed"]} renewed, '
                    f'{counts["skipped"]} already renewed'
                )
            )
        except Exception as e:
            self.stderr.write(f'[{timezone.now()}] ERROR in renew_subscriptions: {str(e)}')
            self.stderr.write(traceback.format_exc())
            sys.exit(1)
