"""
Management command to set up the periodic subscription tasks.

One-shot renewal, retry and expiry schedules are created by the billing
engine itself; this only registers the recurring retry sweep.
"""

from typing import Any

from django.core.management.base import BaseCommand, CommandError

from apps.subscriptions.tasks import RETRY_SWEEP_MINUTES, setup_subscription_scheduled_tasks


class Command(BaseCommand):
    help = 'Set up the periodic subscription billing tasks (payment retry sweep)'

    def handle(self, *args: Any, **options: Any) -> None:
        self.stdout.write('🚀 Setting up subscription scheduled tasks...')

        try:
            results = setup_subscription_scheduled_tasks()
        except Exception as e:
            raise CommandError(f'❌ Failed to set up subscription tasks: {e}') from e

        for task_name, result in results.items():
            if result == 'already_exists':
                self.stdout.write(self.style.WARNING(f'  - {task_name}: Task already exists (skipped)'))
            else:
                self.stdout.write(self.style.SUCCESS(f'  - {task_name}: Created successfully'))

        self.stdout.write('')
        self.stdout.write('📋 Task Schedule:')
        self.stdout.write(f'  - Payment Retry Sweep: Every {RETRY_SWEEP_MINUTES} minutes')
        self.stdout.write('')
        self.stdout.write('🔧 Start workers: python manage.py qcluster')
