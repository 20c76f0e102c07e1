from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from billing.dispatcher import ReminderDispatcher
from billing.exceptions import BillingError
from billing.reminder_selector import ReminderPolicy
from billing.services import BillingService


class Command(BaseCommand):
    help = 'Send pre-due, due-today and overdue payment reminders'

    def add_arguments(self, parser):
        parser.add_argument('--limit', type=int, default=None, help='Maximum number of plans to process')
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='List eligible plans and their reminder category without sending anything'
        )

    def handle(self, *args, **options):
        try:
            policy = ReminderPolicy.from_settings()
        except BillingError as e:
            raise CommandError(f'Invalid reminder policy: {e.message}')

        limit = options['limit']
        if limit is not None and limit < 1:
            raise CommandError('--limit must be at least 1')

        now = timezone.now()

        if options['dry_run']:
            selected = ReminderDispatcher(notifier=None, directory=None).select(policy, now, limit)
            for plan, category in selected:
                self.stdout.write(
                    f'{plan.pk}\t{plan.tenant_id}\t{plan.account_id}\t{plan.next_due_date}\t{category.value}'
                )
            self.stdout.write(self.style.SUCCESS(f'{len(selected)} plan(s) eligible for reminders.'))
            return

        report = BillingService().run_payment_reminders(policy=policy, now=now, limit=limit)
        summary = report.summary()
        for item in report.items:
            if item.status == 'error':
                self.stderr.write(self.style.ERROR(f'Plan {item.plan_id}: {item.reason}'))

        self.stdout.write(self.style.SUCCESS(
            f"Reminders processed: total={summary['total']} sent={summary['sent']} "
            f"skipped={summary['skipped']} errors={summary['errors']}"
        ))
