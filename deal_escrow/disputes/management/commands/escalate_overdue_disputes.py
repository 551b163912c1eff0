from django.core.management.base import BaseCommand

from disputes.services import DisputeEngine


class Command(BaseCommand):
    help = "Escalates open disputes that passed their escalation deadline. Run from cron."

    def handle(self, *args, **options):
        escalated = DisputeEngine().escalate_overdue()
        if escalated:
            self.stdout.write(self.style.WARNING(f"Escalated {len(escalated)} dispute(s): {escalated}"))
        else:
            self.stdout.write(self.style.SUCCESS("No overdue disputes."))
