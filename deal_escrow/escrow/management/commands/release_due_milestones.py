from django.core.management.base import BaseCommand

from escrow.sweeper import sweep_auto_releases


class Command(BaseCommand):
    help = "Releases escrow for milestones whose auto-release date has passed. Run from cron."

    def handle(self, *args, **options):
        report = sweep_auto_releases()

        self.stdout.write(self.style.SUCCESS(
            f"Released {len(report['released'])} milestone(s), skipped {len(report['skipped'])}."
        ))
        for milestone_id, message in report['failed'].items():
            self.stdout.write(self.style.ERROR(f"Milestone {milestone_id}: {message}"))
