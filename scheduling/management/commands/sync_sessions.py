"""
Management command to project class sessions from active schedules.

This command should be run periodically (e.g., daily via cron) so the
rolling horizon always extends the configured number of weeks ahead.
"""

from django.core.management.base import BaseCommand, CommandError

from scheduling import services
from scheduling.types import academy_setting


class Command(BaseCommand):
    help = 'Project class sessions from every active schedule'

    def add_arguments(self, parser):
        parser.add_argument(
            '--weeks',
            type=int,
            default=None,
            help='Number of weeks ahead to project (default: ACADEMY["PROJECTION_WEEKS"])'
        )

    def handle(self, *args, **options):
        weeks = options['weeks'] or academy_setting('PROJECTION_WEEKS')

        self.stdout.write(
            f'Projecting sessions for the next {weeks} week(s)...'
        )

        report = services.sync_all_schedules(horizon_weeks=weeks)

        if not report.ok:
            raise CommandError(
                f'Sync failed for schedule(s) {report.failed}; '
                f'{report.sessions_projected} session(s) projected for the rest. Rerun to retry.'
            )

        self.stdout.write(
            self.style.SUCCESS(
                f'Successfully projected {report.sessions_projected} session(s) '
                f'from {report.schedules_processed} schedule(s)'
            )
        )
