"""
Management command that polls for classes about to start and fires reminders.
"""

import logging
import time

from django.core.management.base import BaseCommand
from django.db import DatabaseError

from scheduling.reminders import ReminderTrigger
from scheduling.types import academy_setting

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Poll upcoming sessions and fire one reminder per class shortly before it starts'

    def add_arguments(self, parser):
        parser.add_argument(
            '--interval',
            type=int,
            default=None,
            help='Seconds between polls (default: ACADEMY["REMINDER_POLL_SECONDS"])'
        )
        parser.add_argument(
            '--once',
            action='store_true',
            help='Run a single poll and exit'
        )

    def handle(self, *args, **options):
        interval = options['interval'] or academy_setting('REMINDER_POLL_SECONDS')
        trigger = ReminderTrigger()

        while True:
            try:
                fired = trigger.poll()
            except DatabaseError:
                # Fired-state survives; the next poll retries.
                logger.exception("Reminder poll failed")
                self.stderr.write(f'Reminder poll failed; retrying in {interval} second(s)')
                fired = []

            for session in fired:
                self.stdout.write(f'Reminder fired for {session}')
            if options['once']:
                break
            time.sleep(interval)
