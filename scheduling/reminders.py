"""
One-shot class reminders.

``ReminderTrigger.poll`` is called on a fixed interval. A session fires once
per trigger instance when it starts within the lead window. Fired and
dismissed ids are kept in memory until the session starts.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Set

import django.dispatch
from django.utils import timezone

from .models import ClassSession
from .types import academy_setting

logger = logging.getLogger(__name__)

# Sent with ``session`` and ``minutes_until_start`` keyword arguments.
class_reminder = django.dispatch.Signal()


def signal_sink(session: ClassSession, minutes_until_start: int) -> None:
    """Default sink: broadcast the reminder to signal receivers."""
    logger.info(
        "Reminder: %s starts in %d minute(s) at %s",
        session.target_name,
        minutes_until_start,
        timezone.localtime(session.start).strftime('%H:%M')
    )
    class_reminder.send(
        sender=ClassSession,
        session=session,
        minutes_until_start=minutes_until_start
    )


class ReminderTrigger:
    """Decides when a class reminder fires."""

    def __init__(
        self,
        sink: Optional[Callable[[ClassSession, int], None]] = None,
        lead_minutes: Optional[int] = None
    ):
        self.sink = sink or signal_sink
        if lead_minutes is None:
            lead_minutes = academy_setting('REMINDER_LEAD_MINUTES')
        self.lead = timedelta(minutes=lead_minutes)
        self._handled: Set[str] = set()

    def is_handled(self, session_id: str) -> bool:
        return session_id in self._handled

    def dismiss(self, session_id: str) -> None:
        """Never fire for ``session_id`` on this trigger."""
        self._handled.add(session_id)

    def due(self, now: Optional[datetime] = None) -> List[ClassSession]:
        """Upcoming sessions inside the window that have not fired yet."""
        now = now or timezone.now()
        candidates = ClassSession.objects.upcoming().filter(
            start__gt=now,
            start__lte=now + self.lead
        ).select_related('student', 'group')
        return [s for s in candidates if s.pk not in self._handled]

    def poll(self, now: Optional[datetime] = None) -> List[ClassSession]:
        """
        Fire reminders for sessions starting within the lead window.

        A sink that raises is logged and the session is retried on the next
        poll; the remaining due sessions are still delivered.

        Returns:
            Sessions fired during this poll
        """
        now = now or timezone.now()
        self._prune(now)
        fired = []

        for session in self.due(now):
            self._handled.add(session.pk)
            minutes = int((session.start - now).total_seconds() // 60)
            try:
                self.sink(session, minutes)
            except Exception:
                logger.exception("Reminder for session %s failed; will retry", session.pk)
                self._handled.discard(session.pk)
                continue
            fired.append(session)

        return fired

    def _prune(self, now: datetime) -> None:
        """Forget sessions that have started or no longer exist."""
        if not self._handled:
            return
        self._handled = set(
            ClassSession.objects.filter(
                pk__in=self._handled,
                start__gt=now
            ).values_list('pk', flat=True)
        )
