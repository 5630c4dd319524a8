"""
Data types and constants for the academy scheduling engine.

This module contains:
- DTOs (Data Transfer Objects) for service layer operations
- Constants used across the application
- Accessors for the ``ACADEMY`` settings tunables
"""

from dataclasses import dataclass, field
from typing import List, Optional
from datetime import date, time
from decimal import Decimal

from django.conf import settings


DEFAULT_PROJECTION_WEEKS = 3
DEFAULT_REMINDER_LEAD_MINUTES = 10
DEFAULT_REMINDER_POLL_SECONDS = 45
DEFAULT_HOMEWORK_DUE_DAYS = 7
DEFAULT_CACHE_TIMEOUT = 300

DEFAULT_SESSION_TOPIC = 'Scheduled Session'

WEEKDAY_NAMES = [
    'Sunday',
    'Monday',
    'Tuesday',
    'Wednesday',
    'Thursday',
    'Friday',
    'Saturday',
]

_DEFAULTS = {
    'PROJECTION_WEEKS': DEFAULT_PROJECTION_WEEKS,
    'REMINDER_LEAD_MINUTES': DEFAULT_REMINDER_LEAD_MINUTES,
    'REMINDER_POLL_SECONDS': DEFAULT_REMINDER_POLL_SECONDS,
    'HOMEWORK_DUE_DAYS': DEFAULT_HOMEWORK_DUE_DAYS,
    'CACHE_TIMEOUT': DEFAULT_CACHE_TIMEOUT,
}


def academy_setting(name: str) -> int:
    """Read a tunable from ``settings.ACADEMY``, falling back to the default."""
    overrides = getattr(settings, 'ACADEMY', {}) or {}
    return overrides.get(name, _DEFAULTS[name])


@dataclass
class ScheduleUpdateData:
    """DTO for schedule update operations."""
    days: Optional[List[int]] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    start_date: Optional[date] = None
    course: Optional[str] = None
    is_active: Optional[bool] = None


@dataclass
class HomeworkPayload:
    """Homework supplied for one student when a session is finalized."""
    message: str = ''
    link: str = ''

    @property
    def is_empty(self) -> bool:
        return not (self.message or '').strip() and not (self.link or '').strip()


@dataclass
class AttendanceResult:
    """Finalize-time input for a single student."""
    student_id: int
    present: bool
    homework: Optional[HomeworkPayload] = None


@dataclass
class StudentOutcome:
    """What finalization did for one student."""
    student_id: int
    present: bool
    credited: bool = False
    homework_assigned: bool = False
    warning: Optional[str] = None


@dataclass
class FinalizeOutcome:
    """Result of finalizing a session."""
    session_id: str
    students: List[StudentOutcome] = field(default_factory=list)

    @property
    def warnings(self) -> List[str]:
        return [s.warning for s in self.students if s.warning]


@dataclass
class SyncReport:
    """Result of projecting every active schedule."""
    schedules_processed: int = 0
    sessions_projected: int = 0
    failed: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class BillingSummary:
    """Roster-wide billing figures for the dashboard."""
    total_students: int = 0
    overdue_student_ids: List[int] = field(default_factory=list)
    expected_revenue: Decimal = Decimal('0')
    collected_revenue: Decimal = Decimal('0')

    @property
    def collection_rate(self) -> int:
        if self.expected_revenue <= 0:
            return 0
        return round(self.collected_revenue / self.expected_revenue * 100)
