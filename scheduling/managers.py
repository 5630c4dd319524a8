"""
Custom managers and querysets for scheduling models.

QuerySets define chainable query methods.
Managers use QuerySets to enable method chaining.
No business logic should be here - only query operations.
"""

from datetime import date, datetime, time

from django.db import models
from django.utils import timezone


def start_of_day(day: date) -> datetime:
    """Aware local midnight at the beginning of ``day``."""
    return timezone.make_aware(datetime.combine(day, time.min))


class StudentQuerySet(models.QuerySet):
    """Custom queryset for Student model with chainable methods."""

    def current(self):
        """Get students that have not been soft deleted."""
        return self.filter(is_deleted=False)

    def active(self):
        """Get students eligible for classes (not on break, not deleted)."""
        return self.filter(status='active', is_deleted=False)

    def overdue(self):
        """Get students whose fee is due."""
        return self.filter(fee_status='due', is_deleted=False)


class StudentManager(models.Manager):
    """Custom manager for Student model."""

    def get_queryset(self):
        """Return custom queryset for method chaining."""
        return StudentQuerySet(self.model, using=self._db)

    def current(self):
        """Get students that have not been soft deleted."""
        return self.get_queryset().current()

    def active(self):
        """Get students eligible for classes (not on break, not deleted)."""
        return self.get_queryset().active()

    def overdue(self):
        """Get students whose fee is due."""
        return self.get_queryset().overdue()


class ClassScheduleQuerySet(models.QuerySet):
    """Custom queryset for ClassSchedule model with chainable methods."""

    def active(self):
        """Get all active, non-deleted schedules."""
        return self.filter(is_active=True, is_deleted=False)

    def for_student(self, student):
        """
        Get schedules targeting a single student.

        Args:
            student: Student instance or primary key
        """
        return self.filter(student=student)

    def for_group(self, group):
        """
        Get schedules targeting a group.

        Args:
            group: StudentGroup instance or primary key
        """
        return self.filter(group=group)


class ClassScheduleManager(models.Manager):
    """Custom manager for ClassSchedule model."""

    def get_queryset(self):
        """Return custom queryset for method chaining."""
        return ClassScheduleQuerySet(self.model, using=self._db)

    def active(self):
        """Get all active, non-deleted schedules."""
        return self.get_queryset().active()

    def for_student(self, student):
        return self.get_queryset().for_student(student)

    def for_group(self, group):
        return self.get_queryset().for_group(group)


class ClassSessionQuerySet(models.QuerySet):
    """Custom queryset for ClassSession model with chainable methods."""

    def upcoming(self):
        """Get sessions that have not been finalized or cancelled."""
        return self.filter(status='upcoming')

    def for_schedule(self, schedule):
        """
        Get all sessions projected from a schedule.

        Args:
            schedule: ClassSchedule instance or primary key
        """
        return self.filter(schedule=schedule)

    def starting_from(self, day: date):
        """
        Get sessions starting on ``day`` or later.

        Args:
            day: date object, interpreted in the current time zone
        """
        return self.filter(start__gte=start_of_day(day))

    def on_date(self, day: date):
        """Get sessions starting on a local calendar day."""
        return self.filter(start__date=day)

    def in_range(self, start_datetime, end_datetime):
        """
        Get sessions within a datetime range.

        Args:
            start_datetime: datetime object
            end_datetime: datetime object
        """
        return self.filter(
            start__gte=start_datetime,
            start__lte=end_datetime
        )

    def retractable(self, schedule, today: date):
        """Upcoming sessions of ``schedule`` from ``today`` on."""
        return self.for_schedule(schedule).upcoming().starting_from(today)


class ClassSessionManager(models.Manager):
    """Custom manager for ClassSession model."""

    def get_queryset(self):
        """Return custom queryset for method chaining."""
        return ClassSessionQuerySet(self.model, using=self._db)

    def upcoming(self):
        """Get sessions that have not been finalized or cancelled."""
        return self.get_queryset().upcoming()

    def for_schedule(self, schedule):
        return self.get_queryset().for_schedule(schedule)

    def on_date(self, day):
        return self.get_queryset().on_date(day)

    def in_range(self, start_datetime, end_datetime):
        """
        Get sessions within a datetime range.

        Args:
            start_datetime: datetime object
            end_datetime: datetime object
        """
        return self.get_queryset().in_range(start_datetime, end_datetime)

    def retractable(self, schedule, today):
        return self.get_queryset().retractable(schedule, today)
