"""
Models for the academy scheduling engine.

This implementation uses the session materialization pattern where:
- ClassSchedule stores the weekly recurrence rule for a student or a group
- ClassSession stores every concrete dated class projected from a schedule
- AttendanceRecord and Homework are written when a session is finalized

Sessions, attendance records and homework use deterministic primary keys
derived from their natural keys, backed by explicit unique constraints.
"""

from datetime import datetime, timedelta

from django.db import models
from django.core.exceptions import ValidationError
from django.utils import timezone

from .managers import ClassScheduleManager, ClassSessionManager, StudentManager
from .types import DEFAULT_SESSION_TOPIC, WEEKDAY_NAMES


class Student(models.Model):
    """
    A learner with a billing cycle and curriculum progress.

    Billing invariant: fee_status becomes 'due' once classes_attended reaches
    total_classes_allowed, and only a payment confirmation resets the cycle.
    """

    STATUS_CHOICES = [
        ('active', 'Active'),
        ('break', 'On Break'),
    ]

    BILLING_TYPE_CHOICES = [
        ('monthly', 'Monthly'),
        ('per_class', 'Per Class'),
    ]

    FEE_STATUS_CHOICES = [
        ('paid', 'Paid'),
        ('due', 'Due'),
        ('blocked', 'Blocked'),
    ]

    full_name = models.CharField(max_length=200)
    email = models.EmailField(blank=True, default='')
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='active')
    is_deleted = models.BooleanField(default=False)

    course = models.CharField(max_length=100, blank=True, default='')
    level = models.CharField(max_length=100, blank=True, default='')
    assigned_topics = models.JSONField(default=list, blank=True)
    current_topic_index = models.PositiveIntegerField(default=0)

    billing_type = models.CharField(
        max_length=20,
        choices=BILLING_TYPE_CHOICES,
        default='monthly'
    )
    fee_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    total_classes_allowed = models.PositiveIntegerField(default=8)
    classes_attended = models.PositiveIntegerField(default=0)
    fee_status = models.CharField(
        max_length=10,
        choices=FEE_STATUS_CHOICES,
        default='paid'
    )
    payment_requested = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = StudentManager()

    class Meta:
        ordering = ['full_name']
        indexes = [
            models.Index(fields=['status', 'is_deleted']),
            models.Index(fields=['fee_status']),
        ]

    def __str__(self):
        return self.full_name

    @property
    def classes_remaining(self):
        return self.total_classes_allowed - self.classes_attended

    @property
    def is_eligible(self):
        """Whether new sessions may be projected for this student."""
        return self.status == 'active' and not self.is_deleted

    @property
    def current_topic(self):
        if self.current_topic_index < len(self.assigned_topics):
            return self.assigned_topics[self.current_topic_index]
        return None


class StudentGroup(models.Model):
    """A batch of students taught together."""

    name = models.CharField(max_length=200)
    course = models.CharField(max_length=100, blank=True, default='')
    level = models.CharField(max_length=100, blank=True, default='')
    students = models.ManyToManyField(Student, related_name='groups', blank=True)
    active = models.BooleanField(default=True)
    is_deleted = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']

    def __str__(self):
        return self.name


class ClassSchedule(models.Model):
    """
    Weekly recurrence rule for one student or one group.

    ``days`` holds weekday integers with 0=Sunday and 6=Saturday.
    Actual classes are stored in ClassSession.
    """

    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='schedules',
        null=True,
        blank=True
    )
    group = models.ForeignKey(
        StudentGroup,
        on_delete=models.CASCADE,
        related_name='schedules',
        null=True,
        blank=True
    )
    course = models.CharField(max_length=100, blank=True, default='')

    days = models.JSONField(
        default=list,
        blank=True,
        help_text="Weekdays for recurring classes (0=Sunday, 6=Saturday)"
    )
    start_time = models.TimeField()
    end_time = models.TimeField()
    start_date = models.DateField(
        help_text="First date this schedule produces classes"
    )

    is_active = models.BooleanField(default=True)
    is_deleted = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = ClassScheduleManager()

    class Meta:
        ordering = ['start_time']
        indexes = [
            models.Index(fields=['is_active', 'is_deleted']),
        ]

    def __str__(self):
        return (
            f"{self.target_name} - {', '.join(self.day_names)} "
            f"{self.start_time.strftime('%H:%M')}-{self.end_time.strftime('%H:%M')}"
        )

    @property
    def target_name(self):
        if self.group_id:
            return self.group.name
        if self.student_id:
            return self.student.full_name
        return 'Unassigned'

    @property
    def day_names(self):
        return [WEEKDAY_NAMES[d] for d in sorted(self.days) if 0 <= d <= 6]

    def clean(self):
        """Validate schedule data."""
        super().clean()

        errors = {}
        if bool(self.student_id) == bool(self.group_id):
            errors['student'] = 'A schedule targets exactly one student or one group.'

        if not isinstance(self.days, list) or any(
            not isinstance(d, int) or isinstance(d, bool) or not 0 <= d <= 6
            for d in self.days
        ):
            errors['days'] = 'Days must be weekday integers between 0 (Sunday) and 6 (Saturday).'
        elif self.is_active and not self.days:
            errors['days'] = 'Select at least one day.'

        if self.start_time and self.end_time and self.end_time <= self.start_time:
            errors['end_time'] = 'End time must be after start time.'

        if errors:
            raise ValidationError(errors)

    def save(self, *args, **kwargs):
        """Save with validation."""
        self.full_clean()
        super().save(*args, **kwargs)


class ClassSession(models.Model):
    """
    One concrete dated class projected from a ClassSchedule.

    The primary key is derived from (schedule, start) so repeated projection
    never duplicates a slot. ``schedule`` is a weak back reference: deleting
    the schedule keeps completed history with the link cleared.
    """

    STATUS_CHOICES = [
        ('upcoming', 'Upcoming'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]

    id = models.CharField(primary_key=True, max_length=100, editable=False)

    schedule = models.ForeignKey(
        ClassSchedule,
        on_delete=models.SET_NULL,
        related_name='sessions',
        null=True,
        blank=True
    )
    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='sessions',
        null=True,
        blank=True
    )
    group = models.ForeignKey(
        StudentGroup,
        on_delete=models.CASCADE,
        related_name='sessions',
        null=True,
        blank=True
    )
    course = models.CharField(max_length=100, blank=True, default='')

    start = models.DateTimeField()
    end = models.DateTimeField()
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default='upcoming'
    )
    topic = models.CharField(max_length=200, default=DEFAULT_SESSION_TOPIC)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = ClassSessionManager()

    class Meta:
        ordering = ['start']
        constraints = [
            models.UniqueConstraint(
                fields=['schedule', 'start'],
                name='unique_session_per_schedule_slot'
            ),
        ]
        indexes = [
            models.Index(fields=['start', 'status']),
            models.Index(fields=['schedule', 'status', 'start']),
        ]

    def __str__(self):
        status_str = f" [{self.status}]" if self.status != 'upcoming' else ""
        local_start = timezone.localtime(self.start)
        return f"{self.target_name} - {local_start.strftime('%Y-%m-%d %H:%M')}{status_str}"

    @staticmethod
    def build_id(schedule_id, start: datetime) -> str:
        """Deterministic id for the slot of ``schedule_id`` starting at ``start``."""
        if timezone.is_aware(start):
            start = timezone.localtime(start)
        return f"sess_{schedule_id}_{start.strftime('%Y%m%dT%H%M%S')}"

    @property
    def is_group(self):
        return self.group_id is not None

    @property
    def target_name(self):
        if self.group_id:
            return self.group.name
        if self.student_id:
            return self.student.full_name
        return 'Unassigned'

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def time_slot(self):
        """Local HH:MM start used to detect double bookings."""
        return timezone.localtime(self.start).strftime('%H:%M')

    def clean(self):
        """Validate session data."""
        super().clean()

        if self.start and self.end and self.end <= self.start:
            raise ValidationError({
                'end': 'End must be after start.'
            })

    def save(self, *args, **kwargs):
        """Save with validation."""
        self.full_clean()
        super().save(*args, **kwargs)


class AttendanceRecord(models.Model):
    """Presence of one student at one session; at most one per pair."""

    id = models.CharField(primary_key=True, max_length=150, editable=False)
    session = models.ForeignKey(
        ClassSession,
        on_delete=models.CASCADE,
        related_name='attendance_records'
    )
    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='attendance_records'
    )
    present = models.BooleanField()
    topic_completed = models.CharField(max_length=200, blank=True, default='')
    course = models.CharField(max_length=100, blank=True, default='')
    recorded_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-recorded_at']
        constraints = [
            models.UniqueConstraint(
                fields=['session', 'student'],
                name='unique_attendance_per_session_student'
            ),
        ]

    def __str__(self):
        mark = 'present' if self.present else 'absent'
        return f"{self.student_id} @ {self.session_id}: {mark}"

    @staticmethod
    def build_id(session_id: str, student_id) -> str:
        return f"att_{session_id}_{student_id}"


class Homework(models.Model):
    """Task assigned to a student, optionally from a finalized session."""

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('submitted', 'Submitted'),
        ('reviewed', 'Reviewed'),
    ]

    id = models.CharField(primary_key=True, max_length=150, editable=False)
    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='homework'
    )
    session = models.ForeignKey(
        ClassSession,
        on_delete=models.SET_NULL,
        related_name='homework',
        null=True,
        blank=True
    )
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True, default='')
    resource_link = models.URLField(max_length=500, blank=True, default='')
    due_date = models.DateField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['due_date']

    def __str__(self):
        return f"{self.title} ({self.status})"

    @staticmethod
    def build_id(session_id: str, student_id) -> str:
        return f"hw_{session_id}_{student_id}"
