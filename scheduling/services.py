"""
Service layer for schedule projection and session business logic.
Services are framework-agnostic and handle all business operations.

Projection strategy: every call retracts the schedule's upcoming sessions
from today on and regenerates the whole window from the current schedule
parameters. Deterministic session ids make repeated or concurrent calls
converge on the same rows; completed and cancelled sessions are never
touched.
"""

import logging
from typing import List, Optional, Tuple
from datetime import datetime, date, time, timedelta

from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from .cache import SCHEDULES, SESSIONS, collection_cache
from .exceptions import ScheduleValidationError, SessionStateError
from .models import ClassSchedule, ClassSession, Student
from .types import (
    DEFAULT_SESSION_TOPIC,
    ScheduleUpdateData,
    SyncReport,
    academy_setting,
)

logger = logging.getLogger(__name__)


def weekday_index(day: date) -> int:
    """Weekday of ``day`` with 0=Sunday and 6=Saturday."""
    return day.isoweekday() % 7


def project_schedule(
    schedule: ClassSchedule,
    horizon_weeks: Optional[int] = None,
    today: Optional[date] = None
) -> List[ClassSession]:
    """
    Project a schedule into sessions covering the rolling horizon.

    Safe to call repeatedly: with unchanged schedule parameters the resulting
    session set is identical after every call.

    Args:
        schedule: ClassSchedule instance
        horizon_weeks: Weeks ahead of today to cover (exclusive upper bound)
        today: Override for the current local date

    Returns:
        List of sessions written by this call
    """
    today = today or timezone.localdate()
    if horizon_weeks is None:
        horizon_weeks = academy_setting('PROJECTION_WEEKS')

    retract_future_sessions(schedule, today)

    if not schedule.is_active or schedule.is_deleted:
        return []

    if schedule.student_id and not _student_is_eligible(schedule.student_id):
        logger.warning(
            "Schedule %s not projected: student %s is missing, deleted or on break",
            schedule.pk, schedule.student_id
        )
        return []

    dates_to_generate = _calculate_session_dates(schedule, today, horizon_weeks)
    sessions = _create_session_objects(schedule, dates_to_generate)
    saved = _bulk_save_sessions(sessions)

    collection_cache.invalidate(SESSIONS)
    logger.info(
        "Projected %d session(s) for schedule %s over %d week(s)",
        len(saved), schedule.pk, horizon_weeks
    )
    return saved


def sync_all_schedules(
    horizon_weeks: Optional[int] = None,
    today: Optional[date] = None
) -> SyncReport:
    """
    Project every active schedule.

    Each schedule is projected in its own savepoint, so a failure rolls back
    only that schedule's retraction and is logged and reported; the others
    still run.
    Rerunning the whole sync is safe.

    Args:
        horizon_weeks: Weeks ahead of today to cover

    Returns:
        SyncReport with counts and the ids of failed schedules
    """
    report = SyncReport()

    for schedule in ClassSchedule.objects.active():
        report.schedules_processed += 1
        try:
            with transaction.atomic():
                created = project_schedule(schedule, horizon_weeks, today)
        except Exception:
            logger.exception("Projection failed for schedule %s", schedule.pk)
            report.failed.append(schedule.pk)
            continue
        report.sessions_projected += len(created)

    return report


def retract_future_sessions(schedule: ClassSchedule, today: Optional[date] = None) -> int:
    """
    Delete the schedule's upcoming sessions starting today or later.

    Sessions that already carry attendance records (an interrupted finalize)
    are kept so a retry cannot credit a student twice.

    Returns:
        Number of sessions deleted
    """
    if schedule.pk is None:
        return 0

    today = today or timezone.localdate()
    _, deleted = ClassSession.objects.retractable(schedule, today).filter(
        attendance_records__isnull=True
    ).delete()
    count = deleted.get(ClassSession._meta.label, 0)

    if count:
        collection_cache.invalidate(SESSIONS)
        logger.debug("Retracted %d session(s) of schedule %s", count, schedule.pk)
    return count


def _student_is_eligible(student_id: int) -> bool:
    student = Student.objects.filter(pk=student_id).first()
    return student is not None and student.is_eligible


def _calculate_session_dates(
    schedule: ClassSchedule,
    today: date,
    horizon_weeks: int
) -> List[date]:
    """Calculate every date in the window that falls on a schedule day."""
    end_date = today + timedelta(weeks=horizon_weeks)
    weekdays = set(schedule.days)

    dates = []
    current_date = max(today, schedule.start_date)

    while current_date < end_date:
        if weekday_index(current_date) in weekdays:
            dates.append(current_date)
        current_date += timedelta(days=1)

    return dates


def _create_session_objects(
    schedule: ClassSchedule,
    dates: List[date]
) -> List[ClassSession]:
    """Create session objects (not yet saved to DB) for free slots."""
    slots = []
    for session_date in dates:
        start = _make_aware_datetime(session_date, schedule.start_time)
        end = _make_aware_datetime(session_date, schedule.end_time)
        slots.append((ClassSession.build_id(schedule.pk, start), start, end))

    occupied = ClassSession.objects.filter(
        Q(pk__in=[s[0] for s in slots]) |
        Q(schedule=schedule, start__in=[s[1] for s in slots])
    ).values_list('pk', 'start')
    occupied_ids = {pk for pk, _ in occupied}
    occupied_starts = {start for _, start in occupied}

    sessions = []
    for session_id, start, end in slots:
        if session_id in occupied_ids or start in occupied_starts:
            logger.debug("Slot %s already finalized; keeping it", session_id)
            continue
        sessions.append(ClassSession(
            id=session_id,
            schedule=schedule,
            student_id=schedule.student_id,
            group_id=schedule.group_id,
            course=schedule.course,
            start=start,
            end=end,
            status='upcoming',
            topic=DEFAULT_SESSION_TOPIC
        ))

    return sessions


def _make_aware_datetime(date_obj: date, time_obj: time) -> datetime:
    """Combine date and time into timezone-aware datetime."""
    dt = datetime.combine(date_obj, time_obj)
    return timezone.make_aware(dt)


def _bulk_save_sessions(sessions: List[ClassSession]) -> List[ClassSession]:
    """Bulk create sessions; rows written concurrently by another projection are left as is."""
    if sessions:
        ClassSession.objects.bulk_create(sessions, ignore_conflicts=True)
    return sessions


@transaction.atomic
def create_schedule(
    days: List[int],
    start_time: time,
    end_time: time,
    start_date: date,
    student: Optional[Student] = None,
    group=None,
    course: Optional[str] = None,
    is_active: bool = True,
    project: bool = True,
    horizon_weeks: Optional[int] = None
) -> Tuple[ClassSchedule, int]:
    """
    Create a new class schedule and optionally project its sessions.

    Args:
        days: Weekdays (0=Sunday, 6=Saturday)
        start_time: Class start time of day
        end_time: Class end time of day
        start_date: First date the schedule is effective
        student: Target student (exclusive with group)
        group: Target StudentGroup (exclusive with student)
        course: Course label; defaults to the target's course
        is_active: Whether the schedule produces sessions
        project: Whether to project sessions immediately
        horizon_weeks: Weeks ahead to project

    Returns:
        Tuple of (created ClassSchedule, number of sessions projected)

    Raises:
        ScheduleValidationError: If validation fails
    """
    if course is None:
        target = student or group
        course = target.course if target is not None else ''

    schedule = ClassSchedule(
        student=student,
        group=group,
        course=course,
        days=sorted(set(days)),
        start_time=start_time,
        end_time=end_time,
        start_date=start_date,
        is_active=is_active
    )
    _save_schedule(schedule)
    logger.info("Created schedule %s for %s", schedule.pk, schedule.target_name)

    sessions_projected = 0
    if project:
        sessions_projected = len(project_schedule(schedule, horizon_weeks))

    return schedule, sessions_projected


@transaction.atomic
def update_schedule(
    schedule: ClassSchedule,
    update_data: ScheduleUpdateData,
    project: bool = True,
    horizon_weeks: Optional[int] = None
) -> ClassSchedule:
    """
    Update a class schedule and regenerate its future sessions.

    Args:
        schedule: ClassSchedule instance to update
        update_data: ScheduleUpdateData with fields to update
        project: Whether to re-project (retracts sessions when deactivated)

    Returns:
        Updated ClassSchedule instance

    Raises:
        ScheduleValidationError: If validation fails
    """
    schedule_fields = {
        'days': sorted(set(update_data.days)) if update_data.days is not None else None,
        'start_time': update_data.start_time,
        'end_time': update_data.end_time,
        'start_date': update_data.start_date,
        'course': update_data.course,
        'is_active': update_data.is_active,
    }
    _apply_field_updates(schedule, schedule_fields)
    _save_schedule(schedule)

    if project:
        project_schedule(schedule, horizon_weeks)
    elif not schedule.is_active:
        retract_future_sessions(schedule)

    return schedule


@transaction.atomic
def deactivate_schedule(schedule: ClassSchedule) -> int:
    """
    Deactivate a schedule and retract its future upcoming sessions.

    Returns:
        Number of sessions retracted
    """
    schedule.is_active = False
    _save_schedule(schedule)
    retracted = retract_future_sessions(schedule)
    logger.info("Deactivated schedule %s; retracted %d session(s)", schedule.pk, retracted)
    return retracted


@transaction.atomic
def delete_schedule(schedule: ClassSchedule) -> None:
    """
    Hard-delete a schedule.

    Upcoming and cancelled sessions go with it; completed sessions are kept
    as history with their schedule link cleared. Deleting a schedule that is
    already gone is a no-op.
    """
    if schedule.pk is None or not ClassSchedule.objects.filter(pk=schedule.pk).exists():
        return

    schedule_id = schedule.pk
    ClassSession.objects.for_schedule(schedule).exclude(status='completed').filter(
        attendance_records__isnull=True
    ).delete()
    schedule.delete()

    collection_cache.invalidate(SCHEDULES, SESSIONS)
    logger.info("Deleted schedule %s", schedule_id)


def _save_schedule(schedule: ClassSchedule) -> None:
    try:
        schedule.save()
    except ValidationError as exc:
        raise ScheduleValidationError(_format_validation_error(exc)) from exc
    collection_cache.invalidate(SCHEDULES)


def _format_validation_error(exc: ValidationError) -> str:
    if hasattr(exc, 'message_dict'):
        return '; '.join(
            f"{field}: {' '.join(messages)}" for field, messages in exc.message_dict.items()
        )
    return ' '.join(exc.messages)


@transaction.atomic
def reschedule_session(
    session: ClassSession,
    start: datetime,
    end: datetime
) -> ClassSession:
    """
    Move an upcoming session to a new time.

    Args:
        session: ClassSession instance to move
        start: New start datetime
        end: New end datetime

    Returns:
        Updated ClassSession instance

    Raises:
        SessionStateError: If the session is not upcoming
        ScheduleValidationError: If the new slot is invalid or taken
    """
    if session.status != 'upcoming':
        raise SessionStateError(f"Cannot reschedule a {session.status} session")

    if end <= start:
        raise ScheduleValidationError("End must be after start")

    if session.schedule_id and ClassSession.objects.filter(
        schedule_id=session.schedule_id,
        start=start
    ).exclude(pk=session.pk).exists():
        raise ScheduleValidationError("Another session of this schedule starts at that time")

    session.start = start
    session.end = end
    session.save()

    collection_cache.invalidate(SESSIONS)
    return session


@transaction.atomic
def cancel_session(session: ClassSession) -> ClassSession:
    """
    Cancel an upcoming session.

    Raises:
        SessionStateError: If the session is already completed or cancelled
    """
    if session.status != 'upcoming':
        raise SessionStateError(f"Session is already {session.status}")

    session.status = 'cancelled'
    session.save()

    collection_cache.invalidate(SESSIONS)
    logger.info("Cancelled session %s", session.pk)
    return session


def get_sessions_in_range(
    start_datetime: datetime,
    end_datetime: datetime,
    status: Optional[str] = None
) -> List[ClassSession]:
    """
    Get sessions within a datetime range.

    Args:
        start_datetime: Range start
        end_datetime: Range end
        status: Optional status filter ('upcoming', 'completed', 'cancelled')

    Raises:
        ScheduleValidationError: If start_datetime >= end_datetime
    """
    if start_datetime >= end_datetime:
        raise ScheduleValidationError("Start datetime must be before end datetime")

    queryset = ClassSession.objects.in_range(start_datetime, end_datetime).select_related(
        'student', 'group'
    )

    if status:
        queryset = queryset.filter(status=status)

    return list(queryset)


def _apply_field_updates(obj, fields: dict) -> None:
    """Apply field updates to object if values are not None."""
    for field_name, value in fields.items():
        if value is not None:
            setattr(obj, field_name, value)
