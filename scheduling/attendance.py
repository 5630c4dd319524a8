"""
Attendance finalization and billing-cycle actions.

Finalizing moves a session from upcoming to completed. Each student result
is applied in its own transaction with the student row locked, and the
deterministic attendance record id decides whether the student was already
credited, so a retried finalize increments billing at most once per
(session, student).
"""

import logging
from datetime import timedelta
from typing import Iterable, List

from django.db import transaction
from django.utils import timezone

from .cache import SESSIONS, STUDENTS, collection_cache
from .exceptions import FinalizeIncompleteError, ScheduleValidationError, SessionStateError
from .models import AttendanceRecord, ClassSession, Homework, Student
from .types import (
    AttendanceResult,
    FinalizeOutcome,
    HomeworkPayload,
    StudentOutcome,
    academy_setting,
)

logger = logging.getLogger(__name__)


def finalize_session(
    session: ClassSession,
    results: Iterable[AttendanceResult]
) -> FinalizeOutcome:
    """
    Record attendance for a session and mark it completed.

    Students missing from ``results`` are skipped, not marked absent.

    Args:
        session: Upcoming ClassSession to close
        results: One AttendanceResult per student marked

    Returns:
        FinalizeOutcome describing what happened per student

    Raises:
        SessionStateError: If the session is not upcoming
        ScheduleValidationError: If a result names an unknown student or one
            outside the session's roster
        FinalizeIncompleteError: If any student could not be processed; the
            session stays upcoming and finalize may be retried
    """
    results = list(results)
    session.refresh_from_db(fields=['status'])
    if session.status != 'upcoming':
        raise SessionStateError(f"Session {session.pk} is already {session.status}")

    _validate_results(session, results)

    outcome = FinalizeOutcome(session_id=session.pk)
    failed = []

    for result in results:
        try:
            outcome.students.append(_apply_result(session, result))
        except Exception:
            logger.exception(
                "Attendance for student %s in session %s failed",
                result.student_id, session.pk
            )
            failed.append(result.student_id)

    collection_cache.invalidate(STUDENTS, SESSIONS)

    if failed:
        raise FinalizeIncompleteError(session.pk, failed)

    _mark_completed(session)
    logger.info(
        "Finalized session %s: %d present, %d absent",
        session.pk,
        sum(1 for r in results if r.present),
        sum(1 for r in results if not r.present)
    )
    return outcome


def _validate_results(session: ClassSession, results: List[AttendanceResult]) -> None:
    """Reject the whole call before any write if the input is inconsistent."""
    student_ids = [r.student_id for r in results]
    if len(student_ids) != len(set(student_ids)):
        raise ScheduleValidationError("Each student may appear only once per finalize")

    roster = _session_roster(session)
    outsiders = sorted(set(student_ids) - roster)
    if outsiders:
        raise ScheduleValidationError(
            f"Students {outsiders} are not enrolled in session {session.pk}"
        )


def _session_roster(session: ClassSession) -> set:
    if session.group_id:
        return set(
            Student.objects.current().filter(groups=session.group_id).values_list('pk', flat=True)
        )
    if session.student_id:
        return set(Student.objects.current().filter(pk=session.student_id).values_list('pk', flat=True))
    return set()


@transaction.atomic
def _apply_result(session: ClassSession, result: AttendanceResult) -> StudentOutcome:
    student = Student.objects.select_for_update().get(pk=result.student_id)
    outcome = StudentOutcome(student_id=student.pk, present=result.present)

    topic = session.topic or 'Review'
    record, created = AttendanceRecord.objects.get_or_create(
        id=AttendanceRecord.build_id(session.pk, student.pk),
        defaults={
            'session': session,
            'student': student,
            'present': result.present,
            'topic_completed': topic,
            'course': session.course,
        }
    )
    if not created:
        logger.debug(
            "Student %s already recorded for session %s; not credited again",
            student.pk, session.pk
        )
        outcome.present = record.present
        return outcome

    if not result.present:
        return outcome

    _credit_attendance(student)
    student.save(update_fields=[
        'classes_attended', 'current_topic_index', 'fee_status', 'updated_at'
    ])
    outcome.credited = True
    outcome.warning = _billing_warning(student)

    if result.homework is not None and not result.homework.is_empty:
        _assign_homework(session, student, result.homework)
        outcome.homework_assigned = True

    return outcome


def _credit_attendance(student: Student) -> None:
    """Advance billing counters and curriculum pointer for one attended class."""
    student.classes_attended += 1

    if student.current_topic_index < len(student.assigned_topics):
        student.current_topic_index += 1

    if student.classes_remaining <= 0:
        student.fee_status = 'due'


def _billing_warning(student: Student):
    remaining = student.classes_remaining
    if remaining <= 0:
        return f"Payment required for {student.full_name}"
    if remaining == 1:
        return f"Last class for {student.full_name}"
    return None


def _assign_homework(session: ClassSession, student: Student, payload: HomeworkPayload) -> Homework:
    due_date = timezone.localdate() + timedelta(days=academy_setting('HOMEWORK_DUE_DAYS'))
    homework, _ = Homework.objects.update_or_create(
        id=Homework.build_id(session.pk, student.pk),
        defaults={
            'student': student,
            'session': session,
            'title': f"Homework: {session.topic or 'Review'}",
            'description': (payload.message or '').strip(),
            'resource_link': (payload.link or '').strip(),
            'due_date': due_date,
            'status': 'pending',
        }
    )
    return homework


def _mark_completed(session: ClassSession) -> None:
    session.status = 'completed'
    session.save(update_fields=['status', 'updated_at'])


@transaction.atomic
def confirm_payment(student: Student) -> Student:
    """
    Start a new billing cycle after the fee has been received.

    This is the only place classes_attended is reset and fee_status
    returns to 'paid'.
    """
    student = Student.objects.select_for_update().get(pk=student.pk)
    student.classes_attended = 0
    student.fee_status = 'paid'
    student.payment_requested = False
    student.save(update_fields=[
        'classes_attended', 'fee_status', 'payment_requested', 'updated_at'
    ])

    collection_cache.invalidate(STUDENTS)
    logger.info("Payment confirmed for student %s", student.pk)
    return student


def request_payment(student: Student) -> Student:
    """Flag that the student reports having paid and awaits confirmation."""
    student.payment_requested = True
    student.save(update_fields=['payment_requested', 'updated_at'])

    collection_cache.invalidate(STUDENTS)
    return student
