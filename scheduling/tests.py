"""
Tests for the academy scheduling engine.

Tests cover:
- ClassSchedule and ClassSession models
- Session projection (horizon, idempotence, retraction, eligibility)
- Schedule lifecycle and session operations
- Agenda deduplication and the collection cache
- Attendance finalization and billing
- Reminder trigger
- API endpoints and management commands
"""

from datetime import date, datetime, time, timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.db import DatabaseError
from django.test import TestCase
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient, APITestCase

from . import services
from .agenda import billing_summary, build_agenda, get_agenda
from .attendance import confirm_payment, finalize_session, request_payment
from .cache import collection_cache, get_students
from .exceptions import FinalizeIncompleteError, ScheduleValidationError, SessionStateError
from .models import AttendanceRecord, ClassSchedule, ClassSession, Homework, Student, StudentGroup
from .reminders import ReminderTrigger, class_reminder
from .services import weekday_index
from .types import AttendanceResult, HomeworkPayload, ScheduleUpdateData

# A Monday, so weekday arithmetic in the tests is easy to follow.
TODAY = date(2030, 1, 7)


def at(day, hour, minute=0):
    return timezone.make_aware(datetime.combine(day, time(hour, minute)))


def make_student(full_name='Ada Lovelace', **kwargs):
    defaults = {
        'course': 'Python',
        'assigned_topics': ['Variables', 'Loops', 'Functions'],
        'fee_amount': Decimal('500'),
        'total_classes_allowed': 8,
    }
    defaults.update(kwargs)
    return Student.objects.create(full_name=full_name, **defaults)


def make_schedule(days=(1, 3), start_date=TODAY, **kwargs):
    return ClassSchedule.objects.create(
        days=list(days),
        start_time=time(10, 0),
        end_time=time(11, 0),
        start_date=start_date,
        **kwargs
    )


def make_session(session_id, day, hour, student=None, group=None, **kwargs):
    return ClassSession.objects.create(
        id=session_id,
        student=student,
        group=group,
        start=at(day, hour),
        end=at(day, hour + 1),
        **kwargs
    )


class ClassScheduleModelTests(TestCase):
    """Test ClassSchedule model and validation."""

    def setUp(self):
        self.student = make_student()

    def test_create_schedule(self):
        """Test creating a student schedule."""
        schedule = make_schedule(student=self.student)

        self.assertTrue(schedule.is_active)
        self.assertEqual(schedule.day_names, ['Monday', 'Wednesday'])
        self.assertEqual(schedule.target_name, 'Ada Lovelace')

    def test_schedule_needs_exactly_one_target(self):
        group = StudentGroup.objects.create(name='Batch A')

        with self.assertRaises(ValidationError):
            make_schedule()
        with self.assertRaises(ValidationError):
            make_schedule(student=self.student, group=group)

    def test_active_schedule_needs_days(self):
        with self.assertRaises(ValidationError):
            make_schedule(days=(), student=self.student)

        schedule = make_schedule(days=(), student=self.student, is_active=False)
        self.assertEqual(schedule.days, [])

    def test_days_must_be_weekdays(self):
        with self.assertRaises(ValidationError):
            make_schedule(days=(1, 7), student=self.student)

    def test_end_time_after_start_time(self):
        with self.assertRaises(ValidationError):
            ClassSchedule.objects.create(
                student=self.student,
                days=[1],
                start_time=time(11, 0),
                end_time=time(10, 0),
                start_date=TODAY
            )


class ClassSessionModelTests(TestCase):
    """Test ClassSession model helpers."""

    def test_build_id_is_deterministic(self):
        start = timezone.make_aware(datetime(2024, 11, 4, 10, 0))

        self.assertEqual(ClassSession.build_id(5, start), 'sess_5_20241104T100000')
        self.assertEqual(ClassSession.build_id(5, start), ClassSession.build_id(5, start))

    def test_weekday_index_starts_on_sunday(self):
        self.assertEqual(weekday_index(date(2024, 11, 3)), 0)
        self.assertEqual(weekday_index(date(2024, 11, 4)), 1)
        self.assertEqual(weekday_index(date(2024, 11, 9)), 6)

    def test_end_after_start(self):
        with self.assertRaises(ValidationError):
            ClassSession.objects.create(id='bad', start=at(TODAY, 11), end=at(TODAY, 10))


class ProjectionTests(TestCase):
    """Test the session projector."""

    def setUp(self):
        self.student = make_student()
        self.schedule = make_schedule(student=self.student)

    def _sessions(self):
        return list(
            ClassSession.objects.for_schedule(self.schedule).order_by('start').values_list('id', 'start', 'end')
        )

    def test_horizon_covers_matching_weekdays(self):
        """Mondays and Wednesdays in [today, today + 21 days)."""
        created = services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY)

        expected = sum(
            1 for offset in range(21)
            if weekday_index(TODAY + timedelta(days=offset)) in (1, 3)
        )
        self.assertEqual(len(created), expected)
        self.assertEqual(ClassSession.objects.for_schedule(self.schedule).count(), 6)

        for session in ClassSession.objects.for_schedule(self.schedule):
            self.assertIn(weekday_index(timezone.localtime(session.start).date()), (1, 3))
            self.assertEqual(session.status, 'upcoming')
            self.assertEqual(session.student_id, self.student.pk)
            self.assertEqual(session.topic, 'Scheduled Session')
            self.assertEqual(session.end - session.start, timedelta(hours=1))

    def test_projection_is_idempotent(self):
        services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY)
        first = self._sessions()

        services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY)
        second = self._sessions()

        self.assertEqual(first, second)

    def test_future_start_date_respected(self):
        start_date = TODAY + timedelta(days=10)
        self.schedule.start_date = start_date
        self.schedule.save()

        services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY)

        sessions = ClassSession.objects.for_schedule(self.schedule)
        self.assertEqual(sessions.count(), 2)
        for session in sessions:
            self.assertGreaterEqual(session.start, at(start_date, 0))

    def test_partial_final_week_is_walked(self):
        self.schedule.days = [0, 1, 2, 3, 4, 5, 6]
        self.schedule.save()

        services.project_schedule(self.schedule, horizon_weeks=1, today=TODAY + timedelta(days=2))

        self.assertEqual(ClassSession.objects.for_schedule(self.schedule).count(), 7)

    def test_editing_days_retracts_stale_sessions(self):
        services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY)

        self.schedule.days = [2, 4]
        self.schedule.save()
        services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY)

        weekdays = {
            weekday_index(timezone.localtime(s.start).date())
            for s in ClassSession.objects.for_schedule(self.schedule)
        }
        self.assertEqual(weekdays, {2, 4})
        self.assertEqual(ClassSession.objects.for_schedule(self.schedule).count(), 6)

    def test_student_on_break_gets_no_sessions(self):
        services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY)

        self.student.status = 'break'
        self.student.save()
        created = services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY)

        self.assertEqual(created, [])
        self.assertEqual(ClassSession.objects.for_schedule(self.schedule).count(), 0)

        self.student.status = 'active'
        self.student.save()
        services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY)

        self.assertEqual(ClassSession.objects.for_schedule(self.schedule).count(), 6)

    def test_deleted_student_gets_no_sessions(self):
        self.student.is_deleted = True
        self.student.save()

        self.assertEqual(services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY), [])

    def test_inactive_schedule_retracts_future_sessions(self):
        services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY)

        self.schedule.is_active = False
        self.schedule.save()
        services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY)

        self.assertEqual(ClassSession.objects.for_schedule(self.schedule).count(), 0)

    def test_finalized_sessions_are_never_touched(self):
        services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY)
        first = ClassSession.objects.for_schedule(self.schedule).order_by('start').first()
        ClassSession.objects.filter(pk=first.pk).update(status='completed', topic='Loops')

        services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY)

        first.refresh_from_db()
        self.assertEqual(first.status, 'completed')
        self.assertEqual(first.topic, 'Loops')
        self.assertEqual(ClassSession.objects.for_schedule(self.schedule).count(), 6)

    def test_past_sessions_are_kept(self):
        past = make_session(
            ClassSession.build_id(self.schedule.pk, at(TODAY - timedelta(days=7), 10)),
            TODAY - timedelta(days=7), 10,
            student=self.student,
            schedule=self.schedule
        )

        services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY)

        self.assertTrue(ClassSession.objects.filter(pk=past.pk).exists())

    def test_group_schedule_skips_student_eligibility(self):
        group = StudentGroup.objects.create(name='Batch A', course='Chess')
        group.students.add(make_student('On Break', status='break'))
        schedule = make_schedule(group=group)

        created = services.project_schedule(schedule, horizon_weeks=3, today=TODAY)

        self.assertEqual(len(created), 6)
        self.assertTrue(all(s.group_id == group.pk for s in created))

    def test_sync_all_schedules(self):
        group = StudentGroup.objects.create(name='Batch A')
        make_schedule(group=group, days=(2,))
        make_schedule(student=make_student('Inactive'), is_active=False, days=())

        report = services.sync_all_schedules(horizon_weeks=3, today=TODAY)

        self.assertTrue(report.ok)
        self.assertEqual(report.schedules_processed, 2)
        self.assertEqual(report.sessions_projected, 9)

    def test_sync_continues_after_a_failing_schedule(self):
        broken = make_schedule(group=StudentGroup.objects.create(name='Broken'))
        original = services.project_schedule

        def flaky(schedule, *args, **kwargs):
            if schedule.pk == broken.pk:
                raise DatabaseError('store unavailable')
            return original(schedule, *args, **kwargs)

        with mock.patch('scheduling.services.project_schedule', side_effect=flaky):
            report = services.sync_all_schedules(horizon_weeks=3, today=TODAY)

        self.assertEqual(report.failed, [broken.pk])
        self.assertEqual(ClassSession.objects.for_schedule(self.schedule).count(), 6)

    def test_failed_projection_rolls_back_its_retraction(self):
        services.project_schedule(self.schedule, horizon_weeks=3, today=TODAY)
        original = services._create_session_objects

        def flaky(schedule, dates):
            if schedule.pk == self.schedule.pk:
                raise DatabaseError('write failed')
            return original(schedule, dates)

        with mock.patch('scheduling.services._create_session_objects', side_effect=flaky):
            report = services.sync_all_schedules(horizon_weeks=3, today=TODAY)

        self.assertEqual(report.failed, [self.schedule.pk])
        self.assertEqual(ClassSession.objects.for_schedule(self.schedule).count(), 6)


class ScheduleServiceTests(TestCase):
    """Test schedule lifecycle and session operations."""

    def setUp(self):
        self.student = make_student()
        self.today = timezone.localdate()

    def _create(self, **kwargs):
        params = {
            'days': [0, 1, 2, 3, 4, 5, 6],
            'start_time': time(10, 0),
            'end_time': time(11, 0),
            'start_date': self.today,
            'student': self.student,
        }
        params.update(kwargs)
        return services.create_schedule(**params)

    def test_create_schedule_projects_sessions(self):
        schedule, count = self._create()

        self.assertEqual(count, 21)
        self.assertEqual(schedule.course, 'Python')
        self.assertEqual(ClassSession.objects.for_schedule(schedule).count(), 21)

    def test_create_schedule_without_projection(self):
        schedule, count = self._create(project=False)

        self.assertEqual(count, 0)
        self.assertFalse(ClassSession.objects.for_schedule(schedule).exists())

    def test_create_invalid_schedule(self):
        with self.assertRaises(ScheduleValidationError):
            self._create(days=[])

        self.assertFalse(ClassSchedule.objects.exists())

    def test_update_schedule_regenerates(self):
        schedule, _ = self._create()

        services.update_schedule(schedule, ScheduleUpdateData(start_time=time(15, 0), end_time=time(16, 0)))

        hours = {timezone.localtime(s.start).hour for s in ClassSession.objects.for_schedule(schedule)}
        self.assertEqual(hours, {15})

    def test_deactivate_schedule(self):
        schedule, count = self._create()

        retracted = services.deactivate_schedule(schedule)

        self.assertEqual(retracted, count)
        schedule.refresh_from_db()
        self.assertFalse(schedule.is_active)
        self.assertFalse(ClassSession.objects.for_schedule(schedule).exists())

    def test_delete_schedule_keeps_completed_history(self):
        schedule, _ = self._create()
        sessions = list(ClassSession.objects.for_schedule(schedule).order_by('start'))
        ClassSession.objects.filter(pk=sessions[0].pk).update(status='completed')
        ClassSession.objects.filter(pk=sessions[1].pk).update(status='cancelled')

        services.delete_schedule(schedule)

        self.assertFalse(ClassSchedule.objects.filter(pk=schedule.pk).exists())
        self.assertEqual(ClassSession.objects.count(), 1)
        survivor = ClassSession.objects.get()
        self.assertEqual(survivor.pk, sessions[0].pk)
        self.assertIsNone(survivor.schedule_id)

    def test_delete_missing_schedule_is_noop(self):
        schedule, _ = self._create(project=False)
        services.delete_schedule(schedule)

        services.delete_schedule(schedule)

    def test_reschedule_session(self):
        schedule, _ = self._create()
        session = ClassSession.objects.for_schedule(schedule).order_by('start').first()
        new_start = session.start + timedelta(hours=3)

        services.reschedule_session(session, new_start, new_start + timedelta(hours=1))

        session.refresh_from_db()
        self.assertEqual(session.start, new_start)

    def test_reschedule_onto_taken_slot(self):
        schedule, _ = self._create()
        first, second = ClassSession.objects.for_schedule(schedule).order_by('start')[:2]

        with self.assertRaises(ScheduleValidationError):
            services.reschedule_session(first, second.start, second.end)

    def test_reschedule_completed_session(self):
        session = make_session('s1', self.today, 10, student=self.student, status='completed')

        with self.assertRaises(SessionStateError):
            services.reschedule_session(session, session.start, session.end + timedelta(hours=1))

    def test_cancel_session(self):
        session = make_session('s1', self.today, 10, student=self.student)

        services.cancel_session(session)

        session.refresh_from_db()
        self.assertEqual(session.status, 'cancelled')
        with self.assertRaises(SessionStateError):
            services.cancel_session(session)

    def test_get_sessions_in_range(self):
        make_session('s1', TODAY, 10, student=self.student)
        make_session('s2', TODAY + timedelta(days=1), 10, student=self.student, status='completed')

        sessions = services.get_sessions_in_range(at(TODAY, 0), at(TODAY + timedelta(days=2), 0))
        completed = services.get_sessions_in_range(
            at(TODAY, 0), at(TODAY + timedelta(days=2), 0), status='completed'
        )

        self.assertEqual([s.pk for s in sessions], ['s1', 's2'])
        self.assertEqual([s.pk for s in completed], ['s2'])
        with self.assertRaises(ScheduleValidationError):
            services.get_sessions_in_range(at(TODAY, 10), at(TODAY, 9))


class AgendaTests(TestCase):
    """Test agenda deduplication."""

    def setUp(self):
        collection_cache.clear()
        self.day = TODAY
        self.alice = make_student('Alice')
        self.bob = make_student('Bob')
        self.group = StudentGroup.objects.create(name='Batch A')
        self.group.students.add(self.alice, self.bob)

    def _agenda(self, active=None):
        active = active if active is not None else Student.objects.active().values_list('pk', flat=True)
        return build_agenda(
            ClassSession.objects.all(),
            StudentGroup.objects.prefetch_related('students'),
            active,
            self.day
        )

    def test_group_session_suppresses_individual_duplicate(self):
        group_session = make_session('g1', self.day, 10, group=self.group)
        make_session('i1', self.day, 10, student=self.alice)

        agenda = self._agenda()

        self.assertEqual([s.pk for s in agenda], [group_session.pk])
        covered = set(agenda[0].group.students.values_list('pk', flat=True))
        self.assertEqual(covered, {self.alice.pk, self.bob.pk})

    def test_individual_session_in_other_slot_is_kept(self):
        make_session('g1', self.day, 10, group=self.group)
        make_session('i1', self.day, 14, student=self.alice)

        self.assertEqual([s.pk for s in self._agenda()], ['g1', 'i1'])

    def test_student_on_break_is_hidden(self):
        self.bob.status = 'break'
        self.bob.save()
        make_session('i1', self.day, 9, student=self.bob)
        make_session('i2', self.day, 9, student=self.alice)

        self.assertEqual([s.pk for s in self._agenda()], ['i2'])

    def test_other_dates_are_excluded(self):
        make_session('i1', self.day + timedelta(days=1), 10, student=self.alice)

        self.assertEqual(self._agenda(), [])

    def test_same_student_same_slot_appears_once(self):
        make_session('i1', self.day, 10, student=self.alice)
        make_session('i2', self.day, 10, student=self.alice)

        self.assertEqual(len(self._agenda()), 1)

    def test_sorted_by_start_with_stable_ties(self):
        make_session('late', self.day, 16, student=self.alice)
        make_session('b', self.day, 9, student=self.bob)
        make_session('a', self.day, 9, student=self.alice)

        sessions = [
            ClassSession.objects.get(pk='late'),
            ClassSession.objects.get(pk='b'),
            ClassSession.objects.get(pk='a'),
        ]
        agenda = build_agenda(sessions, [], [self.alice.pk, self.bob.pk], self.day)

        self.assertEqual([s.pk for s in agenda], ['b', 'a', 'late'])

    def test_get_agenda_reads_cached_collections(self):
        make_session('g1', self.day, 10, group=self.group)
        make_session('i1', self.day, 10, student=self.alice)

        agenda = get_agenda(self.day)

        self.assertEqual([s.pk for s in agenda], ['g1'])

    def test_session_of_deleted_group_is_left_out(self):
        make_session('g1', self.day, 10, group=self.group)
        make_session('i1', self.day, 10, student=self.alice)
        self.group.is_deleted = True
        self.group.save()

        self.assertEqual([s.pk for s in get_agenda(self.day)], ['i1'])

        agenda = build_agenda(ClassSession.objects.all(), [], [self.alice.pk], self.day)
        self.assertEqual([s.pk for s in agenda], ['i1'])

    def test_billing_summary(self):
        self.bob.fee_status = 'due'
        self.bob.save()

        summary = billing_summary(fresh=True)

        self.assertEqual(summary.total_students, 2)
        self.assertEqual(summary.overdue_student_ids, [self.bob.pk])
        self.assertEqual(summary.expected_revenue, Decimal('1000'))
        self.assertEqual(summary.collected_revenue, Decimal('500'))
        self.assertEqual(summary.collection_rate, 50)


class CollectionCacheTests(TestCase):
    """Test the write-invalidate cache contract."""

    def setUp(self):
        collection_cache.clear()

    def test_group_membership_change_reaches_cached_agenda(self):
        alice = make_student('Alice')
        group = StudentGroup.objects.create(name='Batch A')
        make_session('g1', TODAY, 10, group=group)
        make_session('i1', TODAY, 10, student=alice)
        self.assertEqual([s.pk for s in get_agenda(TODAY)], ['g1', 'i1'])

        group.students.add(alice)

        self.assertEqual([s.pk for s in get_agenda(TODAY)], ['g1'])

        group.students.remove(alice)

        self.assertEqual([s.pk for s in get_agenda(TODAY)], ['g1', 'i1'])

    def test_student_break_reaches_cached_agenda(self):
        alice = make_student('Alice')
        bob = make_student('Bob')
        make_session('i1', TODAY, 9, student=alice)
        make_session('i2', TODAY, 9, student=bob)
        self.assertEqual(len(get_agenda(TODAY)), 2)

        bob.status = 'break'
        bob.save()

        self.assertEqual([s.pk for s in get_agenda(TODAY)], ['i1'])

    def test_fresh_read_bypasses_cache(self):
        make_student('First')
        self.assertEqual(get_students()[0].level, '')

        # QuerySet.update() sends no model signals.
        Student.objects.filter(full_name='First').update(level='Advanced')

        self.assertEqual(get_students()[0].level, '')
        self.assertEqual(get_students(fresh=True)[0].level, 'Advanced')
        self.assertEqual(get_students()[0].level, 'Advanced')

    def test_mutating_services_invalidate(self):
        student = make_student('Payer', classes_attended=8, fee_status='due')
        self.assertEqual(get_students()[0].fee_status, 'due')

        confirm_payment(student)

        self.assertEqual(get_students()[0].fee_status, 'paid')

    def test_unknown_collection(self):
        with self.assertRaises(KeyError):
            collection_cache.invalidate('homework')


class FinalizeTests(TestCase):
    """Test attendance finalization."""

    def setUp(self):
        self.student = make_student(classes_attended=7)
        self.session = make_session('sess_1', TODAY, 10, student=self.student, topic='Loops', course='Python')

    def _present(self, student=None, homework=None):
        return AttendanceResult(student_id=(student or self.student).pk, present=True, homework=homework)

    def test_present_student_is_billed(self):
        outcome = finalize_session(self.session, [self._present()])

        self.student.refresh_from_db()
        self.session.refresh_from_db()
        self.assertEqual(self.student.classes_attended, 8)
        self.assertEqual(self.student.fee_status, 'due')
        self.assertEqual(self.student.current_topic_index, 1)
        self.assertEqual(self.session.status, 'completed')
        self.assertEqual(outcome.warnings, ['Payment required for Ada Lovelace'])

        record = AttendanceRecord.objects.get(pk=AttendanceRecord.build_id('sess_1', self.student.pk))
        self.assertTrue(record.present)
        self.assertEqual(record.topic_completed, 'Loops')

    def test_last_class_warning(self):
        self.student.classes_attended = 6
        self.student.save()

        outcome = finalize_session(self.session, [self._present()])

        self.assertEqual(outcome.warnings, ['Last class for Ada Lovelace'])
        self.student.refresh_from_db()
        self.assertEqual(self.student.fee_status, 'paid')

    def test_absent_student_is_not_billed(self):
        finalize_session(self.session, [AttendanceResult(student_id=self.student.pk, present=False)])

        self.student.refresh_from_db()
        self.assertEqual(self.student.classes_attended, 7)
        self.assertEqual(self.student.current_topic_index, 0)
        self.assertEqual(self.student.fee_status, 'paid')
        record = AttendanceRecord.objects.get(session=self.session, student=self.student)
        self.assertFalse(record.present)

    def test_completed_session_is_rejected(self):
        finalize_session(self.session, [self._present()])

        with self.assertRaises(SessionStateError):
            finalize_session(self.session, [self._present()])

        self.student.refresh_from_db()
        self.assertEqual(self.student.classes_attended, 8)

    def test_stale_session_instance_is_rejected(self):
        stale = ClassSession.objects.get(pk=self.session.pk)
        finalize_session(self.session, [self._present()])

        with self.assertRaises(SessionStateError):
            finalize_session(stale, [self._present()])

    def test_existing_record_prevents_double_credit(self):
        AttendanceRecord.objects.create(
            id=AttendanceRecord.build_id(self.session.pk, self.student.pk),
            session=self.session,
            student=self.student,
            present=True
        )

        outcome = finalize_session(self.session, [self._present()])

        self.student.refresh_from_db()
        self.assertEqual(self.student.classes_attended, 7)
        self.assertFalse(outcome.students[0].credited)
        self.assertEqual(AttendanceRecord.objects.count(), 1)

    def test_retry_after_partial_failure_credits_once(self):
        bob = make_student('Bob', classes_attended=2)
        group = StudentGroup.objects.create(name='Batch A')
        group.students.add(self.student, bob)
        session = make_session('sess_g', TODAY, 14, group=group)
        results = [self._present(), self._present(bob)]

        from . import attendance
        original = attendance._credit_attendance

        def flaky(student):
            if student.pk == bob.pk:
                raise DatabaseError('write failed')
            original(student)

        with mock.patch('scheduling.attendance._credit_attendance', side_effect=flaky):
            with self.assertRaises(FinalizeIncompleteError) as ctx:
                finalize_session(session, results)

        self.assertEqual(ctx.exception.failed_student_ids, [bob.pk])
        session.refresh_from_db()
        self.assertEqual(session.status, 'upcoming')
        self.assertFalse(AttendanceRecord.objects.filter(student=bob).exists())

        finalize_session(session, results)

        self.student.refresh_from_db()
        bob.refresh_from_db()
        session.refresh_from_db()
        self.assertEqual(self.student.classes_attended, 8)
        self.assertEqual(bob.classes_attended, 3)
        self.assertEqual(session.status, 'completed')

    def test_topic_index_saturates(self):
        self.student.current_topic_index = 3
        self.student.save()

        finalize_session(self.session, [self._present()])

        self.student.refresh_from_db()
        self.assertEqual(self.student.current_topic_index, 3)

    def test_due_status_is_never_upgraded(self):
        self.student.classes_attended = 0
        self.student.fee_status = 'due'
        self.student.save()

        finalize_session(self.session, [self._present()])

        self.student.refresh_from_db()
        self.assertEqual(self.student.fee_status, 'due')

    def test_homework_for_present_student(self):
        homework = HomeworkPayload(message='Practice loops', link='https://example.com/loops')

        outcome = finalize_session(self.session, [self._present(homework=homework)])

        task = Homework.objects.get(pk=Homework.build_id(self.session.pk, self.student.pk))
        self.assertEqual(task.description, 'Practice loops')
        self.assertEqual(task.status, 'pending')
        self.assertEqual(task.due_date, timezone.localdate() + timedelta(days=7))
        self.assertTrue(outcome.students[0].homework_assigned)

    def test_empty_homework_is_ignored(self):
        finalize_session(self.session, [self._present(homework=HomeworkPayload(message='  '))])

        self.assertFalse(Homework.objects.exists())

    def test_no_homework_for_absent_student(self):
        homework = HomeworkPayload(message='Practice loops')

        finalize_session(self.session, [
            AttendanceResult(student_id=self.student.pk, present=False, homework=homework)
        ])

        self.assertFalse(Homework.objects.exists())

    def test_student_outside_roster_is_rejected(self):
        stranger = make_student('Stranger')

        with self.assertRaises(ScheduleValidationError):
            finalize_session(self.session, [self._present(), self._present(stranger)])

        self.assertFalse(AttendanceRecord.objects.exists())
        self.session.refresh_from_db()
        self.assertEqual(self.session.status, 'upcoming')

    def test_duplicate_results_are_rejected(self):
        with self.assertRaises(ScheduleValidationError):
            finalize_session(self.session, [self._present(), self._present()])

    def test_partial_group_results(self):
        bob = make_student('Bob')
        group = StudentGroup.objects.create(name='Batch A')
        group.students.add(self.student, bob)
        session = make_session('sess_g', TODAY, 14, group=group)

        finalize_session(session, [self._present()])

        bob.refresh_from_db()
        self.assertEqual(bob.classes_attended, 0)
        self.assertFalse(AttendanceRecord.objects.filter(student=bob).exists())
        session.refresh_from_db()
        self.assertEqual(session.status, 'completed')

    def test_completed_session_survives_reprojection(self):
        schedule = make_schedule(student=self.student, days=(weekday_index(TODAY),))
        services.project_schedule(schedule, horizon_weeks=1, today=TODAY)
        session = ClassSession.objects.for_schedule(schedule).get()

        finalize_session(session, [self._present()])
        services.project_schedule(schedule, horizon_weeks=1, today=TODAY)

        session.refresh_from_db()
        self.assertEqual(session.status, 'completed')
        self.assertEqual(ClassSession.objects.for_schedule(schedule).count(), 1)


class BillingActionTests(TestCase):
    """Test payment confirmation actions."""

    def test_confirm_payment_resets_cycle(self):
        student = make_student(classes_attended=8, fee_status='due', payment_requested=True)

        confirm_payment(student)

        student.refresh_from_db()
        self.assertEqual(student.classes_attended, 0)
        self.assertEqual(student.fee_status, 'paid')
        self.assertFalse(student.payment_requested)

    def test_request_payment(self):
        student = make_student(fee_status='due')

        request_payment(student)

        student.refresh_from_db()
        self.assertTrue(student.payment_requested)
        self.assertEqual(student.fee_status, 'due')


class ReminderTriggerTests(TestCase):
    """Test the one-shot reminder trigger."""

    def setUp(self):
        self.now = at(TODAY, 9, 50)
        self.student = make_student()
        self.fired = []
        self.trigger = ReminderTrigger(
            sink=lambda session, minutes: self.fired.append((session.pk, minutes)),
            lead_minutes=10
        )

    def _session(self, session_id, minutes_ahead, **kwargs):
        start = self.now + timedelta(minutes=minutes_ahead)
        return ClassSession.objects.create(
            id=session_id,
            student=self.student,
            start=start,
            end=start + timedelta(hours=1),
            **kwargs
        )

    def test_failing_sink_does_not_block_other_reminders(self):
        self._session('s1', 3)
        self._session('s2', 6)
        attempts = []

        def sink(session, minutes):
            attempts.append(session.pk)
            if attempts == ['s1']:
                raise ConnectionError('push service down')

        trigger = ReminderTrigger(sink=sink, lead_minutes=10)

        self.assertEqual([s.pk for s in trigger.poll(self.now)], ['s2'])
        self.assertFalse(trigger.is_handled('s1'))
        self.assertTrue(trigger.is_handled('s2'))

        self.assertEqual([s.pk for s in trigger.poll(self.now + timedelta(seconds=45))], ['s1'])
        self.assertEqual(attempts, ['s1', 's2', 's1'])

    def test_started_sessions_are_forgotten(self):
        self._session('soon', 5)

        self.trigger.poll(self.now)
        self.assertTrue(self.trigger.is_handled('soon'))

        self.trigger.poll(self.now + timedelta(minutes=6))
        self.assertFalse(self.trigger.is_handled('soon'))
        self.assertEqual(self.fired, [('soon', 5)])

    def test_fires_once_inside_window(self):
        self._session('soon', 9)

        self.assertEqual([s.pk for s in self.trigger.poll(self.now)], ['soon'])
        self.assertEqual(self.trigger.poll(self.now + timedelta(seconds=45)), [])
        self.assertEqual(self.fired, [('soon', 9)])

    def test_window_bounds(self):
        self._session('edge', 10)
        self._session('later', 30)
        self._session('started', -1)

        self.trigger.poll(self.now)

        self.assertEqual([pk for pk, _ in self.fired], ['edge'])

    def test_missed_poll_still_fires(self):
        self._session('soon', 4)

        self.trigger.poll(self.now)

        self.assertEqual(self.fired, [('soon', 4)])

    def test_only_upcoming_sessions(self):
        self._session('done', 5, status='completed')
        self._session('off', 5, status='cancelled')

        self.assertEqual(self.trigger.poll(self.now), [])

    def test_dismissed_session_never_fires(self):
        self._session('soon', 5)
        self.trigger.dismiss('soon')

        self.assertEqual(self.trigger.poll(self.now), [])
        self.assertTrue(self.trigger.is_handled('soon'))

    def test_default_sink_sends_signal(self):
        self._session('soon', 5)
        received = []

        def receiver(sender, session, minutes_until_start, **kwargs):
            received.append((session.pk, minutes_until_start))

        class_reminder.connect(receiver)
        try:
            ReminderTrigger(lead_minutes=10).poll(self.now)
        finally:
            class_reminder.disconnect(receiver)

        self.assertEqual(received, [('soon', 5)])


class ScheduleAPITests(APITestCase):
    """Test schedule API endpoints."""

    def setUp(self):
        self.client = APIClient()
        self.student = make_student()
        self.today = timezone.localdate()

    def _payload(self, **kwargs):
        data = {
            'student': self.student.pk,
            'days': [0, 1, 2, 3, 4, 5, 6],
            'start_time': '10:00',
            'end_time': '11:00',
            'start_date': self.today.isoformat(),
        }
        data.update(kwargs)
        return data

    def test_create_schedule(self):
        response = self.client.post('/api/schedules/', self._payload(), format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['sessions_projected'], 21)
        self.assertEqual(response.data['schedule']['target_name'], 'Ada Lovelace')

    def test_create_schedule_validation(self):
        group = StudentGroup.objects.create(name='Batch A')

        both = self.client.post('/api/schedules/', self._payload(group=group.pk), format='json')
        no_days = self.client.post('/api/schedules/', self._payload(days=[]), format='json')
        bad_window = self.client.post('/api/schedules/', self._payload(end_time='09:00'), format='json')

        self.assertEqual(both.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(no_days.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(bad_window.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(ClassSchedule.objects.exists())

    def test_update_schedule_days(self):
        response = self.client.post('/api/schedules/', self._payload(), format='json')
        schedule_id = response.data['schedule']['id']

        response = self.client.patch(f'/api/schedules/{schedule_id}/', {'days': [1]}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['day_names'], ['Monday'])
        self.assertEqual(ClassSession.objects.filter(schedule_id=schedule_id).count(), 3)

    def test_delete_deactivates_by_default(self):
        response = self.client.post('/api/schedules/', self._payload(), format='json')
        schedule_id = response.data['schedule']['id']

        response = self.client.delete(f'/api/schedules/{schedule_id}/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(ClassSchedule.objects.get(pk=schedule_id).is_active)
        self.assertFalse(ClassSession.objects.filter(schedule_id=schedule_id).exists())

    def test_hard_delete(self):
        response = self.client.post('/api/schedules/', self._payload(), format='json')
        schedule_id = response.data['schedule']['id']

        response = self.client.delete(f'/api/schedules/{schedule_id}/?hard=true')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(ClassSchedule.objects.filter(pk=schedule_id).exists())

    def test_sync(self):
        make_schedule(student=self.student, start_date=self.today)

        response = self.client.post('/api/schedules/sync/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['schedules_processed'], 1)
        self.assertEqual(response.data['failed'], [])


class SessionAPITests(APITestCase):
    """Test session, agenda and billing API endpoints."""

    def setUp(self):
        collection_cache.clear()
        self.client = APIClient()
        self.student = make_student(classes_attended=7)
        self.session = make_session('sess_1', TODAY, 10, student=self.student)

    def test_finalize_session(self):
        data = {'results': [{'student_id': self.student.pk, 'present': True,
                             'homework': {'message': 'Read chapter 2'}}]}

        response = self.client.post('/api/sessions/sess_1/finalize/', data, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['credited'], [self.student.pk])
        self.assertEqual(response.data['homework_assigned'], [self.student.pk])
        self.assertEqual(len(response.data['warnings']), 1)

        again = self.client.post('/api/sessions/sess_1/finalize/', data, format='json')
        self.assertEqual(again.status_code, status.HTTP_409_CONFLICT)
        self.student.refresh_from_db()
        self.assertEqual(self.student.classes_attended, 8)

    def test_finalize_with_unknown_student(self):
        data = {'results': [{'student_id': 9999, 'present': True}]}

        response = self.client.post('/api/sessions/sess_1/finalize/', data, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_reschedule_and_cancel(self):
        response = self.client.patch('/api/sessions/sess_1/', {
            'start': '2030-01-07T12:00:00Z',
            'end': '2030-01-07T13:00:00Z',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['time_slot'], '12:00')

        response = self.client.delete('/api/sessions/sess_1/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)

        response = self.client.delete('/api/sessions/sess_1/')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_list_sessions_in_range(self):
        response = self.client.get('/api/sessions/', {
            'start': '2030-01-07T00:00:00Z',
            'end': '2030-01-08T00:00:00Z',
        })

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([s['id'] for s in response.data], ['sess_1'])

    def test_agenda(self):
        response = self.client.get('/api/agenda/', {'date': TODAY.isoformat(), 'fresh': 'true'})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([s['id'] for s in response.data['sessions']], ['sess_1'])

    def test_billing_summary_and_confirm_payment(self):
        self.student.classes_attended = 8
        self.student.fee_status = 'due'
        self.student.save()

        response = self.client.get('/api/billing/summary/')
        self.assertEqual(response.data['overdue_student_ids'], [self.student.pk])

        response = self.client.post(f'/api/students/{self.student.pk}/confirm-payment/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['fee_status'], 'paid')
        self.assertEqual(response.data['classes_attended'], 0)

        response = self.client.get('/api/billing/summary/')
        self.assertEqual(response.data['overdue_student_ids'], [])


class ManagementCommandTests(TestCase):
    """Test management commands."""

    def test_sync_sessions_command(self):
        make_schedule(student=make_student(), start_date=timezone.localdate())

        out = StringIO()
        call_command('sync_sessions', '--weeks=2', stdout=out)

        self.assertIn('Successfully projected', out.getvalue())
        self.assertGreater(ClassSession.objects.count(), 0)

    def test_run_reminders_once(self):
        start = timezone.now() + timedelta(minutes=5)
        ClassSession.objects.create(
            id='soon', student=make_student(), start=start, end=start + timedelta(hours=1)
        )

        out = StringIO()
        call_command('run_reminders', '--once', stdout=out)

        self.assertIn('Reminder fired', out.getvalue())

    def test_run_reminders_reports_database_error(self):
        err = StringIO()

        with mock.patch('scheduling.reminders.ReminderTrigger.poll', side_effect=DatabaseError('db gone')):
            call_command('run_reminders', '--once', stdout=StringIO(), stderr=err)

        self.assertIn('Reminder poll failed', err.getvalue())

    def test_run_reminders_keeps_polling_after_database_error(self):
        class StopPolling(Exception):
            pass

        with mock.patch(
            'scheduling.reminders.ReminderTrigger.poll',
            side_effect=[DatabaseError('db gone'), StopPolling()]
        ) as poll, mock.patch('scheduling.management.commands.run_reminders.time.sleep') as sleep:
            with self.assertRaises(StopPolling):
                call_command('run_reminders', '--interval=1', stdout=StringIO(), stderr=StringIO())

        self.assertEqual(poll.call_count, 2)
        sleep.assert_called_once_with(1)
