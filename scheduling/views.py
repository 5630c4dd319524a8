"""Views for the academy scheduling API."""

from django.shortcuts import get_object_or_404
from django.utils import timezone

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from .models import ClassSchedule, ClassSession, Student
from .serializers import (
    AgendaQuerySerializer,
    ClassScheduleCreateSerializer,
    ClassScheduleReadSerializer,
    ClassScheduleWriteSerializer,
    ClassSessionReadSerializer,
    DateRangeQuerySerializer,
    FinalizeSessionSerializer,
    SessionRescheduleSerializer,
    StudentBillingSerializer,
)
from . import agenda, attendance, services
from .exceptions import FinalizeIncompleteError, ScheduleValidationError, SessionStateError
from .types import ScheduleUpdateData


def _error(exc, status_code):
    return Response({'detail': str(exc)}, status=status_code)


class ClassScheduleListCreateView(APIView):
    """
    List all class schedules or create a new one.

    GET /api/schedules/ - List schedules
    POST /api/schedules/ - Create a schedule and project its sessions
    """

    def get(self, request):
        """List all class schedules."""
        schedules = ClassSchedule.objects.filter(is_deleted=False).select_related('student', 'group')
        serializer = ClassScheduleReadSerializer(schedules, many=True)
        return Response(serializer.data)

    def post(self, request):
        """Create a new class schedule with optional session projection."""
        serializer = ClassScheduleCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        data = serializer.validated_data
        try:
            schedule, sessions_count = services.create_schedule(
                days=data['days'],
                start_time=data['start_time'],
                end_time=data['end_time'],
                start_date=data['start_date'],
                student=data.get('student'),
                group=data.get('group'),
                course=data.get('course'),
                project=data.get('project', True),
                horizon_weeks=data.get('weeks')
            )
        except ScheduleValidationError as exc:
            return _error(exc, status.HTTP_400_BAD_REQUEST)

        response_serializer = ClassScheduleReadSerializer(schedule)
        return Response({
            'schedule': response_serializer.data,
            'sessions_projected': sessions_count
        }, status=status.HTTP_201_CREATED)


class ClassScheduleDetailView(APIView):
    """
    Retrieve, update, or delete a class schedule.

    GET /api/schedules/{id}/ - Retrieve schedule
    PATCH /api/schedules/{id}/ - Update schedule and re-project
    DELETE /api/schedules/{id}/ - Deactivate (or ?hard=true to delete)
    """

    def get(self, request, pk):
        """Retrieve a class schedule."""
        schedule = get_object_or_404(ClassSchedule, pk=pk, is_deleted=False)
        serializer = ClassScheduleReadSerializer(schedule)
        return Response(serializer.data)

    def patch(self, request, pk):
        """Update a class schedule."""
        schedule = get_object_or_404(ClassSchedule, pk=pk, is_deleted=False)
        serializer = ClassScheduleWriteSerializer(schedule, data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)

        update_data = ScheduleUpdateData(
            days=serializer.validated_data.get('days'),
            start_time=serializer.validated_data.get('start_time'),
            end_time=serializer.validated_data.get('end_time'),
            start_date=serializer.validated_data.get('start_date'),
            course=serializer.validated_data.get('course'),
            is_active=serializer.validated_data.get('is_active')
        )
        try:
            updated_schedule = services.update_schedule(schedule, update_data)
        except ScheduleValidationError as exc:
            return _error(exc, status.HTTP_400_BAD_REQUEST)

        response_serializer = ClassScheduleReadSerializer(updated_schedule)
        return Response(response_serializer.data)

    def delete(self, request, pk):
        """Deactivate or hard-delete a class schedule."""
        schedule = get_object_or_404(ClassSchedule, pk=pk)
        hard = request.query_params.get('hard', 'false').lower() == 'true'

        if hard:
            services.delete_schedule(schedule)
            message = f'Schedule {pk} has been deleted.'
        else:
            retracted = services.deactivate_schedule(schedule)
            message = f'Schedule {pk} has been deactivated; {retracted} session(s) retracted.'

        return Response({'message': message}, status=status.HTTP_200_OK)


class ScheduleSyncView(APIView):
    """
    Re-project every active schedule.

    POST /api/schedules/sync/
    """

    def post(self, request):
        report = services.sync_all_schedules()
        body = {
            'schedules_processed': report.schedules_processed,
            'sessions_projected': report.sessions_projected,
            'failed': report.failed,
        }
        if not report.ok:
            body['detail'] = 'Sync failed for some schedules; retry.'
            return Response(body, status=status.HTTP_503_SERVICE_UNAVAILABLE)
        return Response(body)


class ClassSessionListView(APIView):
    """
    List sessions within a date range.

    GET /api/sessions/?start=X&end=Y&status=Z
    """

    def get(self, request):
        """List sessions within a date range."""
        query_serializer = DateRangeQuerySerializer(data=request.query_params)
        query_serializer.is_valid(raise_exception=True)

        sessions = services.get_sessions_in_range(
            query_serializer.validated_data['start'],
            query_serializer.validated_data['end'],
            query_serializer.validated_data.get('status')
        )

        serializer = ClassSessionReadSerializer(sessions, many=True)
        return Response(serializer.data)


class ClassSessionDetailView(APIView):
    """
    Retrieve, reschedule, or cancel a class session.

    GET /api/sessions/{id}/ - Retrieve session
    PATCH /api/sessions/{id}/ - Reschedule session
    DELETE /api/sessions/{id}/ - Cancel session
    """

    def get(self, request, pk):
        """Retrieve a class session."""
        session = get_object_or_404(ClassSession, pk=pk)
        serializer = ClassSessionReadSerializer(session)
        return Response(serializer.data)

    def patch(self, request, pk):
        """Move a class session to a new time."""
        session = get_object_or_404(ClassSession, pk=pk)
        serializer = SessionRescheduleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            updated_session = services.reschedule_session(
                session,
                serializer.validated_data['start'],
                serializer.validated_data['end']
            )
        except SessionStateError as exc:
            return _error(exc, status.HTTP_409_CONFLICT)
        except ScheduleValidationError as exc:
            return _error(exc, status.HTTP_400_BAD_REQUEST)

        response_serializer = ClassSessionReadSerializer(updated_session)
        return Response(response_serializer.data)

    def delete(self, request, pk):
        """Cancel a class session."""
        session = get_object_or_404(ClassSession, pk=pk)

        try:
            services.cancel_session(session)
        except SessionStateError as exc:
            return _error(exc, status.HTTP_409_CONFLICT)

        return Response({
            'message': f'Session {session.pk} has been cancelled.'
        }, status=status.HTTP_200_OK)


class SessionFinalizeView(APIView):
    """
    Record attendance and mark a session completed.

    POST /api/sessions/{id}/finalize/
    """

    def post(self, request, pk):
        """Finalize a class session."""
        session = get_object_or_404(ClassSession, pk=pk)
        serializer = FinalizeSessionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            outcome = attendance.finalize_session(session, serializer.to_results())
        except SessionStateError as exc:
            return _error(exc, status.HTTP_409_CONFLICT)
        except ScheduleValidationError as exc:
            return _error(exc, status.HTTP_400_BAD_REQUEST)
        except FinalizeIncompleteError as exc:
            return Response({
                'detail': str(exc),
                'failed_student_ids': exc.failed_student_ids,
            }, status=status.HTTP_503_SERVICE_UNAVAILABLE)

        return Response({
            'session_id': outcome.session_id,
            'credited': [s.student_id for s in outcome.students if s.credited],
            'homework_assigned': [s.student_id for s in outcome.students if s.homework_assigned],
            'warnings': outcome.warnings,
        }, status=status.HTTP_200_OK)


class AgendaView(APIView):
    """
    Deduplicated agenda for one day.

    GET /api/agenda/?date=YYYY-MM-DD (default: today)
    """

    def get(self, request):
        query_serializer = AgendaQuerySerializer(data=request.query_params)
        query_serializer.is_valid(raise_exception=True)

        target_date = query_serializer.validated_data.get('date') or timezone.localdate()
        sessions = agenda.get_agenda(target_date, fresh=query_serializer.validated_data['fresh'])

        serializer = ClassSessionReadSerializer(sessions, many=True)
        return Response({
            'date': target_date,
            'sessions': serializer.data
        })


class BillingSummaryView(APIView):
    """
    Roster billing figures.

    GET /api/billing/summary/
    """

    def get(self, request):
        summary = agenda.billing_summary()
        return Response({
            'total_students': summary.total_students,
            'overdue_student_ids': summary.overdue_student_ids,
            'expected_revenue': summary.expected_revenue,
            'collected_revenue': summary.collected_revenue,
            'collection_rate': summary.collection_rate,
        })


class ConfirmPaymentView(APIView):
    """
    Start a new billing cycle for a student.

    POST /api/students/{id}/confirm-payment/
    """

    def post(self, request, pk):
        student = get_object_or_404(Student, pk=pk, is_deleted=False)
        student = attendance.confirm_payment(student)
        serializer = StudentBillingSerializer(student)
        return Response(serializer.data)
