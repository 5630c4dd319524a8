"""
Serializers for the academy scheduling API.
"""

from rest_framework import serializers

from .models import ClassSchedule, ClassSession, Student, StudentGroup
from .types import AttendanceResult, HomeworkPayload


class StudentBillingSerializer(serializers.ModelSerializer):
    """Serializer for reading a student's billing and progress (output)."""

    classes_remaining = serializers.ReadOnlyField()
    current_topic = serializers.ReadOnlyField()

    class Meta:
        model = Student
        fields = [
            'id',
            'full_name',
            'status',
            'fee_amount',
            'total_classes_allowed',
            'classes_attended',
            'classes_remaining',
            'fee_status',
            'payment_requested',
            'current_topic_index',
            'current_topic',
        ]


class ClassScheduleReadSerializer(serializers.ModelSerializer):
    """Serializer for reading/displaying ClassSchedule (output)."""

    day_names = serializers.ReadOnlyField()
    target_name = serializers.ReadOnlyField()

    class Meta:
        model = ClassSchedule
        fields = [
            'id',
            'student',
            'group',
            'target_name',
            'course',
            'days',
            'day_names',
            'start_time',
            'end_time',
            'start_date',
            'is_active',
            'created_at',
            'updated_at',
        ]


def _validate_time_window(data, instance=None):
    start_time = data.get('start_time', getattr(instance, 'start_time', None))
    end_time = data.get('end_time', getattr(instance, 'end_time', None))
    if start_time and end_time and end_time <= start_time:
        raise serializers.ValidationError({
            'end_time': 'End time must be after start time.'
        })


class ClassScheduleCreateSerializer(serializers.Serializer):
    """Serializer for creating a class schedule with options."""

    student = serializers.PrimaryKeyRelatedField(
        queryset=Student.objects.current(),
        required=False,
        allow_null=True
    )
    group = serializers.PrimaryKeyRelatedField(
        queryset=StudentGroup.objects.filter(is_deleted=False),
        required=False,
        allow_null=True
    )
    course = serializers.CharField(max_length=100, required=False, allow_blank=True)
    days = serializers.ListField(
        child=serializers.IntegerField(min_value=0, max_value=6),
        allow_empty=False
    )
    start_time = serializers.TimeField()
    end_time = serializers.TimeField()
    start_date = serializers.DateField()
    project = serializers.BooleanField(default=True)
    weeks = serializers.IntegerField(min_value=1, max_value=12, required=False)

    def validate(self, data):
        """Validate creation data."""
        if bool(data.get('student')) == bool(data.get('group')):
            raise serializers.ValidationError(
                'Provide exactly one of student or group.'
            )
        _validate_time_window(data)
        return data


class ClassScheduleWriteSerializer(serializers.Serializer):
    """Serializer for updating ClassSchedule (input)."""

    course = serializers.CharField(max_length=100, required=False, allow_blank=True)
    days = serializers.ListField(
        child=serializers.IntegerField(min_value=0, max_value=6),
        required=False
    )
    start_time = serializers.TimeField(required=False)
    end_time = serializers.TimeField(required=False)
    start_date = serializers.DateField(required=False)
    is_active = serializers.BooleanField(required=False)

    def validate(self, data):
        """Validate schedule update data."""
        _validate_time_window(data, self.instance)
        return data


class ClassSessionReadSerializer(serializers.ModelSerializer):
    """Serializer for reading/displaying ClassSession (output)."""

    schedule_id = serializers.IntegerField(allow_null=True, read_only=True)
    target_name = serializers.ReadOnlyField()
    is_group = serializers.BooleanField(read_only=True)
    time_slot = serializers.ReadOnlyField()

    class Meta:
        model = ClassSession
        fields = [
            'id',
            'schedule_id',
            'student',
            'group',
            'target_name',
            'is_group',
            'course',
            'start',
            'end',
            'time_slot',
            'status',
            'topic',
            'created_at',
            'updated_at',
        ]


class SessionRescheduleSerializer(serializers.Serializer):
    """Serializer for moving a session to a new time."""

    start = serializers.DateTimeField()
    end = serializers.DateTimeField()

    def validate(self, data):
        if data['end'] <= data['start']:
            raise serializers.ValidationError({'end': 'End must be after start.'})
        return data


class HomeworkPayloadSerializer(serializers.Serializer):
    message = serializers.CharField(required=False, allow_blank=True, default='')
    link = serializers.CharField(required=False, allow_blank=True, default='')


class AttendanceResultSerializer(serializers.Serializer):
    student_id = serializers.IntegerField()
    present = serializers.BooleanField()
    homework = HomeworkPayloadSerializer(required=False, allow_null=True)

    @staticmethod
    def to_result(data) -> AttendanceResult:
        homework = data.get('homework')
        return AttendanceResult(
            student_id=data['student_id'],
            present=data['present'],
            homework=HomeworkPayload(**homework) if homework else None
        )


class FinalizeSessionSerializer(serializers.Serializer):
    """Serializer for finalize input: per-student attendance results."""

    results = AttendanceResultSerializer(many=True)

    def to_results(self):
        return [AttendanceResultSerializer.to_result(r) for r in self.validated_data['results']]


class DateRangeQuerySerializer(serializers.Serializer):
    """Serializer for date range query parameters."""

    start = serializers.DateTimeField(required=True)
    end = serializers.DateTimeField(required=True)
    status = serializers.ChoiceField(
        choices=['upcoming', 'completed', 'cancelled'],
        required=False,
        allow_null=True
    )

    def validate(self, data):
        """Ensure start is before end."""
        if data['start'] >= data['end']:
            raise serializers.ValidationError(
                "Start datetime must be before end datetime."
            )
        return data


class AgendaQuerySerializer(serializers.Serializer):
    """Serializer for agenda query parameters."""

    date = serializers.DateField(required=False)
    fresh = serializers.BooleanField(required=False, default=False)
