"""
Admin configuration for the scheduling app.
"""

from django.contrib import admin
from .models import AttendanceRecord, ClassSchedule, ClassSession, Homework, Student, StudentGroup


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    """Admin interface for Student model."""

    list_display = ['full_name', 'status', 'course', 'classes_attended', 'total_classes_allowed', 'fee_status']
    list_filter = ['status', 'fee_status', 'is_deleted', 'course']
    search_fields = ['full_name', 'email']

    fieldsets = (
        ('Basic Information', {
            'fields': ('full_name', 'email', 'status', 'is_deleted')
        }),
        ('Curriculum', {
            'fields': ('course', 'level', 'assigned_topics', 'current_topic_index')
        }),
        ('Billing', {
            'fields': (
                'billing_type', 'fee_amount', 'total_classes_allowed',
                'classes_attended', 'fee_status', 'payment_requested'
            )
        }),
        ('Metadata', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    readonly_fields = ['created_at', 'updated_at']


@admin.register(StudentGroup)
class StudentGroupAdmin(admin.ModelAdmin):
    """Admin interface for StudentGroup model."""

    list_display = ['name', 'course', 'level', 'active']
    list_filter = ['active', 'is_deleted', 'course']
    search_fields = ['name']
    filter_horizontal = ['students']


@admin.register(ClassSchedule)
class ClassScheduleAdmin(admin.ModelAdmin):
    """Admin interface for ClassSchedule model."""

    list_display = ['__str__', 'start_time', 'end_time', 'start_date', 'is_active']
    list_filter = ['is_active', 'is_deleted', 'course', 'created_at']
    date_hierarchy = 'start_date'

    fieldsets = (
        ('Target', {
            'fields': ('student', 'group', 'course', 'is_active', 'is_deleted')
        }),
        ('Recurrence Rules', {
            'fields': ('days', 'start_time', 'end_time', 'start_date')
        }),
        ('Metadata', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    readonly_fields = ['created_at', 'updated_at']


@admin.register(ClassSession)
class ClassSessionAdmin(admin.ModelAdmin):
    """Admin interface for ClassSession model."""

    list_display = ['id', 'start', 'end', 'status', 'topic', 'schedule']
    list_filter = ['status', 'course', 'created_at']
    search_fields = ['id', 'topic']
    date_hierarchy = 'start'
    readonly_fields = ['id', 'created_at', 'updated_at']


@admin.register(AttendanceRecord)
class AttendanceRecordAdmin(admin.ModelAdmin):
    """Admin interface for AttendanceRecord model."""

    list_display = ['session', 'student', 'present', 'topic_completed', 'recorded_at']
    list_filter = ['present', 'course']
    readonly_fields = ['id', 'recorded_at']


@admin.register(Homework)
class HomeworkAdmin(admin.ModelAdmin):
    """Admin interface for Homework model."""

    list_display = ['title', 'student', 'due_date', 'status']
    list_filter = ['status']
    search_fields = ['title', 'description']
    readonly_fields = ['id', 'created_at', 'updated_at']
