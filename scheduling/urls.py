"""
URL routing for the scheduling API.
"""

from django.urls import path
from .views import (
    AgendaView,
    BillingSummaryView,
    ClassScheduleDetailView,
    ClassScheduleListCreateView,
    ClassSessionDetailView,
    ClassSessionListView,
    ConfirmPaymentView,
    ScheduleSyncView,
    SessionFinalizeView,
)

urlpatterns = [
    path('schedules/', ClassScheduleListCreateView.as_view(), name='schedule-list-create'),
    path('schedules/sync/', ScheduleSyncView.as_view(), name='schedule-sync'),
    path('schedules/<int:pk>/', ClassScheduleDetailView.as_view(), name='schedule-detail'),
    path('sessions/', ClassSessionListView.as_view(), name='session-list'),
    path('sessions/<str:pk>/', ClassSessionDetailView.as_view(), name='session-detail'),
    path('sessions/<str:pk>/finalize/', SessionFinalizeView.as_view(), name='session-finalize'),
    path('agenda/', AgendaView.as_view(), name='agenda'),
    path('billing/summary/', BillingSummaryView.as_view(), name='billing-summary'),
    path('students/<int:pk>/confirm-payment/', ConfirmPaymentView.as_view(), name='student-confirm-payment'),
]
