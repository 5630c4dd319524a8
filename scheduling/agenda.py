"""
Daily agenda views.

A student who is both a group member and has an individual slot at the same
time appears once: the group session wins and the individual session is
hidden from the agenda. Both stay in storage.
"""

from datetime import date
from typing import Dict, Iterable, List, Set, Tuple

from django.utils import timezone

from .cache import get_groups, get_sessions, get_students
from .models import ClassSession, StudentGroup
from .types import BillingSummary


def build_agenda(
    sessions: Iterable[ClassSession],
    groups: Iterable[StudentGroup],
    active_student_ids: Iterable[int],
    target_date: date
) -> List[ClassSession]:
    """
    Build the deduplicated agenda for one day.

    Args:
        sessions: Candidate sessions (any dates)
        groups: Groups with their members; group sessions whose group is
            missing here are left out
        active_student_ids: Students not on break; others are dropped from
            individual sessions
        target_date: Local calendar day to show

    Returns:
        Sessions ordered by start time; ties keep their input order
    """
    active_ids = set(active_student_ids)
    members = _group_members(groups)

    day_sessions = [
        s for s in sessions
        if timezone.localtime(s.start).date() == target_date
        and (s.group_id is not None or s.student_id in active_ids)
    ]

    agenda = []
    claimed: Set[Tuple[str, int]] = set()

    for session in day_sessions:
        if session.group_id is None:
            continue
        if session.group_id not in members:
            # Deleted or unknown group; it claims no members.
            continue
        agenda.append(session)
        for student_id in members[session.group_id]:
            claimed.add((session.time_slot, student_id))

    for session in day_sessions:
        if session.group_id is not None:
            continue
        key = (session.time_slot, session.student_id)
        if key in claimed:
            continue
        agenda.append(session)
        claimed.add(key)

    return sorted(agenda, key=lambda s: s.start)


def _group_members(groups: Iterable[StudentGroup]) -> Dict[int, List[int]]:
    return {g.pk: [s.pk for s in g.students.all()] for g in groups}


def get_agenda(target_date: date, fresh: bool = False) -> List[ClassSession]:
    """Agenda for ``target_date`` built from the cached collections."""
    students = get_students(fresh)
    active_ids = [s.pk for s in students if s.is_eligible]
    return build_agenda(get_sessions(fresh), get_groups(fresh), active_ids, target_date)


def billing_summary(fresh: bool = False) -> BillingSummary:
    """Roster-wide revenue and overdue figures."""
    students = get_students(fresh)
    summary = BillingSummary(total_students=len(students))

    for student in students:
        summary.expected_revenue += student.fee_amount
        if student.fee_status == 'paid':
            summary.collected_revenue += student.fee_amount
        elif student.fee_status == 'due':
            summary.overdue_student_ids.append(student.pk)

    return summary
