"""
Exceptions raised by the scheduling service layer.

Validation and state errors subclass ``ValueError`` so callers that only
know the service functions raise ``ValueError`` keep working.
"""

from typing import Iterable


class SchedulingError(Exception):
    """Base class for scheduling engine errors."""


class ScheduleValidationError(SchedulingError, ValueError):
    """Input rejected before any mutation; fix the input and retry."""


class SessionStateError(SchedulingError, ValueError):
    """Operation requires an upcoming session."""


class FinalizeIncompleteError(SchedulingError):
    """
    Some students could not be processed during finalization.

    The session is left upcoming. Calling finalize again is safe: students
    already credited are detected by their attendance record and skipped.
    """

    def __init__(self, session_id: str, failed_student_ids: Iterable[int]):
        self.session_id = session_id
        self.failed_student_ids = list(failed_student_ids)
        super().__init__(
            f"Finalize of session {session_id} incomplete; "
            f"failed students: {self.failed_student_ids}"
        )
