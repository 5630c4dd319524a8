"""
Cached views of the four main collections.

Callers read students, groups, schedules and sessions through
``collection_cache`` for fast dashboard rendering. The contract is
write-invalidate: every service that mutates a collection calls
``collection_cache.invalidate(...)`` with the collections it touched once the
write has committed. Model saves, deletes and group membership changes made
outside the services are caught by the receivers in ``scheduling.signals``.
Reads pass ``fresh=True`` to bypass a possibly stale entry and repopulate it.

Billing counters are never read from here when they are about to be
incremented; the finalizer reads the student row under a lock instead.
"""

import logging
from typing import Callable, Iterable, List, Optional

from django.core.cache import caches
from django.db import transaction

from .types import academy_setting

logger = logging.getLogger(__name__)

STUDENTS = 'students'
GROUPS = 'groups'
SCHEDULES = 'schedules'
SESSIONS = 'sessions'

COLLECTIONS = (STUDENTS, GROUPS, SCHEDULES, SESSIONS)

KEY_PREFIX = 'academy'


class CollectionCache:
    """Keyed snapshot of whole collections stored in a Django cache backend."""

    def __init__(self, alias: str = 'default', timeout: Optional[int] = None):
        self.alias = alias
        self._timeout = timeout

    @property
    def backend(self):
        return caches[self.alias]

    @property
    def timeout(self) -> int:
        if self._timeout is not None:
            return self._timeout
        return academy_setting('CACHE_TIMEOUT')

    def key(self, collection: str) -> str:
        if collection not in COLLECTIONS:
            raise KeyError(f"Unknown collection: {collection}")
        return f"{KEY_PREFIX}:{collection}"

    def get(self, collection: str, loader: Callable[[], Iterable], fresh: bool = False) -> List:
        """
        Return the cached snapshot of ``collection``.

        Args:
            collection: one of COLLECTIONS
            loader: callable producing the collection from the database
            fresh: bypass the cached entry and reload it
        """
        key = self.key(collection)
        if not fresh:
            cached = self.backend.get(key)
            if cached is not None:
                return cached

        value = list(loader())
        self.backend.set(key, value, self.timeout)
        return value

    def invalidate(self, *collections: str) -> None:
        """Drop cached snapshots now and again once the current transaction commits."""
        keys = [self.key(c) for c in collections]
        self._delete(keys)
        transaction.on_commit(lambda: self._delete(keys))

    def clear(self) -> None:
        self._delete([self.key(c) for c in COLLECTIONS])

    def _delete(self, keys: List[str]) -> None:
        self.backend.delete_many(keys)
        logger.debug("Invalidated cached collections: %s", keys)


collection_cache = CollectionCache()


def get_students(fresh: bool = False):
    from .models import Student
    return collection_cache.get(STUDENTS, lambda: Student.objects.current(), fresh)


def get_groups(fresh: bool = False):
    from .models import StudentGroup

    def load():
        return StudentGroup.objects.filter(is_deleted=False).prefetch_related('students')

    return collection_cache.get(GROUPS, load, fresh)


def get_schedules(fresh: bool = False):
    from .models import ClassSchedule
    return collection_cache.get(
        SCHEDULES,
        lambda: ClassSchedule.objects.filter(is_deleted=False),
        fresh
    )


def get_sessions(fresh: bool = False):
    from .models import ClassSession

    def load():
        return ClassSession.objects.select_related('student', 'group').order_by('start')

    return collection_cache.get(SESSIONS, load, fresh)
