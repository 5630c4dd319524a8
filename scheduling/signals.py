"""
Cache invalidation for writes that do not go through the service layer.

Admin edits, plain ``save()`` calls and group membership changes all clear
the matching cached collection so non-fresh agenda reads see them.
"""

from django.db.models.signals import m2m_changed, post_delete, post_save
from django.dispatch import receiver

from .cache import GROUPS, SCHEDULES, SESSIONS, STUDENTS, collection_cache
from .models import ClassSchedule, ClassSession, Student, StudentGroup


@receiver(post_save, sender=Student)
@receiver(post_delete, sender=Student)
def invalidate_students(sender, instance, **kwargs):
    # Groups embed their members.
    collection_cache.invalidate(STUDENTS, GROUPS)


@receiver(post_save, sender=StudentGroup)
@receiver(post_delete, sender=StudentGroup)
def invalidate_groups(sender, instance, **kwargs):
    collection_cache.invalidate(GROUPS)


@receiver(m2m_changed, sender=StudentGroup.students.through)
def invalidate_group_members(sender, instance, action, **kwargs):
    if action in ('post_add', 'post_remove', 'post_clear'):
        collection_cache.invalidate(GROUPS)


@receiver(post_save, sender=ClassSchedule)
@receiver(post_delete, sender=ClassSchedule)
def invalidate_schedules(sender, instance, **kwargs):
    collection_cache.invalidate(SCHEDULES)


@receiver(post_save, sender=ClassSession)
@receiver(post_delete, sender=ClassSession)
def invalidate_sessions(sender, instance, **kwargs):
    collection_cache.invalidate(SESSIONS)
