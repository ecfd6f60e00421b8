"""
Per-user, per-course progress tracking.

A Progress record is created once per (user, course) and snapshots the
course curriculum at that moment: later curriculum edits do not touch
existing records. Lesson updates recompute the overall percentage and flip
the completion flag exactly once.
"""

import logging
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .database import insert_ignore, utcnow
from .enrollment import find_enrollment, get_user_by_email
from .errors import (
    CourseNotFoundError,
    LessonNotFoundError,
    ProgressNotFoundError,
    ValidationError,
)
from .models import Course, LessonProgress, LessonStatus, Progress, User

logger = logging.getLogger(__name__)


def completion_percentage(completed: int, total: int) -> int:
    """round(completed / total * 100) with halves rounded up; 0 for an empty course."""
    if total <= 0:
        return 0
    return min(100, (200 * completed + total) // (2 * total))


def find_progress(db: Session, user_id: int, course_id: int) -> Optional[Progress]:
    return (
        db.query(Progress)
        .filter(Progress.user_id == user_id, Progress.course_id == course_id)
        .first()
    )


def initialize_progress(db: Session, user_id: int, course_id: int) -> Tuple[Progress, bool]:
    """
    Create the progress record for (user, course) unless it already exists.

    Returns (progress, created). The record and its lesson rows are committed
    in one transaction.
    """
    course = db.get(Course, course_id)
    if course is None:
        raise CourseNotFoundError()

    try:
        created = insert_ignore(db, Progress, {
            "user_id": user_id,
            "course_id": course_id,
            "overall_progress": 0,
            "total_time_spent": 0,
            "is_completed": False,
            "created_at": utcnow(),
        })
        progress = find_progress(db, user_id, course_id)

        if created:
            for module_index, module in enumerate(course.modules):
                for lesson_index, lesson in enumerate(module.lessons):
                    db.add(LessonProgress(
                        progress_id=progress.id,
                        lesson_id=lesson.lesson_key,
                        module_index=module_index,
                        lesson_index=lesson_index,
                        status=LessonStatus.NOT_STARTED.value,
                    ))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    db.refresh(progress)
    if created:
        logger.info("Progress created for user %s, course %s (%d lessons)", user_id, course_id, len(progress.lessons))
    return progress, created


def update_progress(
    db: Session,
    user: User,
    course_id: int,
    lesson_id: str,
    completed: bool = False,
    time_spent: int = 0,
) -> Progress:
    if time_spent is None:
        time_spent = 0
    if time_spent < 0:
        raise ValidationError([{"field": "timeSpent", "message": "timeSpent must be zero or more"}])

    progress = find_progress(db, user.id, course_id)
    if progress is None:
        # A user with access but no record missed the initialisation step of
        # their approval; build the record now instead of failing.
        if find_enrollment(db, user.id, course_id) is None:
            raise ProgressNotFoundError()
        progress, _ = initialize_progress(db, user.id, course_id)
        logger.info("Progress for user %s, course %s initialised on first update", user.id, course_id)

    lesson = next((l for l in progress.lessons if l.lesson_id == lesson_id), None)
    if lesson is None:
        raise LessonNotFoundError()

    now = utcnow()
    if completed:
        if lesson.status != LessonStatus.COMPLETED.value:
            lesson.status = LessonStatus.COMPLETED.value
            lesson.completed_at = now
        if lesson.started_at is None:
            lesson.started_at = now
    elif lesson.status == LessonStatus.NOT_STARTED.value:
        lesson.status = LessonStatus.IN_PROGRESS.value
        lesson.started_at = now

    lesson.time_spent += time_spent
    progress.total_time_spent += time_spent
    progress.last_accessed_at = now
    progress.last_accessed_lesson = lesson_id
    recompute_overall(progress, now)

    enrollment = find_enrollment(db, user.id, course_id)
    if enrollment is not None:
        enrollment.progress = progress.overall_progress
        enrollment.last_accessed_at = now
        enrollment.completed_lessons = [
            {"lessonId": l.lesson_id, "completedAt": l.completed_at.isoformat() if l.completed_at else None}
            for l in progress.lessons
            if l.status == LessonStatus.COMPLETED.value
        ]

    db.commit()
    db.refresh(progress)
    return progress


def recompute_overall(progress: Progress, now=None):
    total = len(progress.lessons)
    if total == 0:
        return

    done = sum(1 for l in progress.lessons if l.status == LessonStatus.COMPLETED.value)
    progress.overall_progress = completion_percentage(done, total)

    if progress.overall_progress == 100 and not progress.is_completed:
        progress.is_completed = True
        progress.completed_at = now or utcnow()
        logger.info("User %s completed course %s", progress.user_id, progress.course_id)


def user_progress(db: Session, email: str):
    user = get_user_by_email(db, email)
    records = db.query(Progress).filter(Progress.user_id == user.id).order_by(Progress.created_at).all()
    return [progress_to_dict(p) for p in records]


def user_dashboard(db: Session, user: User):
    records = db.query(Progress).filter(Progress.user_id == user.id).all()
    minutes = sum(p.total_time_spent for p in records)
    return {
        "totalCourses": len(user.enrollments),
        "completedCourses": sum(1 for p in records if p.is_completed),
        "totalProgress": round(sum(p.overall_progress for p in records) / len(records)) if records else 0,
        "hoursLearned": round(minutes / 60, 1),
    }


def progress_to_dict(p: Progress) -> dict:
    return {
        "id": p.id,
        "user": p.user_id,
        "course": p.course_id,
        "overallProgress": p.overall_progress,
        "totalTimeSpent": p.total_time_spent,
        "isCompleted": p.is_completed,
        "completedAt": p.completed_at,
        "lastAccessedAt": p.last_accessed_at,
        "lastAccessedLesson": p.last_accessed_lesson,
        "lessons": [
            {
                "lessonId": l.lesson_id,
                "moduleIndex": l.module_index,
                "lessonIndex": l.lesson_index,
                "status": l.status,
                "startedAt": l.started_at,
                "completedAt": l.completed_at,
                "timeSpent": l.time_spent,
            }
            for l in p.lessons
        ],
        "createdAt": p.created_at,
    }
