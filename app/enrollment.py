"""
Course access grants.

A user's enrolledCourses set is the enrollments table: one row per
(user, course), guarded by a unique index. Grants are inserted with
insert-ignore so a repeated or concurrent grant can never produce a second
row, and the caller learns from the tagged result what actually happened.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import update
from sqlalchemy.orm import Session

from .database import insert_ignore, utcnow
from .errors import UserNotFoundError
from .models import Course, Enrollment, User, UserRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Granted:
    user: User


@dataclass(frozen=True)
class AlreadyGranted:
    user: User


@dataclass(frozen=True)
class UserNotFound:
    email: str


AccessGrant = Union[Granted, AlreadyGranted, UserNotFound]


def normalize_email(email: str) -> str:
    return email.strip().lower()


def find_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == normalize_email(email)).first()


def get_user_by_email(db: Session, email: str) -> User:
    user = find_user_by_email(db, email)
    if user is None:
        raise UserNotFoundError()
    return user


def grant_course_access(
    db: Session,
    email: str,
    course_id: int,
    allow_upsert: bool = False,
    name: Optional[str] = None,
    phone: Optional[str] = None,
) -> AccessGrant:
    """
    Add course_id to the enrolled courses of the user owning email.

    Does not commit. With allow_upsert a missing user is created as a bare
    record (no password); otherwise UserNotFound is returned.
    """
    email = normalize_email(email)
    user = find_user_by_email(db, email)

    if user is None:
        if not allow_upsert:
            return UserNotFound(email)
        insert_ignore(db, User, {
            "email": email,
            "name": name,
            "phone": phone,
            "role": UserRole.STUDENT.value,
            "is_active": True,
            "is_email_verified": False,
            "created_at": utcnow(),
        })
        user = find_user_by_email(db, email)
        logger.warning("Created bare user %s to receive course %s", email, course_id)

    inserted = insert_ignore(db, Enrollment, {
        "user_id": user.id,
        "course_id": course_id,
        "enrolled_at": utcnow(),
        "progress": 0,
        "completed_lessons": [],
    })
    db.expire(user, ["enrollments"])

    if not inserted:
        return AlreadyGranted(user)

    db.execute(
        update(Course)
        .where(Course.id == course_id)
        .values(enrollment_count=Course.enrollment_count + 1)
    )
    logger.info("Granted course %s to %s", course_id, email)
    return Granted(user)


def find_enrollment(db: Session, user_id: int, course_id: int) -> Optional[Enrollment]:
    return (
        db.query(Enrollment)
        .filter(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
        .first()
    )


def user_courses(db: Session, email: str):
    user = get_user_by_email(db, email)
    return [
        {
            "courseId": e.course_id,
            "title": e.course.title if e.course else None,
            "slug": e.course.slug if e.course else None,
            "enrolledAt": e.enrolled_at,
            "progress": e.progress,
            "completedLessons": e.completed_lessons or [],
            "lastAccessedAt": e.last_accessed_at,
        }
        for e in user.enrollments
    ]
