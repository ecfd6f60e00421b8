"""
Sample data: python -m app.seed

Creates an instructor and a small catalog. Running it again leaves
existing records alone.
"""

import logging

from sqlalchemy.orm import Session

from .config import LOG_LEVEL
from .courses import create_course
from .database import SessionLocal, init_db, utcnow
from .enrollment import find_user_by_email
from .models import Course, User, UserRole
from .schemas import CourseCreate
from .security import hash_password

logger = logging.getLogger(__name__)

INSTRUCTOR = {
    "name": "Ustad Mohammad Ali",
    "email": "instructor@talim.academy",
    "password": "instructor123",
}

COURSES = [
    {
        "title": "Practical Ibarat",
        "description": "A complete course that teaches Arabic through practical reading of classical texts.",
        "shortDescription": "Learn the basics of Arabic ibarat",
        "price": 2000,
        "originalPrice": 2500,
        "category": "arabic-language",
        "level": "beginner",
        "curriculum": [
            {
                "moduleTitle": "Basic ibarat",
                "moduleDescription": "Foundations of reading Arabic",
                "lessons": [
                    {"lessonId": "lesson-1", "title": "The Arabic alphabet", "durationMinutes": 30, "isPreview": True},
                    {"lessonId": "lesson-2", "title": "Common words", "durationMinutes": 45},
                ],
            },
            {
                "moduleTitle": "Everyday conversation",
                "lessons": [
                    {"lessonId": "lesson-3", "title": "Introducing yourself", "durationMinutes": 40},
                ],
            },
        ],
    },
    {
        "title": "Quran Tilawat",
        "description": "Learn to recite the Quran beautifully and correctly, following the rules of tajweed.",
        "shortDescription": "Rules of Quran recitation",
        "price": 1500,
        "category": "quran-studies",
        "level": "beginner",
        "curriculum": [
            {
                "moduleTitle": "Principles of tajweed",
                "lessons": [
                    {"lessonId": "quran-lesson-1", "title": "Makharij", "durationMinutes": 35, "isPreview": True},
                    {"lessonId": "quran-lesson-2", "title": "Sifat of the letters", "durationMinutes": 40},
                ],
            },
        ],
    },
]


def seed_instructor(db: Session) -> User:
    instructor = find_user_by_email(db, INSTRUCTOR["email"])
    if instructor is not None:
        return instructor

    instructor = User(
        name=INSTRUCTOR["name"],
        email=INSTRUCTOR["email"],
        password=hash_password(INSTRUCTOR["password"]),
        role=UserRole.INSTRUCTOR.value,
        is_email_verified=True,
        created_at=utcnow(),
    )
    db.add(instructor)
    db.commit()
    db.refresh(instructor)
    logger.info("Instructor created")
    return instructor


def seed_catalog(db: Session) -> int:
    """Returns the number of courses created."""
    instructor = seed_instructor(db)
    created = 0
    for course in COURSES:
        if db.query(Course.id).filter(Course.title == course["title"]).first():
            continue
        create_course(db, CourseCreate(**course, instructorId=instructor.id))
        created += 1
    logger.info("Seeded %d courses", created)
    return created


def main():
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    init_db()
    db = SessionLocal()
    try:
        seed_catalog(db)
    finally:
        db.close()


if __name__ == "__main__":
    main()
