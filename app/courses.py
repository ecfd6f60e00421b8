import logging
import re
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import utcnow
from .errors import CourseNotFoundError, DuplicateReviewError, ReviewNotFoundError
from .models import Course, CourseLesson, CourseModule, Review, User
from .schemas import CourseCreate, ReviewCreate

logger = logging.getLogger(__name__)


def slugify(value: str) -> str:
    slug = re.sub(r"[^\w\s-]", "", value.lower())
    return re.sub(r"[\s_-]+", "-", slug).strip("-") or "course"


def unique_slug(db: Session, title: str) -> str:
    base = slugify(title)
    slug = base
    suffix = 2
    while db.query(Course.id).filter(Course.slug == slug).first():
        slug = f"{base}-{suffix}"
        suffix += 1
    return slug


def create_course(db: Session, data: CourseCreate) -> Course:
    instructor = db.get(User, data.instructor_id) if data.instructor_id else None

    course = Course(
        title=data.title,
        slug=unique_slug(db, data.title),
        description=data.description,
        short_description=data.short_description,
        price=data.price,
        original_price=data.original_price,
        category=data.category,
        level=data.level,
        language=data.language,
        status=data.status,
        thumbnail=data.thumbnail,
        instructor_id=instructor.id if instructor else None,
        instructor_name=instructor.name if instructor else None,
        created_at=utcnow(),
    )
    db.add(course)
    db.flush()

    for module_order, module_in in enumerate(data.curriculum):
        module = CourseModule(
            course_id=course.id,
            title=module_in.title,
            description=module_in.description,
            order=module_order,
        )
        db.add(module)
        db.flush()
        for lesson_order, lesson_in in enumerate(module_in.lessons):
            db.add(CourseLesson(
                course_id=course.id,
                module_id=module.id,
                lesson_key=lesson_in.lesson_id,
                title=lesson_in.title,
                type=lesson_in.type,
                video_url=lesson_in.video_url,
                duration_minutes=lesson_in.duration_minutes,
                is_preview=lesson_in.is_preview,
                order=lesson_order,
            ))

    db.commit()
    db.refresh(course)
    logger.info("Course %s '%s' created with %d lessons", course.id, course.title, course.lesson_count)
    return course


def get_course(db: Session, course_id: int) -> Course:
    course = db.get(Course, course_id)
    if course is None:
        raise CourseNotFoundError()
    return course


def list_courses(
    db: Session,
    category: Optional[str] = None,
    level: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    status: str = "published",
):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)

    query = db.query(Course).filter(Course.status == status)
    if category:
        query = query.filter(Course.category == category)
    if level:
        query = query.filter(Course.level == level)
    if search and search.strip():
        like = f"%{search.strip()}%"
        query = query.filter(or_(Course.title.ilike(like), Course.description.ilike(like)))

    total = query.with_entities(func.count(Course.id)).scalar()
    courses = (
        query.order_by(Course.created_at.desc(), Course.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "courses": [course_to_dict(c) for c in courses],
        "pagination": {
            "current": page,
            "pages": (total + limit - 1) // limit,
            "total": total,
            "limit": limit,
        },
    }


def course_to_dict(course: Course, with_curriculum: bool = False) -> dict:
    data = {
        "id": course.id,
        "title": course.title,
        "slug": course.slug,
        "description": course.description,
        "shortDescription": course.short_description,
        "price": course.price,
        "originalPrice": course.original_price,
        "category": course.category,
        "level": course.level,
        "language": course.language,
        "status": course.status,
        "thumbnail": course.thumbnail,
        "instructor": {"id": course.instructor_id, "name": course.instructor_name},
        "enrollmentCount": course.enrollment_count,
        "lessonCount": course.lesson_count,
        "createdAt": course.created_at,
    }
    if with_curriculum:
        data["curriculum"] = [
            {
                "moduleTitle": m.title,
                "moduleDescription": m.description,
                "lessons": [
                    {
                        "lessonId": l.lesson_key,
                        "title": l.title,
                        "type": l.type,
                        "durationMinutes": l.duration_minutes,
                        "isPreview": l.is_preview,
                        # video links of paid lessons are served to enrolled users only
                        "videoUrl": l.video_url if l.is_preview else None,
                    }
                    for l in m.lessons
                ],
            }
            for m in course.modules
        ]
    return data


# -------------------- REVIEWS --------------------

def create_review(db: Session, course_id: int, user: User, data: ReviewCreate) -> Review:
    get_course(db, course_id)

    existing = db.query(Review.id).filter(Review.user_id == user.id, Review.course_id == course_id).first()
    if existing:
        raise DuplicateReviewError()

    review = Review(
        user_id=user.id,
        course_id=course_id,
        user_name=user.name,
        rating=data.rating,
        title=data.title,
        comment=data.comment,
        is_approved=False,
        created_at=utcnow(),
    )
    db.add(review)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateReviewError()
    db.refresh(review)
    return review


def list_reviews(db: Session, course_id: int):
    get_course(db, course_id)
    approved = db.query(Review).filter(Review.course_id == course_id, Review.is_approved.is_(True))
    reviews = approved.order_by(Review.created_at.desc(), Review.id.desc()).all()
    average = approved.with_entities(func.avg(Review.rating)).scalar()
    return {
        "reviews": [review_to_dict(r) for r in reviews],
        "count": len(reviews),
        "averageRating": round(float(average), 1) if average is not None else None,
    }


def moderate_review(db: Session, review_id: int, is_approved: bool, moderator: str, note: Optional[str] = None) -> Review:
    review = db.get(Review, review_id)
    if review is None:
        raise ReviewNotFoundError()

    review.is_approved = is_approved
    review.moderated_by = moderator
    review.moderated_at = utcnow()
    review.moderation_note = note
    db.commit()
    db.refresh(review)
    return review


def review_to_dict(r: Review) -> dict:
    return {
        "id": r.id,
        "user": {"id": r.user_id, "name": r.user_name},
        "course": r.course_id,
        "rating": r.rating,
        "title": r.title,
        "comment": r.comment,
        "isApproved": r.is_approved,
        "moderatedAt": r.moderated_at,
        "createdAt": r.created_at,
    }
