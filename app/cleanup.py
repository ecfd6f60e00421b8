"""
Maintenance job: python -m app.cleanup

Deletes user records that never completed sign-up (missing name or
password, typically created by an enrollment upsert) and purges expired
notifications.
"""

import logging

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .config import LOG_LEVEL
from .database import SessionLocal, init_db, utcnow
from .models import Enrollment, LessonProgress, Notification, Payment, Progress, Review, User, UserRole

logger = logging.getLogger(__name__)


def incomplete_users_query(db: Session):
    return db.query(User).filter(
        User.role != UserRole.ADMIN.value,
        or_(User.name.is_(None), User.name == "", User.password.is_(None), User.password == ""),
    )


def cleanup_incomplete_users(db: Session) -> int:
    users = incomplete_users_query(db).all()
    logger.info("Found %d incomplete users", len(users))

    for user in users:
        logger.info(
            "- Email: %s, Name: %s, Password: %s",
            user.email, user.name or "missing", "exists" if user.password else "missing",
        )
        progress_ids = [p.id for p in db.query(Progress.id).filter(Progress.user_id == user.id)]
        if progress_ids:
            db.query(LessonProgress).filter(LessonProgress.progress_id.in_(progress_ids)).delete(synchronize_session=False)
            db.query(Progress).filter(Progress.id.in_(progress_ids)).delete(synchronize_session=False)
        db.query(Enrollment).filter(Enrollment.user_id == user.id).delete(synchronize_session=False)
        db.query(Notification).filter(Notification.recipient_id == user.id).delete(synchronize_session=False)
        db.query(Review).filter(Review.user_id == user.id).delete(synchronize_session=False)
        # payments keep their payer snapshot
        db.query(Payment).filter(Payment.user_id == user.id).update({"user_id": None}, synchronize_session=False)
        db.delete(user)

    db.commit()
    if users:
        logger.info("Deleted %d incomplete user records", len(users))
    return len(users)


def purge_expired_notifications(db: Session) -> int:
    deleted = (
        db.query(Notification)
        .filter(Notification.expires_at.isnot(None), Notification.expires_at <= utcnow())
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info("Purged %d expired notifications", deleted)
    return deleted


def main():
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    init_db()
    db = SessionLocal()
    try:
        cleanup_incomplete_users(db)
        purge_expired_notifications(db)
    except Exception:
        db.rollback()
        logger.exception("Error cleaning up")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
