from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base, utcnow


class UserRole(str, Enum):
    STUDENT = "student"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    APPROVED = "approved"
    REJECTED = "rejected"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    BKASH = "bkash"
    NAGAD = "nagad"
    ROCKET = "rocket"
    UPAY = "upay"
    BANK = "bank"
    CARD = "card"
    CASH = "cash"


class LessonStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class NotificationType(str, Enum):
    COURSE_ENROLLMENT = "course_enrollment"
    PAYMENT_APPROVED = "payment_approved"
    PAYMENT_REJECTED = "payment_rejected"
    NEW_PAYMENT = "new_payment"
    COURSE_UPDATE = "course_update"
    NEW_LESSON = "new_lesson"
    ASSIGNMENT_DUE = "assignment_due"
    CERTIFICATE_EARNED = "certificate_earned"
    SYSTEM_ANNOUNCEMENT = "system_announcement"
    REMINDER = "reminder"
    WELCOME = "welcome"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=True)  # NULL only for bare records created by enrollment upsert
    email = Column(String(255), unique=True, index=True, nullable=False)
    password = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)
    role = Column(String(50), nullable=False, default=UserRole.STUDENT.value)
    is_active = Column(Boolean, nullable=False, default=True)
    is_email_verified = Column(Boolean, nullable=False, default=False)
    last_login_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    enrollments = relationship(
        "Enrollment",
        back_populates="user",
        order_by="Enrollment.enrolled_at",
        cascade="all, delete-orphan",
    )

    @property
    def enrolled_course_ids(self):
        return [e.course_id for e in self.enrollments]


class Enrollment(Base):
    """One entry of a user's enrolledCourses set."""

    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_enrollment_user_course"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    enrolled_at = Column(DateTime, nullable=False, default=utcnow)
    progress = Column(Integer, nullable=False, default=0)  # 0-100, mirrored from Progress
    completed_lessons = Column(JSON, nullable=False, default=list)  # [{lessonId, completedAt}]
    last_accessed_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="enrollments")
    course = relationship("Course")


class Course(Base):
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    slug = Column(String(220), unique=True, index=True, nullable=False)
    description = Column(Text, nullable=False)
    short_description = Column(String(500), nullable=True)
    price = Column(Float, nullable=False, default=0)
    original_price = Column(Float, nullable=True)
    category = Column(String(50), nullable=False, default="other")
    level = Column(String(50), nullable=False, default="beginner")  # beginner | intermediate | advanced
    language = Column(String(10), nullable=False, default="bn")
    status = Column(String(20), nullable=False, default="published")  # draft | published | archived
    thumbnail = Column(String(255), nullable=True)
    instructor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    instructor_name = Column(String(100), nullable=True)
    enrollment_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    modules = relationship(
        "CourseModule",
        back_populates="course",
        order_by="CourseModule.order",
        cascade="all, delete-orphan",
    )

    @property
    def lesson_count(self):
        return sum(len(m.lessons) for m in self.modules)


class CourseModule(Base):
    __tablename__ = "course_modules"

    id = Column(Integer, primary_key=True, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    order = Column(Integer, nullable=False, default=0)

    course = relationship("Course", back_populates="modules")
    lessons = relationship(
        "CourseLesson",
        back_populates="module",
        order_by="CourseLesson.order",
        cascade="all, delete-orphan",
    )


class CourseLesson(Base):
    __tablename__ = "course_lessons"
    __table_args__ = (UniqueConstraint("course_id", "lesson_key", name="uq_lesson_course_key"),)

    id = Column(Integer, primary_key=True, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    module_id = Column(Integer, ForeignKey("course_modules.id"), nullable=False)
    lesson_key = Column(String(100), nullable=False)  # public lessonId, unique within the course
    title = Column(String(200), nullable=False)
    type = Column(String(20), nullable=False, default="video")  # video, text, quiz, assignment, live
    video_url = Column(String(500), nullable=True)
    duration_minutes = Column(Integer, nullable=False, default=0)
    is_preview = Column(Boolean, nullable=False, default=False)
    order = Column(Integer, nullable=False, default=0)

    module = relationship("CourseModule", back_populates="lessons")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)

    # payer snapshot
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    user_name = Column(String(100), nullable=False)
    user_email = Column(String(255), nullable=False, index=True)
    user_phone = Column(String(20), nullable=False)

    # course snapshot
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    course_title = Column(String(200), nullable=False)
    course_price = Column(Float, nullable=False, default=0)

    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="BDT")
    payment_method = Column(String(20), nullable=False, index=True)
    transaction_id = Column(String(100), unique=True, index=True, nullable=False)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)

    admin_note = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    approved_by = Column(String(255), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_by = Column(String(255), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    notes = Column(Text, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Progress(Base):
    __tablename__ = "progress"
    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_progress_user_course"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    overall_progress = Column(Integer, nullable=False, default=0)  # 0-100
    total_time_spent = Column(Integer, nullable=False, default=0)  # minutes
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)
    last_accessed_at = Column(DateTime, nullable=True)
    last_accessed_lesson = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    lessons = relationship(
        "LessonProgress",
        back_populates="progress",
        order_by="LessonProgress.id",
        cascade="all, delete-orphan",
    )


class LessonProgress(Base):
    __tablename__ = "lesson_progress"
    __table_args__ = (UniqueConstraint("progress_id", "lesson_id", name="uq_lesson_progress"),)

    id = Column(Integer, primary_key=True, index=True)
    progress_id = Column(Integer, ForeignKey("progress.id"), nullable=False, index=True)
    lesson_id = Column(String(100), nullable=False)
    module_index = Column(Integer, nullable=False, default=0)
    lesson_index = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=LessonStatus.NOT_STARTED.value)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    time_spent = Column(Integer, nullable=False, default=0)  # minutes

    progress = relationship("Progress", back_populates="lessons")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)  # NULL = admin broadcast
    type = Column(String(50), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    message = Column(String(1000), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    priority = Column(String(10), nullable=False, default="normal")  # low, normal, high, urgent
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime, nullable=True)

    channel_in_app = Column(Boolean, nullable=False, default=True)
    channel_email = Column(Boolean, nullable=False, default=False)
    channel_sms = Column(Boolean, nullable=False, default=False)
    channel_push = Column(Boolean, nullable=False, default=False)

    email_sent = Column(Boolean, nullable=True)
    email_sent_at = Column(DateTime, nullable=True)
    email_error = Column(String(500), nullable=True)

    expires_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    recipient = relationship("User")


class Review(Base):
    __tablename__ = "reviews"
    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_review_user_course"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    user_name = Column(String(100), nullable=True)
    rating = Column(Integer, nullable=False)  # 1-5
    title = Column(String(100), nullable=True)
    comment = Column(Text, nullable=False)
    is_approved = Column(Boolean, nullable=False, default=False)
    moderated_by = Column(String(255), nullable=True)
    moderated_at = Column(DateTime, nullable=True)
    moderation_note = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
