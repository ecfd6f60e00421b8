"""
Domain errors.

Every error raised by the service layer derives from AppError and carries the
HTTP status the API answers with. DeliveryError is the exception: it marks a
failed email or real-time push and is only ever logged.
"""

from typing import List, Optional


class AppError(Exception):
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "message": self.message}


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation error"

    def __init__(self, fields: List[dict], message: Optional[str] = None):
        # fields: [{"field": "amount", "message": "..."}]
        self.fields = fields
        super().__init__(message)

    @property
    def field_names(self) -> List[str]:
        return [f["field"] for f in self.fields]

    def to_dict(self) -> dict:
        return {**super().to_dict(), "fields": self.field_names, "errors": self.fields}


class InvalidStatusError(AppError):
    status_code = 400
    default_message = "Invalid status value. Only approved, rejected or pending accepted"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class PaymentNotFoundError(NotFoundError):
    default_message = "Payment not found"


class UserNotFoundError(NotFoundError):
    default_message = "User not found"


class CourseNotFoundError(NotFoundError):
    default_message = "Course not found"


class ProgressNotFoundError(NotFoundError):
    default_message = "Progress not found"


class LessonNotFoundError(NotFoundError):
    default_message = "Lesson not found in progress"


class NotificationNotFoundError(NotFoundError):
    default_message = "Notification not found"


class ReviewNotFoundError(NotFoundError):
    default_message = "Review not found"


class DuplicateError(AppError):
    status_code = 409
    default_message = "Duplicate record"


class DuplicateTransactionError(DuplicateError):
    default_message = "Transaction ID already used for another payment"


class DuplicateReviewError(DuplicateError):
    default_message = "You have already reviewed this course"


class DuplicateUserError(DuplicateError):
    default_message = "User already exists"


class DeliveryError(AppError):
    status_code = 502
    default_message = "Delivery failed"


class ProgressInitError(AppError):
    status_code = 500
    default_message = "Payment approved and course access granted, but progress could not be initialized"
