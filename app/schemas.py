"""
Request bodies for the HTTP API.

Field names follow the camelCase keys the web client sends; handlers read
them through the snake_case attributes.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from .models import PaymentMethod


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


# -------------------- AUTH --------------------

class SendOtpRequest(ApiModel):
    email: EmailStr
    purpose: str = "email_verification"


class VerifyOtpRequest(ApiModel):
    email: EmailStr
    otp: str = Field(..., min_length=4, max_length=10)
    purpose: str = "email_verification"


class RegisterRequest(ApiModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = Field(None, pattern=r"^(\+88)?01[3-9]\d{8}$")


class LoginRequest(ApiModel):
    email: EmailStr
    password: str


class ForgotPasswordRequest(ApiModel):
    email: EmailStr


class ResetPasswordRequest(ApiModel):
    email: EmailStr
    otp: str
    new_password: str = Field(..., alias="newPassword", min_length=6)


# -------------------- PAYMENTS --------------------

class PayerInfo(ApiModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    phone: str = Field(..., pattern=r"^(\+88)?01[3-9]\d{8}$")


class CourseRef(ApiModel):
    id: int


class PaymentCreate(ApiModel):
    user: PayerInfo
    course: CourseRef
    amount: float = Field(..., gt=0)
    currency: str = Field("BDT", pattern="^(BDT|USD)$")
    payment_method: PaymentMethod = Field(..., alias="paymentMethod")
    transaction_id: str = Field(..., alias="transactionId", min_length=1, max_length=50)
    notes: Optional[str] = Field(None, max_length=1000)


class PaymentStatusUpdate(ApiModel):
    # validated by the state machine so unknown values answer 400, not 422
    status: str
    admin_note: Optional[str] = Field(None, alias="adminNote", max_length=1000)


# -------------------- COURSES --------------------

class LessonIn(ApiModel):
    lesson_id: str = Field(..., alias="lessonId", min_length=1, max_length=100)
    title: str = Field(..., min_length=1, max_length=200)
    type: str = Field("video", pattern="^(video|text|quiz|assignment|live)$")
    video_url: Optional[str] = Field(None, alias="videoUrl")
    duration_minutes: int = Field(0, alias="durationMinutes", ge=0)
    is_preview: bool = Field(False, alias="isPreview")


class ModuleIn(ApiModel):
    title: str = Field(..., alias="moduleTitle", min_length=1, max_length=200)
    description: Optional[str] = Field(None, alias="moduleDescription")
    lessons: List[LessonIn] = []


class CourseCreate(ApiModel):
    title: str = Field(..., min_length=5, max_length=200)
    description: str = Field(..., min_length=20, max_length=2000)
    short_description: Optional[str] = Field(None, alias="shortDescription", max_length=500)
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, alias="originalPrice", ge=0)
    category: str = Field(
        "other",
        pattern="^(islamic-studies|arabic-language|quran-studies|hadith-studies|fiqh|other)$",
    )
    level: str = Field("beginner", pattern="^(beginner|intermediate|advanced)$")
    language: str = Field("bn", pattern="^(bn|ar|en)$")
    status: str = Field("published", pattern="^(draft|published|archived)$")
    thumbnail: Optional[str] = None
    instructor_id: Optional[int] = Field(None, alias="instructorId")
    curriculum: List[ModuleIn] = []

    @field_validator("curriculum")
    @classmethod
    def lesson_ids_unique(cls, modules):
        seen = set()
        for module in modules:
            for lesson in module.lessons:
                if lesson.lesson_id in seen:
                    raise ValueError(f"duplicate lessonId '{lesson.lesson_id}'")
                seen.add(lesson.lesson_id)
        return modules


# -------------------- REVIEWS --------------------

class ReviewCreate(ApiModel):
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: str = Field(..., min_length=10, max_length=1000)


class ReviewModeration(ApiModel):
    is_approved: bool = Field(..., alias="isApproved")
    note: Optional[str] = None


# -------------------- PROGRESS --------------------

class ProgressUpdateRequest(ApiModel):
    course_id: int = Field(..., alias="courseId")
    lesson_id: str = Field(..., alias="lessonId")
    completed: bool = False
    time_spent: int = Field(0, alias="timeSpent")


def error_fields(errors) -> List[dict]:
    """Flatten pydantic errors into [{"field": "user.email", "message": ...}]."""
    fields = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        fields.append({"field": ".".join(loc) or "body", "message": err.get("msg", "Invalid value")})
    return fields
