import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import func
from sqlalchemy.orm import Session

from .config import (
    ADMIN_EMAIL,
    ADMIN_NAME,
    APP_NAME,
    CORS_ORIGINS,
    LOG_LEVEL,
    OTP_MAX_ATTEMPTS,
    OTP_MAX_ENTRIES,
    OTP_TTL_MINUTES,
    REALTIME_REQUIRE_AUTH,
    REQUIRE_EMAIL_VERIFICATION,
)
from .courses import (
    course_to_dict,
    create_course,
    create_review,
    get_course,
    list_courses,
    list_reviews,
    moderate_review,
    review_to_dict,
)
from .database import get_db, init_db, utcnow
from .enrollment import find_user_by_email, get_user_by_email, normalize_email, user_courses
from .errors import AppError, DeliveryError, DuplicateUserError, UserNotFoundError, ValidationError
from .mailer import Mailer, build_connection_config, otp_email, welcome_email
from .models import Course, NotificationType, User, UserRole
from .notifications import (
    NotificationDispatcher,
    list_notifications,
    mark_notification_read,
    notification_to_dict,
)
from .otp import OTP_PURPOSES, OTPStore
from .payments import get_payment, list_payments, payment_stats, payment_to_dict, set_payment_status, submit_payment
from .progress import progress_to_dict, update_progress, user_dashboard, user_progress
from .realtime import ADMIN_ROOM, ConnectionManager, user_room
from .schemas import (
    CourseCreate,
    ForgotPasswordRequest,
    LoginRequest,
    PaymentCreate,
    PaymentStatusUpdate,
    ProgressUpdateRequest,
    RegisterRequest,
    ResetPasswordRequest,
    ReviewCreate,
    ReviewModeration,
    SendOtpRequest,
    VerifyOtpRequest,
    error_fields,
)
from .security import (
    create_access_token,
    get_current_admin,
    get_current_user,
    get_token_payload,
    hash_password,
    is_admin_credentials,
    token_claims,
    token_for_user,
    verify_password,
)

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Create tables if they don't exist, skip if they already exist
try:
    init_db()
except Exception:
    logger.exception("Table creation handled")


# -------------------- APP --------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await manager.drain()


app = FastAPI(title=f"{APP_NAME} Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

manager = ConnectionManager()
mailer = Mailer(build_connection_config())
otp_store = OTPStore(
    ttl=timedelta(minutes=OTP_TTL_MINUTES),
    max_entries=OTP_MAX_ENTRIES,
    max_attempts=OTP_MAX_ATTEMPTS,
)
if not mailer.configured:
    logger.warning("Email service not configured; OTP and notification emails will fail")


# -------------------- DEPENDENCY --------------------

def get_mailer():
    return mailer

def get_broadcaster():
    return manager

def get_otp_store():
    return otp_store

def get_dispatcher(
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    broadcaster=Depends(get_broadcaster),
):
    return NotificationDispatcher(db, mailer, broadcaster)

def require_self_or_admin(email: str, claims: dict):
    if claims.get("role") == UserRole.ADMIN.value:
        return
    if normalize_email(claims.get("email") or "") != normalize_email(email):
        raise HTTPException(status_code=403, detail="Not allowed to access another user's data")


# -------------------- ERRORS --------------------

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    error = ValidationError(error_fields(exc.errors()))
    return JSONResponse(status_code=error.status_code, content=jsonable_encoder(error.to_dict()))


# -------------------- ROUTES --------------------

@app.get("/")
def read_root():
    return {"status": "online", "message": f"{APP_NAME} API is running"}


def user_to_dict(user: User):
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "phone": user.phone,
        "role": user.role,
        "isEmailVerified": user.is_email_verified,
        "enrolledCourses": user.enrolled_course_ids,
    }


# -------------------- AUTH --------------------

async def deliver_otp(store: OTPStore, mailer: Mailer, email: str, purpose: str):
    otp = store.issue(email, purpose)
    subject, body = otp_email(otp, OTP_TTL_MINUTES)
    try:
        await mailer.send(email, subject, body)
    except DeliveryError as exc:
        logger.error("OTP for %s not delivered: %s", email, exc.message)
        raise HTTPException(status_code=500, detail="Failed to send OTP email")


@app.post("/api/send-otp")
async def send_otp(
    data: SendOtpRequest,
    db: Session = Depends(get_db),
    store: OTPStore = Depends(get_otp_store),
    mailer: Mailer = Depends(get_mailer),
):
    if data.purpose not in OTP_PURPOSES:
        raise ValidationError([{"field": "purpose", "message": f"purpose must be one of {', '.join(OTP_PURPOSES)}"}])

    user = find_user_by_email(db, data.email)
    if data.purpose == "email_verification":
        if user is not None and user.password:
            raise DuplicateUserError("Email already registered")
    elif user is None:
        raise UserNotFoundError("Email not registered")

    await deliver_otp(store, mailer, data.email, data.purpose)
    return {"success": True, "message": "OTP sent to email"}


@app.post("/api/verify-otp")
def verify_otp_api(
    data: VerifyOtpRequest,
    db: Session = Depends(get_db),
    store: OTPStore = Depends(get_otp_store),
):
    if not store.verify(data.email, data.otp, data.purpose):
        raise HTTPException(status_code=400, detail="Invalid or expired OTP")

    response = {"success": True, "message": "OTP verified"}
    user = find_user_by_email(db, data.email)
    if user is None:
        return response

    if data.purpose == "email_verification" and not user.is_email_verified:
        user.is_email_verified = True
        db.commit()
    elif data.purpose == "login":
        user.last_login_at = utcnow()
        db.commit()
        response.update(access_token=token_for_user(user), token_type="bearer", user=user_to_dict(user))
    return response


@app.post("/api/register", status_code=201)
async def register(
    data: RegisterRequest,
    db: Session = Depends(get_db),
    store: OTPStore = Depends(get_otp_store),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    email = normalize_email(data.email)
    user = find_user_by_email(db, email)
    if user is not None and user.password:
        raise DuplicateUserError("Email already registered")

    verified = store.consume_verification(email)
    if REQUIRE_EMAIL_VERIFICATION and not verified:
        raise HTTPException(status_code=400, detail="Email not verified. Please verify the OTP first")

    if user is None:
        user = User(email=email, role=UserRole.STUDENT.value, created_at=utcnow())
        db.add(user)
    else:
        # bare record created when a payment was approved before sign-up
        logger.info("Completing bare user record for %s", email)

    user.name = data.name
    user.password = hash_password(data.password)
    user.phone = data.phone or user.phone
    user.is_email_verified = user.is_email_verified or verified

    db.commit()
    db.refresh(user)

    await dispatcher.notify(
        user,
        NotificationType.WELCOME.value,
        f"Welcome to {APP_NAME}!",
        "Your account has been created. Start exploring our courses.",
        channels={"email": True},
        email_message=welcome_email(user.name),
    )

    return {
        "success": True,
        "access_token": token_for_user(user),
        "token_type": "bearer",
        "user": user_to_dict(user),
    }


@app.post("/api/login")
def login(data: LoginRequest, db: Session = Depends(get_db)):
    if is_admin_credentials(data.email, data.password):
        token = create_access_token({
            "user_id": 0,
            "email": ADMIN_EMAIL,
            "role": UserRole.ADMIN.value,
        })

        return {
            "access_token": token,
            "token_type": "bearer",
            "user": {
                "id": "admin-001",
                "name": ADMIN_NAME,
                "email": ADMIN_EMAIL,
                "role": UserRole.ADMIN.value,
            }
        }

    user = find_user_by_email(db, data.email)
    if not user or not verify_password(data.password, user.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is disabled")

    user.last_login_at = utcnow()
    db.commit()

    return {
        "access_token": token_for_user(user),
        "token_type": "bearer",
        "user": user_to_dict(user),
    }


@app.post("/api/forgot-password")
async def forgot_password(
    data: ForgotPasswordRequest,
    db: Session = Depends(get_db),
    store: OTPStore = Depends(get_otp_store),
    mailer: Mailer = Depends(get_mailer),
):
    user = find_user_by_email(db, data.email)
    if not user:
        raise UserNotFoundError("Email not registered")

    await deliver_otp(store, mailer, user.email, "password_reset")
    return {"success": True, "message": "OTP sent to email"}


@app.post("/api/reset-password")
def reset_password(
    data: ResetPasswordRequest,
    db: Session = Depends(get_db),
    store: OTPStore = Depends(get_otp_store),
):
    user = find_user_by_email(db, data.email)
    if not user:
        raise HTTPException(status_code=400, detail="Invalid request")

    if not store.verify(user.email, data.otp, "password_reset"):
        raise HTTPException(status_code=400, detail="Invalid or expired OTP")

    user.password = hash_password(data.new_password)
    db.commit()
    return {"success": True, "message": "Password reset successful"}


# -------------------- COURSES --------------------

@app.get("/api/courses")
def courses_catalog(
    category: Optional[str] = None,
    level: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    db: Session = Depends(get_db),
):
    return list_courses(db, category=category, level=level, search=search, page=page, limit=limit)


@app.get("/api/courses/{course_id}")
def course_detail(course_id: int, db: Session = Depends(get_db)):
    return {"course": course_to_dict(get_course(db, course_id), with_curriculum=True)}


@app.post("/api/admin/courses", status_code=201)
def add_course(data: CourseCreate, db: Session = Depends(get_db), admin: dict = Depends(get_current_admin)):
    course = create_course(db, data)
    logger.info("Course %s created by %s", course.id, admin["email"])
    return {"success": True, "course": course_to_dict(course, with_curriculum=True)}


@app.get("/api/courses/{course_id}/reviews")
def course_reviews(course_id: int, db: Session = Depends(get_db)):
    return list_reviews(db, course_id)


@app.post("/api/courses/{course_id}/reviews", status_code=201)
def add_review(
    course_id: int,
    data: ReviewCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    review = create_review(db, course_id, user, data)
    return {"success": True, "message": "Review submitted for moderation", "review": review_to_dict(review)}


@app.put("/api/admin/reviews/{review_id}")
def review_moderation(
    review_id: int,
    data: ReviewModeration,
    db: Session = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    review = moderate_review(db, review_id, data.is_approved, admin["email"], data.note)
    return {"success": True, "review": review_to_dict(review)}


# -------------------- PAYMENTS --------------------

@app.post("/api/payments", status_code=201)
async def create_payment(
    data: PaymentCreate,
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    payment = await submit_payment(
        db,
        dispatcher,
        data,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return {
        "success": True,
        "message": "Payment submitted successfully. Awaiting admin approval.",
        "payment": payment_to_dict(payment),
    }


@app.get("/api/admin/payments")
def admin_payments(
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    return list_payments(db, status=status, page=page, limit=limit, search=search)


@app.get("/api/admin/payments/{payment_id}")
def admin_payment_detail(payment_id: int, db: Session = Depends(get_db), admin: dict = Depends(get_current_admin)):
    return {"payment": payment_to_dict(get_payment(db, payment_id))}


@app.put("/api/admin/payments/{payment_id}")
async def admin_update_payment(
    payment_id: int,
    data: PaymentStatusUpdate,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    admin: dict = Depends(get_current_admin),
):
    payment = await set_payment_status(
        db,
        dispatcher,
        payment_id,
        data.status,
        admin_note=data.admin_note,
        admin_name=admin["email"],
    )
    return {
        "success": True,
        "message": "Payment status updated successfully",
        "payment": payment_to_dict(payment),
    }


# -------------------- USERS & PROGRESS --------------------

@app.get("/api/users/{email}/courses")
def enrolled_courses(email: str, db: Session = Depends(get_db), claims: dict = Depends(get_token_payload)):
    require_self_or_admin(email, claims)
    return {"courses": user_courses(db, email)}


@app.get("/api/users/{email}/progress")
def progress_overview(email: str, db: Session = Depends(get_db), claims: dict = Depends(get_token_payload)):
    require_self_or_admin(email, claims)
    return {"progress": user_progress(db, email)}


@app.post("/api/users/{email}/progress")
def record_progress(
    email: str,
    data: ProgressUpdateRequest,
    db: Session = Depends(get_db),
    claims: dict = Depends(get_token_payload),
):
    require_self_or_admin(email, claims)
    user = get_user_by_email(db, email)
    progress = update_progress(
        db,
        user,
        data.course_id,
        data.lesson_id,
        completed=data.completed,
        time_spent=data.time_spent,
    )
    return {"success": True, "progress": progress_to_dict(progress)}


# -------------------- NOTIFICATIONS --------------------

@app.get("/api/notifications")
def my_notifications(
    page: int = 1,
    limit: int = 20,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return list_notifications(db, user.id, page=page, limit=limit)


@app.put("/api/notifications/{notification_id}/read")
def read_notification(notification_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return {"success": True, "notification": notification_to_dict(mark_notification_read(db, notification_id, user.id))}


@app.get("/api/admin/notifications")
def admin_notifications(
    page: int = 1,
    limit: int = 20,
    db: Session = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    return list_notifications(db, None, page=page, limit=limit)


@app.put("/api/admin/notifications/{notification_id}/read")
def admin_read_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    return {"success": True, "notification": notification_to_dict(mark_notification_read(db, notification_id, None))}


# -------------------- DASHBOARD --------------------

@app.get("/api/dashboard")
def dashboard(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return {
        "user": user_to_dict(user),
        "stats": user_dashboard(db, user),
        "enrolledCourses": user_courses(db, user.email),
    }


@app.get("/api/admin/dashboard")
def admin_dashboard(db: Session = Depends(get_db), admin: dict = Depends(get_current_admin)):
    return {
        "totalUsers": db.query(func.count(User.id)).filter(User.role != UserRole.ADMIN.value).scalar(),
        "totalCourses": db.query(func.count(Course.id)).scalar(),
        **payment_stats(db),
    }


# -------------------- REAL-TIME --------------------

@app.websocket("/ws")
async def realtime_socket(websocket: WebSocket):
    await websocket.accept()
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"event": "error", "data": {"message": "Messages must be JSON"}})
                continue

            action = message.get("action") if isinstance(message, dict) else None
            claims = token_claims(message.get("token")) if isinstance(message, dict) else {}
            is_admin = claims.get("role") == UserRole.ADMIN.value

            if action == "joinAdminRoom":
                if REALTIME_REQUIRE_AUTH and not is_admin:
                    await websocket.send_json({"event": "error", "data": {"message": "Admin token required"}})
                    continue
                room = ADMIN_ROOM
            elif action == "joinUserRoom" and message.get("email"):
                email = normalize_email(message["email"])
                if REALTIME_REQUIRE_AUTH and not is_admin and normalize_email(claims.get("email") or "") != email:
                    await websocket.send_json({"event": "error", "data": {"message": "Token for this email required"}})
                    continue
                room = user_room(email)
            else:
                await websocket.send_json({"event": "error", "data": {"message": "Unknown action"}})
                continue

            manager.join(room, websocket)
            await websocket.send_json({"event": "joined", "room": room})
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
