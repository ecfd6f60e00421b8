"""
Shared fixtures: in-memory database, fake mail and real-time transports.
"""

import asyncio
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["ADMIN_EMAIL"] = "admin@talim.academy"
os.environ["ADMIN_PASSWORD"] = "admin-secret"
os.environ["MIGRATE_DB"] = "false"
os.environ["MAIL_USERNAME"] = ""
os.environ["MAIL_PASSWORD"] = ""

import pytest
from datetime import timedelta
from fastapi.testclient import TestClient

from app.courses import create_course
from app.database import Base, SessionLocal, engine
from app.errors import DeliveryError
from app.main import app, get_broadcaster, get_mailer, get_otp_store
from app.models import Payment, User, UserRole
from app.notifications import NotificationDispatcher
from app.otp import OTPStore
from app.payments import submit_payment
from app.schemas import CourseCreate, PaymentCreate
from app.security import create_access_token, hash_password, token_for_user


class FakeMailer:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    @property
    def configured(self):
        return True

    async def send(self, recipient, subject, body, subtype="html"):
        if self.fail:
            raise DeliveryError("SMTP unavailable")
        self.sent.append({"to": recipient, "subject": subject, "body": body})


class FakeBroadcaster:
    def __init__(self):
        self.events = []

    def emit(self, event, payload, rooms=None):
        self.events.append({"event": event, "data": payload, "rooms": list(rooms) if rooms else None})

    def named(self, event):
        return [e for e in self.events if e["event"] == event]


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def broadcaster():
    return FakeBroadcaster()


@pytest.fixture
def dispatcher(db, mailer, broadcaster):
    return NotificationDispatcher(db, mailer, broadcaster)


@pytest.fixture
def otp_store():
    return OTPStore(ttl=timedelta(minutes=5), max_entries=100, max_attempts=3)


@pytest.fixture
def course(db):
    return create_course(db, CourseCreate(
        title="Practical Ibarat",
        description="A complete course on reading classical Arabic texts.",
        price=1500,
        category="arabic-language",
        curriculum=[
            {
                "moduleTitle": "Basics",
                "lessons": [
                    {"lessonId": "lesson-1", "title": "Alphabet", "isPreview": True, "videoUrl": "https://v/1"},
                    {"lessonId": "lesson-2", "title": "Words", "videoUrl": "https://v/2"},
                ],
            },
            {
                "moduleTitle": "Conversation",
                "lessons": [{"lessonId": "lesson-3", "title": "Introductions"}],
            },
        ],
    ))


@pytest.fixture
def student(db):
    user = User(
        name="Abdullah",
        email="a@x.com",
        password=hash_password("secret123"),
        role=UserRole.STUDENT.value,
        is_email_verified=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def payment_payload(course_id, email="a@x.com", txn="TXN1", **overrides):
    payload = {
        "user": {"name": "Abdullah", "email": email, "phone": "01712345678"},
        "course": {"id": course_id},
        "amount": 1500,
        "paymentMethod": "bkash",
        "transactionId": txn,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_payment(db, dispatcher, course):
    def _make(email="a@x.com", txn="TXN1") -> Payment:
        data = PaymentCreate.model_validate(payment_payload(course.id, email=email, txn=txn))
        return asyncio.run(submit_payment(db, dispatcher, data))
    return _make


@pytest.fixture
def client(mailer, broadcaster, otp_store):
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_broadcaster] = lambda: broadcaster
    app.dependency_overrides[get_otp_store] = lambda: otp_store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    token = create_access_token({"user_id": 0, "email": "admin@talim.academy", "role": "admin"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def student_headers(student):
    return {"Authorization": f"Bearer {token_for_user(student)}"}
