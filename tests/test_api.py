"""
HTTP API tests through FastAPI's TestClient.
"""

import asyncio
import re

import pytest

from app.main import app, lifespan, manager
from app.models import User
from app.realtime import ADMIN_ROOM
from app.security import token_for_user

from conftest import payment_payload


def last_code(mailer):
    return re.search(r">(\d{6})<", mailer.sent[-1]["body"]).group(1)


@pytest.fixture
def submitted(client, course):
    response = client.post("/api/payments", json=payment_payload(course.id))
    assert response.status_code == 201
    return response.json()["payment"]


class TestRoot:

    def test_status(self, client):
        assert client.get("/").json()["status"] == "online"


class TestPaymentsApi:

    def test_submit(self, client, course, broadcaster):
        response = client.post(
            "/api/payments",
            json=payment_payload(course.id, notes="sent from 017"),
            headers={"User-Agent": "pytest-agent"},
        )
        assert response.status_code == 201
        payment = response.json()["payment"]
        assert payment["status"] == "pending"
        assert payment["isPending"] is True
        assert payment["course"]["id"] == course.id
        assert payment["userAgent"] == "pytest-agent"
        assert payment["ipAddress"]
        assert broadcaster.named("newPayment")

    def test_short_transaction_id_is_accepted(self, client, course, student):
        response = client.post("/api/payments", json={
            "user": {"name": "Abdullah", "email": "a@x.com", "phone": "01712345678"},
            "course": {"id": course.id},
            "amount": 1500,
            "paymentMethod": "bkash",
            "transactionId": "TXN1",
        })
        assert response.status_code == 201
        payment = response.json()["payment"]
        assert payment["status"] == "pending"
        assert payment["transactionId"] == "TXN1"

    def test_blank_transaction_id_is_rejected(self, client, course):
        response = client.post("/api/payments", json=payment_payload(course.id, txn="   "))
        assert response.status_code == 400
        assert response.json()["fields"] == ["transactionId"]

    def test_validation_lists_every_field(self, client, course):
        body = payment_payload(course.id, amount=0, paymentMethod="paypal")
        body["user"]["phone"] = "12345"
        del body["transactionId"]

        response = client.post("/api/payments", json=body)
        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert set(data["fields"]) == {"amount", "paymentMethod", "user.phone", "transactionId"}

    def test_duplicate_transaction(self, client, course, submitted):
        response = client.post("/api/payments", json=payment_payload(course.id, email="b@x.com"))
        assert response.status_code == 409
        assert response.json()["message"] == "Transaction ID already used for another payment"

    def test_unknown_course(self, client):
        response = client.post("/api/payments", json=payment_payload(999))
        assert response.status_code == 404

    def test_admin_routes_need_admin(self, client, submitted, student_headers):
        assert client.get("/api/admin/payments").status_code == 401
        assert client.get("/api/admin/payments", headers=student_headers).status_code == 403

    def test_list_and_fetch(self, client, submitted, admin_headers):
        listing = client.get("/api/admin/payments", params={"status": "pending"}, headers=admin_headers).json()
        assert listing["total"] == 1
        assert listing["payments"][0]["id"] == submitted["id"]

        detail = client.get(f"/api/admin/payments/{submitted['id']}", headers=admin_headers)
        assert detail.json()["payment"]["transactionId"] == "TXN1"
        assert client.get("/api/admin/payments/999", headers=admin_headers).status_code == 404
        assert client.get("/api/admin/payments", params={"status": "odd"}, headers=admin_headers).status_code == 400

    def test_approve_then_learn(self, client, course, student, submitted, admin_headers, student_headers, broadcaster):
        response = client.put(
            f"/api/admin/payments/{submitted['id']}",
            json={"status": "approved", "adminNote": "verified"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        payment = response.json()["payment"]
        assert payment["status"] == "approved"
        assert payment["approvedBy"]["adminName"] == "admin@talim.academy"
        assert payment["adminNote"] == "verified"

        events = broadcaster.named("courseAccessUpdated")
        assert [e["data"]["courseId"] for e in events] == [course.id]

        courses = client.get("/api/users/a@x.com/courses", headers=student_headers).json()["courses"]
        assert [c["courseId"] for c in courses] == [course.id]

        progress = client.get("/api/users/a@x.com/progress", headers=student_headers).json()["progress"]
        assert progress[0]["overallProgress"] == 0

        updated = client.post(
            "/api/users/a@x.com/progress",
            json={"courseId": course.id, "lessonId": "lesson-1", "completed": True, "timeSpent": 20},
            headers=student_headers,
        )
        assert updated.status_code == 200
        assert updated.json()["progress"]["overallProgress"] == 33

        missing = client.post(
            "/api/users/a@x.com/progress",
            json={"courseId": course.id, "lessonId": "nope"},
            headers=student_headers,
        )
        assert missing.status_code == 404

    def test_invalid_status(self, client, submitted, admin_headers):
        response = client.put(f"/api/admin/payments/{submitted['id']}", json={"status": "done"}, headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_unknown_payment(self, client, admin_headers):
        response = client.put("/api/admin/payments/4242", json={"status": "approved"}, headers=admin_headers)
        assert response.status_code == 404

    def test_approving_unknown_user_fails_cleanly(self, client, course, admin_headers):
        payment = client.post("/api/payments", json=payment_payload(course.id, email="ghost@x.com")).json()["payment"]
        response = client.put(f"/api/admin/payments/{payment['id']}", json={"status": "approved"}, headers=admin_headers)
        assert response.status_code == 404

        detail = client.get(f"/api/admin/payments/{payment['id']}", headers=admin_headers).json()["payment"]
        assert detail["status"] == "pending"


class TestUserRoutes:

    def test_other_users_data_is_private(self, client, db, student):
        other = User(name="Bilal", email="b@x.com", password="x")
        db.add(other)
        db.commit()
        headers = {"Authorization": f"Bearer {token_for_user(other)}"}

        assert client.get("/api/users/a@x.com/courses", headers=headers).status_code == 403
        assert client.get("/api/users/a@x.com/courses").status_code == 401

    def test_admin_can_read_any_user(self, client, student, admin_headers):
        assert client.get("/api/users/a@x.com/courses", headers=admin_headers).json() == {"courses": []}
        assert client.get("/api/users/nobody@x.com/courses", headers=admin_headers).status_code == 404

    def test_dashboards(self, client, student, submitted, student_headers, admin_headers):
        mine = client.get("/api/dashboard", headers=student_headers).json()
        assert mine["user"]["email"] == "a@x.com"
        assert mine["stats"]["totalCourses"] == 0

        overview = client.get("/api/admin/dashboard", headers=admin_headers).json()
        assert overview["totalUsers"] == 1
        assert overview["totalCourses"] == 1
        assert overview["pendingPayments"] == 1

    def test_notifications(self, client, student, submitted, admin_headers, student_headers):
        admin_feed = client.get("/api/admin/notifications", headers=admin_headers).json()
        assert admin_feed["unreadCount"] == 1
        notification_id = admin_feed["notifications"][0]["id"]

        read = client.put(f"/api/admin/notifications/{notification_id}/read", headers=admin_headers)
        assert read.json()["notification"]["isRead"] is True
        assert client.put(f"/api/notifications/{notification_id}/read", headers=student_headers).status_code == 404

        client.put(f"/api/admin/payments/{submitted['id']}", json={"status": "approved"}, headers=admin_headers)
        mine = client.get("/api/notifications", headers=student_headers).json()
        assert [n["type"] for n in mine["notifications"]] == ["payment_approved"]


class TestAuth:

    def test_register_requires_verified_email(self, client):
        response = client.post("/api/register", json={"name": "Nadia", "email": "new@x.com", "password": "secret123"})
        assert response.status_code == 400

    def test_signup_flow(self, client, mailer):
        assert client.post("/api/send-otp", json={"email": "new@x.com"}).status_code == 200
        code = last_code(mailer)

        assert client.post("/api/verify-otp", json={"email": "new@x.com", "otp": "000000" if code != "000000" else "111111"}).status_code == 400
        assert client.post("/api/verify-otp", json={"email": "new@x.com", "otp": code}).status_code == 200

        response = client.post("/api/register", json={"name": "Nadia", "email": "new@x.com", "password": "secret123"})
        assert response.status_code == 201
        body = response.json()
        assert body["user"]["isEmailVerified"] is True
        assert mailer.sent[-1]["to"] == "new@x.com"

        headers = {"Authorization": f"Bearer {body['access_token']}"}
        feed = client.get("/api/notifications", headers=headers).json()
        assert [n["type"] for n in feed["notifications"]] == ["welcome"]

        login = client.post("/api/login", json={"email": "new@x.com", "password": "secret123"})
        assert login.status_code == 200
        assert login.json()["user"]["role"] == "student"

    def test_send_otp_rejects_registered_email(self, client, student):
        assert client.post("/api/send-otp", json={"email": "a@x.com"}).status_code == 409

    def test_send_otp_unknown_purpose(self, client):
        response = client.post("/api/send-otp", json={"email": "new@x.com", "purpose": "party"})
        assert response.status_code == 400
        assert response.json()["fields"] == ["purpose"]

    def test_otp_mail_failure(self, client, mailer):
        mailer.fail = True
        assert client.post("/api/send-otp", json={"email": "new@x.com"}).status_code == 500

    def test_register_completes_bare_account(self, client, db, mailer):
        db.add(User(email="bare@x.com"))
        db.commit()

        client.post("/api/send-otp", json={"email": "bare@x.com"})
        client.post("/api/verify-otp", json={"email": "bare@x.com", "otp": last_code(mailer)})
        response = client.post("/api/register", json={"name": "Bare", "email": "bare@x.com", "password": "secret123"})
        assert response.status_code == 201

        again = client.post("/api/register", json={"name": "Bare", "email": "bare@x.com", "password": "secret123"})
        assert again.status_code == 409

    def test_login(self, client, student):
        assert client.post("/api/login", json={"email": "a@x.com", "password": "wrong"}).status_code == 401

        ok = client.post("/api/login", json={"email": "a@x.com", "password": "secret123"})
        assert ok.status_code == 200
        assert ok.json()["token_type"] == "bearer"

    def test_admin_login(self, client):
        response = client.post("/api/login", json={"email": "admin@talim.academy", "password": "admin-secret"})
        assert response.status_code == 200
        token = response.json()["access_token"]
        assert client.get("/api/admin/payments", headers={"Authorization": f"Bearer {token}"}).status_code == 200

    def test_password_reset(self, client, student, mailer):
        assert client.post("/api/forgot-password", json={"email": "nobody@x.com"}).status_code == 404
        assert client.post("/api/forgot-password", json={"email": "a@x.com"}).status_code == 200

        response = client.post(
            "/api/reset-password",
            json={"email": "a@x.com", "otp": last_code(mailer), "newPassword": "brand-new-pass"},
        )
        assert response.status_code == 200
        assert client.post("/api/login", json={"email": "a@x.com", "password": "brand-new-pass"}).status_code == 200

    def test_otp_login(self, client, student, mailer):
        client.post("/api/send-otp", json={"email": "a@x.com", "purpose": "login"})
        response = client.post("/api/verify-otp", json={"email": "a@x.com", "otp": last_code(mailer), "purpose": "login"})
        assert response.status_code == 200
        assert response.json()["access_token"]


class TestCatalogApi:

    def test_browse(self, client, course):
        listing = client.get("/api/courses").json()
        assert [c["id"] for c in listing["courses"]] == [course.id]

        detail = client.get(f"/api/courses/{course.id}").json()["course"]
        assert len(detail["curriculum"]) == 2
        assert client.get("/api/courses/999").status_code == 404

    def test_admin_creates_course(self, client, admin_headers, student_headers):
        body = {
            "title": "Fiqh of worship",
            "description": "Rulings of purification and prayer explained.",
            "price": 800,
            "category": "fiqh",
            "curriculum": [{"moduleTitle": "Taharah", "lessons": [{"lessonId": "t1", "title": "Wudu"}]}],
        }
        assert client.post("/api/admin/courses", json=body, headers=student_headers).status_code == 403

        response = client.post("/api/admin/courses", json=body, headers=admin_headers)
        assert response.status_code == 201
        assert response.json()["course"]["slug"] == "fiqh-of-worship"

    def test_reviews(self, client, course, student_headers, admin_headers):
        posted = client.post(
            f"/api/courses/{course.id}/reviews",
            json={"rating": 4, "comment": "Clear explanations throughout."},
            headers=student_headers,
        )
        assert posted.status_code == 201
        review_id = posted.json()["review"]["id"]

        assert client.get(f"/api/courses/{course.id}/reviews").json()["count"] == 0
        client.put(f"/api/admin/reviews/{review_id}", json={"isApproved": True}, headers=admin_headers)
        assert client.get(f"/api/courses/{course.id}/reviews").json()["averageRating"] == 4.0


class TestWebSocket:

    def test_admin_room_requires_admin_token(self, client, admin_headers):
        token = admin_headers["Authorization"].split()[1]
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"action": "joinAdminRoom"})
            assert ws.receive_json()["event"] == "error"

            ws.send_json({"action": "joinAdminRoom", "token": token})
            assert ws.receive_json() == {"event": "joined", "room": "admin"}

    def test_user_room(self, client, student):
        token = token_for_user(student)
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"action": "joinUserRoom", "email": "b@x.com", "token": token})
            assert ws.receive_json()["event"] == "error"

            ws.send_json({"action": "joinUserRoom", "email": "A@x.com", "token": token})
            assert ws.receive_json() == {"event": "joined", "room": "user_a@x.com"}

            ws.send_json({"action": "dance"})
            assert ws.receive_json()["event"] == "error"


class TestLifespan:

    def test_shutdown_drains_pending_broadcasts(self):
        received = []

        class Socket:
            async def send_json(self, message):
                await asyncio.sleep(0)
                received.append(message)

        socket = Socket()

        async def scenario():
            async with lifespan(app):
                manager.join(ADMIN_ROOM, socket)
                manager.emit("newPayment", {"paymentId": 1}, [ADMIN_ROOM])

        try:
            asyncio.run(scenario())
        finally:
            manager.disconnect(socket)
        assert received == [{"event": "newPayment", "data": {"paymentId": 1}}]
