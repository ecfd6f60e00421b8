from datetime import timedelta

from app import database
from app.cleanup import cleanup_incomplete_users, purge_expired_notifications
from app.database import utcnow
from app.enrollment import grant_course_access
from app.models import Course, Enrollment, Notification, Payment, User
from app.seed import seed_catalog


class TestCleanup:

    def test_removes_bare_users_only(self, db, student, course, make_payment):
        payment = make_payment(email="bare@x.com")
        grant = grant_course_access(db, "bare@x.com", course.id, allow_upsert=True, name="Bare")
        payment.user_id = grant.user.id
        db.add(User(email="admin2@x.com", role="admin"))
        db.commit()

        assert cleanup_incomplete_users(db) == 1

        emails = sorted(u.email for u in db.query(User).all())
        assert emails == ["a@x.com", "admin2@x.com"]
        assert db.query(Enrollment).count() == 0
        payment = db.query(Payment).filter_by(user_email="bare@x.com").one()
        assert payment.user_id is None

    def test_purges_expired_notifications(self, db, student):
        db.add_all([
            Notification(recipient_id=student.id, type="reminder", title="old", message="m",
                         expires_at=utcnow() - timedelta(days=1)),
            Notification(recipient_id=student.id, type="reminder", title="new", message="m",
                         expires_at=utcnow() + timedelta(days=1)),
            Notification(recipient_id=student.id, type="welcome", title="kept", message="m"),
        ])
        db.commit()

        assert purge_expired_notifications(db) == 1
        assert sorted(n.title for n in db.query(Notification).all()) == ["kept", "new"]


class TestSeed:

    def test_seed_is_idempotent(self, db):
        assert seed_catalog(db) == 2
        assert seed_catalog(db) == 0
        assert db.query(Course).count() == 2
        assert db.query(User).filter_by(role="instructor").count() == 1


class FakeCursor:
    def __init__(self, tables, columns):
        self.tables = tables
        self.columns = columns
        self.executed = []
        self._result = []

    def execute(self, sql, params=None):
        self.executed.append(sql)
        if sql.startswith("SHOW TABLES"):
            self._result = [(params[0],)] if params[0] in self.tables else []
        elif sql.startswith("SHOW COLUMNS FROM"):
            table = sql.rsplit(" ", 1)[-1]
            self._result = [(c,) for c in self.columns.get(table, [])]
        else:
            self._result = []

    def fetchone(self):
        return self._result[0] if self._result else None

    def fetchall(self):
        return self._result

    def close(self):
        pass


class FakeConnection:
    def __init__(self, cursor):
        self._cursor = cursor
        self.committed = False
        self.closed = False

    def cursor(self):
        return self._cursor

    def commit(self):
        self.committed = True

    def close(self):
        self.closed = True


class TestMysqlMigration:

    def test_adds_missing_columns(self, monkeypatch):
        import pymysql

        cursor = FakeCursor(
            tables={"users", "payments"},
            columns={
                "users": ["id", "name", "email", "phone", "is_email_verified"],
                "payments": ["id", "status", "admin_note", "processed_at", "ip_address", "user_agent"],
            },
        )
        connection = FakeConnection(cursor)
        seen = {}

        def fake_connect(**kwargs):
            seen.update(kwargs)
            return connection

        monkeypatch.setattr(pymysql, "connect", fake_connect)
        applied = database.migrate_mysql_database("mysql+pymysql://talim:pw@db.local:3307/talim")

        assert applied == ["users.last_login_at"]
        assert seen == {"host": "db.local", "user": "talim", "password": "pw", "port": 3307, "database": "talim"}
        assert "ALTER TABLE users ADD COLUMN last_login_at DATETIME DEFAULT NULL" in cursor.executed
        assert any(sql.startswith("UPDATE payments") for sql in cursor.executed)
        assert connection.committed and connection.closed

    def test_skips_url_without_database(self):
        assert database.migrate_mysql_database("mysql+pymysql://talim:pw@db.local") == []
