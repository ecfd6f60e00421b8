from app.enrollment import AlreadyGranted, Granted, UserNotFound, grant_course_access, user_courses
from app.models import Course, Enrollment


def test_grant_is_add_to_set(db, student, course):
    first = grant_course_access(db, "A@X.com", course.id)
    db.commit()
    second = grant_course_access(db, "a@x.com", course.id)
    db.commit()

    assert isinstance(first, Granted)
    assert isinstance(second, AlreadyGranted)
    assert first.user.id == second.user.id == student.id
    assert db.query(Enrollment).count() == 1
    assert db.get(Course, course.id).enrollment_count == 1


def test_unknown_user_is_reported_not_created(db, course):
    result = grant_course_access(db, "ghost@x.com", course.id)
    assert result == UserNotFound("ghost@x.com")
    assert db.query(Enrollment).count() == 0


def test_user_courses(db, student, course):
    grant_course_access(db, student.email, course.id)
    db.commit()

    courses = user_courses(db, "a@x.com")
    assert courses[0]["courseId"] == course.id
    assert courses[0]["slug"] == "practical-ibarat"
    assert courses[0]["progress"] == 0
