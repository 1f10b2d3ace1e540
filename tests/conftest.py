"""
Shared fixtures: the Flask app on an in-memory SQLite database, a test
client and a seeded subject. Zero network calls; Google OAuth helpers are
monkeypatched by the tests that need them.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["APP_SUBJECT"] = "circuit"
os.environ["TEACHER_WHITELIST"] = "teacher@school.edu"
os.environ.pop("APP_MODE", None)

import pytest

import app as portal


SUBJECT = "circuit"
TEACHER_EMAIL = "teacher@school.edu"


@pytest.fixture
def flask_app():
    portal.app.config.update(
        TESTING=True,
        ADMIN_MODE=False,
        APP_SUBJECT=SUBJECT,
        TEACHER_WHITELIST=[TEACHER_EMAIL],
        KNOWN_SUBJECTS=[],
        PERCENTILE_CAP=99,
        FULL_MARKS=100.0,
    )
    with portal.app.app_context():
        portal.db.drop_all()
        portal.db.create_all()
        yield portal.app
        portal.db.session.remove()


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def admin_mode(flask_app):
    flask_app.config["ADMIN_MODE"] = True
    flask_app.config["APP_SUBJECT"] = ""
    return flask_app


def add_roster(student_id, class_name, subject=SUBJECT, name=None):
    row = portal.Roster(
        student_id=student_id, class_name=class_name, subject=subject,
        name=name, created_at=portal.now_iso(),
    )
    portal.db.session.add(row)
    portal.db.session.commit()
    return row


def add_grade(student_id, item_name, score, subject=SUBJECT):
    row = portal.Grade(
        student_id=student_id, item_name=item_name, score=score,
        subject=subject, created_at=portal.now_iso(),
    )
    portal.db.session.add(row)
    portal.db.session.commit()
    return row


def add_student(email, student_id, class_name, subject=SUBJECT, name="Student"):
    row = portal.Student(
        email=email, student_id=student_id, class_name=class_name,
        subject=subject, name=name, created_at=portal.now_iso(),
    )
    portal.db.session.add(row)
    portal.db.session.commit()
    return row


def login(client, student_or_uid):
    uid = getattr(student_or_uid, "id", student_or_uid)
    with client.session_transaction() as sess:
        sess["user_id"] = uid


@pytest.fixture
def seeded(flask_app):
    """
    Class A: s1..s4 with totals 40, 60, 80, 100 (two items each).
    Class B: s5 with total 10. Another subject holds a stray score for s3.
    """
    for sid in ("s1", "s2", "s3", "s4"):
        add_roster(sid, "A")
    add_roster("s5", "B")

    for sid, total in (("s1", 40), ("s2", 60), ("s3", 80), ("s4", 100), ("s5", 10)):
        add_grade(sid, "HW1", total / 2)
        add_grade(sid, "Midterm", total / 2)
        add_grade(sid, "No.", 7)

    add_grade("s3", "HW1", 999, subject="antenna")
    return {"subject": SUBJECT}
