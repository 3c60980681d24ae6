import os

# settings are read when db is first imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["NOTIFY_SCHEDULER_ENABLED"] = "false"
os.environ["ADMIN_EMAIL"] = ""
os.environ["ALGOLIA_APP_ID"] = ""

import smtplib
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models as M
from db import Base, get_db
from notifications import MailConfig, Mailer
from security import create_access_token

NOW = datetime(2025, 3, 1, 10, 0, 0)


class RecordingTransport:
    def __init__(self):
        self.sent = []

    def send(self, msg):
        self.sent.append(msg)

    def recipients(self):
        return [m["To"] for m in self.sent]


class FailingTransport:
    def __init__(self):
        self.attempts = 0

    def send(self, msg):
        self.attempts += 1
        raise smtplib.SMTPException("relay down")


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def mailer(transport):
    return Mailer(MailConfig("smtp.test", 465, "library@example.com", "app-password"), transport)


@pytest.fixture
def client(session_factory, mailer):
    from main import app, get_mailer

    def override_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_mailer] = lambda: mailer
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_header(role="student", email="asha@example.com", name="Asha Rao", user_id=1):
    token = create_access_token({"sub": email, "user_id": user_id, "role": role, "email": email, "name": name})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers():
    return auth_header(role="admin", email="admin@example.com", name="Library Admin", user_id=99)


@pytest.fixture
def student_headers():
    return auth_header()


def make_student(db, **kw):
    data = {
        "name": "Asha Rao",
        "roll_no": "CS2101",
        "email": "asha@example.com",
        "department": "CSE",
        "year_of_study": 2,
    }
    data.update(kw)
    s = M.Student(**data)
    db.add(s)
    db.commit()
    db.refresh(s)
    return s


def make_copy(db, **kw):
    data = {"title": "Operating Systems", "author": "Galvin", "category": "Technical", "is_core": False}
    data.update(kw)
    c = M.BookCopy(**data)
    db.add(c)
    db.commit()
    db.refresh(c)
    return c


def make_loan(db, **kw):
    data = {
        "student_name": "Asha Rao",
        "student_id": "CS2101",
        "book_title": "Operating Systems",
        "borrow_date": NOW - timedelta(days=14),
        "due_date": NOW,
        "return_status": "Not Returned",
    }
    data.update(kw)
    r = M.BorrowedBook(**data)
    db.add(r)
    db.commit()
    db.refresh(r)
    return r
