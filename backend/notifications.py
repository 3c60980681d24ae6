"""
Borrower notifications: overdue alerts, due-soon reminders and
"your reserved book is back" messages.

Every send is best effort. Failures are logged and never reach the caller of
the operation that triggered them, and one failing record does not stop the
rest of a sweep.
"""
import logging
import smtplib
from datetime import datetime, timedelta
from email.message import EmailMessage

from sqlalchemy.orm import Session

import models as M
from db import settings
from fines import days_overdue
from loans import overdue_candidates, due_on_day, refresh_overdue
from reservations import oldest_active_for_title
from students import resolve_student

logger = logging.getLogger(__name__)

UPCOMING_DUE_DAYS = 2


class MailConfig:
    """Mail credentials, reloadable at runtime by an administrator."""

    def __init__(self, host: str, port: int, user: str = "", password: str = "", use_ssl: bool = True):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_ssl = use_ssl

    @classmethod
    def from_settings(cls, s=settings) -> "MailConfig":
        return cls(s.EMAIL_HOST, s.EMAIL_PORT, s.EMAIL_USER, s.EMAIL_PASS, s.EMAIL_USE_SSL)

    @property
    def configured(self) -> bool:
        return bool(self.user and self.password)

    def reload(self, user: str, password: str):
        self.user = user
        self.password = password
        logger.info("Mail credentials reloaded for %s", user)


class SmtpTransport:
    def __init__(self, config: MailConfig):
        self.config = config

    def send(self, msg: EmailMessage):
        c = self.config
        if c.use_ssl:
            with smtplib.SMTP_SSL(c.host, c.port, timeout=30) as smtp:
                smtp.login(c.user, c.password)
                smtp.send_message(msg)
        else:
            with smtplib.SMTP(c.host, c.port, timeout=30) as smtp:
                smtp.starttls()
                smtp.login(c.user, c.password)
                smtp.send_message(msg)


class Mailer:
    def __init__(self, config: MailConfig, transport=None):
        self.config = config
        self.transport = transport or SmtpTransport(config)

    def send(self, to: str, subject: str, text: str, html: str | None = None) -> bool:
        """Send one message; returns False when running without credentials."""
        if not self.config.configured:
            logger.info("[Mock Email] To: %s, Subject: %s\n%s", to, subject, text)
            return False

        msg = EmailMessage()
        msg["From"] = self.config.user
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(text)
        if html:
            msg.add_alternative(html, subtype="html")
        self.transport.send(msg)
        logger.info("Email sent to %s: %s", to, subject)
        return True


def overdue_message(student: M.Student, record: M.BorrowedBook, days: int):
    subject = f"Overdue Book Alert: {record.book_title}"
    text = (
        f"Dear {student.name},\n\n"
        f'This is a reminder that the book "{record.book_title}" was due on '
        f"{record.due_date:%a %b %d %Y}.\n"
        f"It is currently {days} days overdue.\n\n"
        "Please return it as soon as possible to avoid further fines.\n\n"
        "Regards,\nLibrary Admin"
    )
    return subject, text

def due_soon_message(student: M.Student, record: M.BorrowedBook):
    subject = f"Book Due Soon: {record.book_title}"
    text = (
        f"Dear {student.name},\n\n"
        f'The book "{record.book_title}" is due on {record.due_date:%a %b %d %Y}.\n'
        "Please return or renew it on time to avoid a fine.\n\n"
        "Regards,\nLibrary Admin"
    )
    return subject, text

def reservation_ready_message(student: M.Student, book_title: str):
    subject = f"Reserved Book Available: {book_title}"
    text = (
        f"Dear {student.name},\n\n"
        f'Good news! "{book_title}", which you reserved, has been returned and is now available.\n'
        "Please visit the library to borrow it.\n\n"
        "Regards,\nLibrary Admin"
    )
    return subject, text


def notify_overdue(db: Session, mailer: Mailer, now: datetime | None = None) -> dict:
    """Alert every borrower with a past-due loan and mark those loans Overdue."""
    now = now or datetime.utcnow()
    logger.info("Running overdue book check")
    result = {"checked": 0, "sent": 0, "failed": 0}

    for record in overdue_candidates(db, now):
        result["checked"] += 1
        record_id = record.id
        try:
            student = resolve_student(db, record.student_id)
            if student and student.email:
                subject, text = overdue_message(student, record, days_overdue(record.due_date, now))
                mailer.send(student.email, subject, text)
                result["sent"] += 1
            else:
                logger.warning("No contactable student %r for overdue loan %s", record.student_id, record_id)
        except Exception:
            result["failed"] += 1
            logger.exception("Overdue notification failed for loan %s", record_id)

        try:
            refresh_overdue(db, record, now)
        except Exception:
            db.rollback()
            logger.exception("Could not mark loan %s overdue", record_id)

    logger.info("Overdue check done: %s", result)
    return result

def notify_upcoming_due(db: Session, mailer: Mailer, now: datetime | None = None) -> dict:
    """Remind borrowers whose loans fall due exactly two calendar days from now."""
    now = now or datetime.utcnow()
    logger.info("Running upcoming due check")
    result = {"checked": 0, "sent": 0, "failed": 0}

    for record in due_on_day(db, now + timedelta(days=UPCOMING_DUE_DAYS)):
        result["checked"] += 1
        try:
            student = resolve_student(db, record.student_id)
            if not student or not student.email:
                logger.warning("No contactable student %r for loan %s", record.student_id, record.id)
                continue
            subject, text = due_soon_message(student, record)
            mailer.send(student.email, subject, text)
            result["sent"] += 1
        except Exception:
            result["failed"] += 1
            logger.exception("Due-soon reminder failed for loan %s", record.id)

    logger.info("Upcoming due check done: %s", result)
    return result

def notify_reservation_ready(db: Session, mailer: Mailer, book_id, book_title: str) -> bool:
    """
    Tell the holder of the oldest active reservation on this title that a copy
    is back. The reservation stays Active.
    """
    try:
        copy = db.get(M.BookCopy, book_id) if book_id else None
        title = copy.title if copy else book_title
        author = copy.author if copy else None

        reservation = oldest_active_for_title(db, title, author)
        if not reservation:
            return False
        student = reservation.student
        if not student or not student.email:
            logger.warning("Reservation %s has no contactable student", reservation.id)
            return False

        subject, text = reservation_ready_message(student, title)
        mailer.send(student.email, subject, text)
        logger.info("Reservation %s holder notified that %r is available", reservation.id, title)
        return True
    except Exception:
        logger.exception("Reservation notification failed for %r", book_title)
        return False

def run_sweeps(db: Session, mailer: Mailer, now: datetime | None = None) -> list[dict]:
    """Run both scheduled checks, reporting each one's outcome separately."""
    summary = []
    for task, fn in (("Overdue Check", notify_overdue), ("Upcoming Due Check", notify_upcoming_due)):
        try:
            fn(db, mailer, now)
            summary.append({"task": task, "status": "fulfilled"})
        except Exception as e:
            db.rollback()
            logger.exception("%s failed", task)
            summary.append({"task": task, "status": "rejected", "reason": str(e)})
    return summary
