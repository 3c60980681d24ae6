import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models as M
from errors import NotFound, Conflict, Forbidden, ValidationFailed
from students import resolve_student, student_for_user

logger = logging.getLogger(__name__)

DUPLICATE_ACTIVE = "You already have an active reservation for this book."

def active_reservation(db: Session, book_id, student_id, exclude_id=None) -> M.Reservation | None:
    q = select(M.Reservation).where(
        M.Reservation.book_id == book_id,
        M.Reservation.student_id == student_id,
        M.Reservation.status == "Active",
    )
    if exclude_id is not None:
        q = q.where(M.Reservation.id != exclude_id)
    return db.scalar(q)

def commit_reservation(db: Session):
    # uq_reservation_active catches a concurrent writer that passed the lookup too
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict(DUPLICATE_ACTIVE)

def create_reservation(db: Session, book_id, student_ref, user: dict, now: datetime | None = None) -> M.Reservation:
    now = now or datetime.utcnow()
    student = None
    if not student_ref:
        student = student_for_user(db, user)
        if not student:
            raise NotFound("Student profile not found for this user.")
        student_ref = student.id

    if not student_ref:
        raise ValidationFailed("Student ID is required.")

    book = db.get(M.BookCopy, book_id) if book_id else None
    if not book:
        raise NotFound("Book not found")

    student = student or resolve_student(db, student_ref)
    if not student:
        raise NotFound("Student not found")

    if active_reservation(db, book.id, student.id):
        raise Conflict(DUPLICATE_ACTIVE)

    r = M.Reservation(book_id=book.id, student_id=student.id, reservation_date=now, status="Active")
    db.add(r)
    commit_reservation(db)
    db.refresh(r)
    logger.info("Reservation %s: student %s reserved %r", r.id, student.roll_no, book.title)
    return r

def list_reservations(
    db: Session,
    user: dict,
    student_id=None,
    book_id=None,
    status: str | None = None,
) -> list[M.Reservation]:
    if user.get("role") != "admin":
        student = student_for_user(db, user)
        if not student:
            return []
        student_id = student.id

    q = select(M.Reservation)
    if student_id:
        q = q.where(M.Reservation.student_id == int(student_id))
    if book_id:
        q = q.where(M.Reservation.book_id == int(book_id))
    if status:
        q = q.where(M.Reservation.status == status)
    return db.scalars(q.order_by(M.Reservation.reservation_date.desc(), M.Reservation.id.desc())).all()

def get_reservation(db: Session, reservation_id: int) -> M.Reservation:
    r = db.get(M.Reservation, reservation_id)
    if not r:
        raise NotFound("Reservation not found")
    return r

def cancel_reservation(db: Session, reservation_id: int, user: dict) -> M.Reservation:
    r = get_reservation(db, reservation_id)
    if user.get("role") != "admin":
        student = student_for_user(db, user)
        if not student or student.id != r.student_id:
            raise Forbidden("You can only cancel your own reservations.")
    r.status = "Cancelled"
    db.commit()
    db.refresh(r)
    logger.info("Reservation %s cancelled", r.id)
    return r

def set_status(db: Session, reservation_id: int, status: str) -> M.Reservation:
    if status not in M.RESERVATION_STATUSES:
        raise ValidationFailed(f"Invalid reservation status: {status}")
    r = get_reservation(db, reservation_id)
    if status == "Active" and active_reservation(db, r.book_id, r.student_id, exclude_id=r.id):
        raise Conflict(DUPLICATE_ACTIVE)
    r.status = status
    commit_reservation(db)
    db.refresh(r)
    logger.info("Reservation %s set to %s", r.id, status)
    return r

def oldest_active_for_title(db: Session, title: str, author: str | None = None) -> M.Reservation | None:
    """Head of the queue: earliest active reservation on any copy of the title."""
    q = (
        select(M.Reservation)
        .join(M.BookCopy, M.Reservation.book_id == M.BookCopy.id)
        .where(M.Reservation.status == "Active", M.BookCopy.title == title)
    )
    if author is not None:
        q = q.where(M.BookCopy.author == author)
    return db.scalar(q.order_by(M.Reservation.reservation_date.asc(), M.Reservation.id.asc()))
