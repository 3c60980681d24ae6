"""
Loan record store: lookups, listing queries and the overdue refresh.

A loan that is not returned and whose due date has passed is reported as
Overdue with a fine recomputed from scratch on every evaluation. The
refresh is persisted with a conditional UPDATE so that it can never undo a
return that landed in between the read and the write.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update, func, or_
from sqlalchemy.orm import Session

import models as M
from catalog import is_core_for
from errors import NotFound
from fines import compute_fine, days_overdue

logger = logging.getLogger(__name__)

SORTABLE = {
    "dueDate": M.BorrowedBook.due_date,
    "borrowDate": M.BorrowedBook.borrow_date,
    "studentName": M.BorrowedBook.student_name,
    "studentId": M.BorrowedBook.student_id,
    "bookTitle": M.BorrowedBook.book_title,
    "returnStatus": M.BorrowedBook.return_status,
    "fineAmount": M.BorrowedBook.fine_amount,
    "createdAt": M.BorrowedBook.created_at,
}

def get_loan(db: Session, loan_id: int) -> M.BorrowedBook:
    record = db.get(M.BorrowedBook, loan_id)
    if not record:
        raise NotFound("Record not found")
    return record

def overdue_projection(db: Session, record: M.BorrowedBook, now: datetime):
    """Return (status, fine) for a past-due unreturned loan, None otherwise."""
    if record.return_status == "Returned" or now <= record.due_date:
        return None
    days = days_overdue(record.due_date, now)
    return "Overdue", compute_fine(days, is_core_for(db, record))

def refresh_overdue(db: Session, record: M.BorrowedBook, now: datetime | None = None) -> bool:
    """Persist the overdue status/fine if they differ from what is stored."""
    now = now or datetime.utcnow()
    projected = overdue_projection(db, record, now)
    if projected is None:
        return False
    status, fine = projected
    if record.return_status == status and float(record.fine_amount or 0) == float(fine):
        return False

    values = {"return_status": status, "fine_amount": fine}
    if fine > 0 and record.payment_date is None:
        values["is_fine_paid"] = False

    res = db.execute(
        update(M.BorrowedBook)
        .where(M.BorrowedBook.id == record.id, M.BorrowedBook.return_status != "Returned")
        .values(**values)
    )
    db.commit()
    db.refresh(record)
    if res.rowcount:
        logger.info("Loan %s overdue: fine now %s", record.id, fine)
    return bool(res.rowcount)

def overdue_candidates(db: Session, now: datetime) -> list[M.BorrowedBook]:
    q = select(M.BorrowedBook).where(
        M.BorrowedBook.return_status != "Returned",
        M.BorrowedBook.due_date < now,
    )
    return db.scalars(q.order_by(M.BorrowedBook.due_date)).all()

def due_on_day(db: Session, day: datetime) -> list[M.BorrowedBook]:
    """Unreturned loans due at any time on the calendar day of `day`."""
    start = day.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1)
    q = select(M.BorrowedBook).where(
        M.BorrowedBook.return_status != "Returned",
        M.BorrowedBook.due_date >= start,
        M.BorrowedBook.due_date < end,
    )
    return db.scalars(q.order_by(M.BorrowedBook.due_date)).all()

def query_loans(
    db: Session,
    student_id: str | None = None,
    status: str | None = None,
    search: str | None = None,
    title_only: bool = False,
    sort: str | None = None,
    page: int = 1,
    limit: int = 10,
):
    """Return (total, records) for one page of loans."""
    q = select(M.BorrowedBook)
    if student_id is not None:
        q = q.where(M.BorrowedBook.student_id == student_id)
    if status:
        q = q.where(M.BorrowedBook.return_status == status)
    if search:
        like = f"%{search}%"
        if title_only:
            q = q.where(M.BorrowedBook.book_title.ilike(like))
        else:
            q = q.where(or_(
                M.BorrowedBook.student_name.ilike(like),
                M.BorrowedBook.student_id.ilike(like),
                M.BorrowedBook.book_title.ilike(like),
            ))

    total = db.scalar(select(func.count()).select_from(q.subquery()))

    # sort is "field:asc" or "field:desc"
    order = M.BorrowedBook.due_date.asc()
    if sort:
        field, _, direction = sort.partition(":")
        column = SORTABLE.get(field)
        if column is not None:
            order = column.desc() if direction == "desc" else column.asc()

    page = max(page, 1)
    limit = max(limit, 1)
    records = db.scalars(
        q.order_by(order, M.BorrowedBook.id).offset((page - 1) * limit).limit(limit)
    ).all()
    return total, records
