import logging
from datetime import datetime

from sqlalchemy import update, delete
from sqlalchemy.orm import Session

import models as M
from catalog import get_copy, find_by_title, is_core_for, sync_search_index
from errors import Forbidden, Unavailable, ValidationFailed
from fines import compute_fine, days_overdue
from loans import get_loan, query_loans, refresh_overdue
from notifications import Mailer, notify_reservation_ready
from students import resolve_student, student_for_user
from system_config import load_policy

logger = logging.getLogger(__name__)

# loan fields a librarian may explicitly null out
CLEARABLE = ("payment_method", "payment_date")

def borrow_copy(db: Session, copy_id: int, user: dict, now: datetime | None = None) -> M.BookCopy:
    """Self-service checkout of one physical copy with the flat loan period."""
    now = now or datetime.utcnow()
    copy = get_copy(db, copy_id)
    if copy.status != "Available":
        raise Unavailable("Book copy is currently unavailable")

    student = student_for_user(db, user)
    due = load_policy(db).due_date(now, advanced=False)

    # the status guard makes concurrent borrows of one copy lose cleanly
    res = db.execute(
        update(M.BookCopy)
        .where(M.BookCopy.id == copy.id, M.BookCopy.status == "Available")
        .values(status="Borrowed", borrower=user.get("email") or "", due_date=due)
    )
    if res.rowcount != 1:
        db.rollback()
        raise Unavailable("Book copy is currently unavailable")

    record = M.BorrowedBook(
        book_id=copy.id,
        book_title=copy.title,
        student_name=user.get("name") or (student.name if student else ""),
        student_id=student.roll_no if student else "N/A",
        borrow_date=now,
        due_date=due,
        return_status="Not Returned",
    )
    db.add(record)
    db.commit()
    db.refresh(copy)
    logger.info("Copy %s borrowed by %s, due %s", copy.id, record.student_id, due.date())
    sync_search_index(db, copy)
    return copy

def create_loan(db: Session, data: dict, now: datetime | None = None) -> M.BorrowedBook:
    """
    Librarian-created loan. The student and book are resolved by id with a
    roll number / title fallback; when both resolve, the due date always comes
    from the full policy and any supplied due date is ignored.
    """
    now = now or datetime.utcnow()
    student_ref = data.get("student_id")
    if not student_ref:
        raise ValidationFailed("studentId is required")

    student = resolve_student(db, student_ref)

    book = None
    if data.get("book_id"):
        book = db.get(M.BookCopy, int(data["book_id"]))
    if not book and data.get("book_title"):
        book = find_by_title(db, data["book_title"])

    borrow_date = data.get("borrow_date") or now
    due = data.get("due_date")
    if student and book:
        due = load_policy(db).due_date(
            borrow_date,
            year_of_study=student.year_of_study,
            category=book.category,
            is_core=bool(book.is_core),
        )
    if not due:
        raise ValidationFailed("dueDate is required when the student or book cannot be resolved")

    student_name = data.get("student_name") or (student.name if student else None)
    book_title = data.get("book_title") or (book.title if book else None)
    if not student_name or not book_title:
        raise ValidationFailed("studentName and bookTitle are required")

    extra = {
        k: v for k, v in data.items()
        if k in ("return_status", "fine_amount", "is_fine_paid", "is_payment_enabled", "payment_method", "payment_date")
        and v is not None
    }
    record = M.BorrowedBook(
        student_name=student_name,
        student_id=student.roll_no if student else str(student_ref),
        book_id=book.id if book else None,
        book_title=book_title,
        borrow_date=borrow_date,
        due_date=due,
        **extra,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("Loan %s created for %s, due %s", record.id, record.student_id, due.date())
    return record

def list_loans(
    db: Session,
    user: dict,
    page: int = 1,
    limit: int = 10,
    status: str | None = None,
    search: str | None = None,
    sort: str | None = None,
    now: datetime | None = None,
) -> dict:
    """
    One page of loans. Students only ever see their own records. Past-due
    records on the page are refreshed to Overdue with a recomputed fine.
    """
    now = now or datetime.utcnow()
    page = max(page, 1)
    limit = max(limit, 1)
    student_id = None
    is_student = user.get("role") != "admin"
    if is_student:
        student = student_for_user(db, user)
        if not student:
            return {"total": 0, "page": page, "limit": limit, "records": []}
        student_id = student.roll_no

    total, records = query_loans(
        db,
        student_id=student_id,
        status=status,
        search=search,
        title_only=is_student,
        sort=sort,
        page=page,
        limit=limit,
    )
    for record in records:
        refresh_overdue(db, record, now)
    return {"total": total, "page": page, "limit": limit, "records": records}

def release_copy(db: Session, record: M.BorrowedBook):
    if not record.book_id:
        return
    copy = db.get(M.BookCopy, record.book_id)
    if copy and copy.status == "Borrowed":
        copy.status = "Available"
        copy.borrower = ""
        copy.due_date = None

def update_loan(db: Session, loan_id: int, patch: dict, mailer: Mailer, now: datetime | None = None) -> M.BorrowedBook:
    """
    Librarian update. Marking a loan Returned for the first time notifies the
    next reservation holder, frees the copy and, when late, assesses the fine
    unless the caller set one explicitly.
    """
    now = now or datetime.utcnow()
    record = get_loan(db, loan_id)
    patch = {k: v for k, v in patch.items() if v is not None or k in CLEARABLE}

    # Returned is terminal; the copy has already been released
    new_status = patch.get("return_status")
    if record.return_status == "Returned" and new_status not in (None, "Returned"):
        raise ValidationFailed("A returned record cannot be reopened")

    returning = patch.get("return_status") == "Returned" and record.return_status != "Returned"
    if returning:
        notify_reservation_ready(db, mailer, record.book_id, record.book_title)

        if now > record.due_date:
            fine = compute_fine(days_overdue(record.due_date, now), is_core_for(db, record))
            if patch.get("fine_amount") is None:
                patch["fine_amount"] = fine
            if patch["fine_amount"] > 0:
                patch["is_fine_paid"] = False
        release_copy(db, record)

    for k, v in patch.items():
        setattr(record, k, v)
    db.commit()
    db.refresh(record)

    if returning:
        logger.info("Loan %s returned, fine %s", record.id, record.fine_amount)
        if record.book_id:
            copy = db.get(M.BookCopy, record.book_id)
            if copy:
                sync_search_index(db, copy)
    return record

def toggle_payment(db: Session, loan_id: int) -> M.BorrowedBook:
    record = get_loan(db, loan_id)
    record.is_payment_enabled = not record.is_payment_enabled
    db.commit()
    db.refresh(record)
    logger.info("Loan %s payment %s", record.id, "enabled" if record.is_payment_enabled else "disabled")
    return record

def pay_fine(db: Session, loan_id: int, method: str | None, user: dict, now: datetime | None = None) -> M.BorrowedBook:
    now = now or datetime.utcnow()
    method = method or "Cash"
    if method not in M.PAYMENT_METHODS:
        raise ValidationFailed(f"Invalid payment method: {method}")

    record = get_loan(db, loan_id)
    if user.get("role") != "admin" and not record.is_payment_enabled:
        raise Forbidden("Payment not enabled by librarian.")

    record.is_fine_paid = True
    record.is_payment_enabled = False
    record.payment_method = method
    record.payment_date = now
    db.commit()
    db.refresh(record)
    logger.info("Fine of %s paid on loan %s via %s", record.fine_amount, record.id, method)
    return record

def delete_loan(db: Session, loan_id: int):
    record = get_loan(db, loan_id)
    db.delete(record)
    db.commit()
    logger.info("Loan %s deleted", loan_id)

def bulk_delete_loans(db: Session, ids: list[int]) -> int:
    if not ids:
        return 0
    res = db.execute(delete(M.BorrowedBook).where(M.BorrowedBook.id.in_(ids)))
    db.commit()
    logger.info("Deleted %s loans", res.rowcount)
    return res.rowcount
