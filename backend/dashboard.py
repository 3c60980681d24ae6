from datetime import datetime, timedelta

from sqlalchemy import select, func
from sqlalchemy.orm import Session

import models as M

TOP_N = 5
TIMELINE_DAYS = 7

def _count(db: Session, model, *where) -> int:
    q = select(func.count()).select_from(model)
    if where:
        q = q.where(*where)
    return db.scalar(q) or 0

def _ranked(db: Session, column) -> list[dict]:
    n = func.count().label("n")
    rows = db.execute(
        select(column, n).group_by(column).order_by(n.desc(), column).limit(TOP_N)
    ).all()
    return [{"_id": key, "count": count} for key, count in rows]

def borrow_timeline(db: Session, now: datetime) -> list[dict]:
    """Loans started per calendar day over the last week, oldest first."""
    day = func.date(M.BorrowedBook.borrow_date).label("day")
    rows = db.execute(
        select(day, func.count())
        .where(M.BorrowedBook.borrow_date >= now - timedelta(days=TIMELINE_DAYS))
        .group_by(day)
        .order_by(day)
    ).all()
    return [{"_id": str(d), "count": count} for d, count in rows]

def dead_stock_count(db: Session) -> int:
    """Copies whose title has never appeared on a loan."""
    borrowed_titles = select(M.BorrowedBook.book_title).distinct()
    return _count(db, M.BookCopy, M.BookCopy.title.not_in(borrowed_titles))

def stats(db: Session, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    return {
        "totalBooks": _count(db, M.BookCopy),
        "totalUsers": _count(db, M.User),
        "borrowedCount": _count(db, M.BookCopy, M.BookCopy.status == "Borrowed"),
        "overdueCount": _count(db, M.BorrowedBook, M.BorrowedBook.return_status == "Overdue"),
        "genreStats": _ranked(db, M.BookCopy.genre),
        "timeline": borrow_timeline(db, now),
        "topReaders": _ranked(db, M.BorrowedBook.student_name),
        "deadStockCount": dead_stock_count(db),
    }
