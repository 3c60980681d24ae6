import logging

from sqlalchemy import select, func, case
from sqlalchemy.orm import Session

import models as M
from algolia_sync import upsert_title
from errors import NotFound, Unavailable

logger = logging.getLogger(__name__)

def copies_of(db: Session, title: str, author: str | None) -> list[M.BookCopy]:
    q = select(M.BookCopy).where(M.BookCopy.title == title)
    if author is not None:
        q = q.where(M.BookCopy.author == author)
    return db.scalars(q.order_by(M.BookCopy.id)).all()

def sync_search_index(db: Session, copy: M.BookCopy):
    # the search index is a mirror; failing to update it never fails the request
    try:
        upsert_title(copy.title, copy.author, copies_of(db, copy.title, copy.author))
    except Exception:
        logger.exception("Search index sync failed for %r", copy.title)

def create_copy(db: Session, data: dict) -> M.BookCopy:
    c = M.BookCopy(**data)
    db.add(c)
    db.commit()
    db.refresh(c)
    logger.info("Created copy %s of %r", c.id, c.title)
    sync_search_index(db, c)
    return c

def get_copy(db: Session, copy_id: int) -> M.BookCopy:
    c = db.get(M.BookCopy, copy_id)
    if not c:
        raise NotFound("Book copy not found")
    return c

def find_by_title(db: Session, title: str) -> M.BookCopy | None:
    return db.scalar(select(M.BookCopy).where(M.BookCopy.title == title).order_by(M.BookCopy.id))

def is_core_for(db: Session, record: M.BorrowedBook) -> bool:
    """Core flag from the linked copy, falling back to a title lookup."""
    if record.book_id:
        copy = db.get(M.BookCopy, record.book_id)
        return bool(copy and copy.is_core)
    copy = find_by_title(db, record.book_title)
    return bool(copy and copy.is_core)

def list_titles(db: Session, search: str | None = None) -> list[dict]:
    """Catalog view: copies grouped by title/author with derived availability."""
    available = func.sum(case((M.BookCopy.status == "Available", 1), else_=0))
    q = (
        select(
            M.BookCopy.title,
            M.BookCopy.author,
            func.min(M.BookCopy.id),
            func.count(M.BookCopy.id),
            available,
            func.max(M.BookCopy.category),
            func.max(M.BookCopy.genre),
        )
        .group_by(M.BookCopy.title, M.BookCopy.author)
        .order_by(M.BookCopy.title)
    )
    if search:
        like = f"%{search}%"
        q = q.where(M.BookCopy.title.ilike(like) | M.BookCopy.author.ilike(like))

    out = []
    for title, author, first_id, total, avail, category, genre in db.execute(q).all():
        out.append({
            "title": title,
            "author": author,
            "firstCopyId": first_id,
            "category": category,
            "genre": genre,
            "totalCopies": int(total),
            "availableCopies": int(avail or 0),
        })
    return out

def delete_copy(db: Session, copy_id: int):
    c = get_copy(db, copy_id)
    if c.status == "Borrowed":
        raise Unavailable("Book copy is currently borrowed and cannot be deleted")
    title, author = c.title, c.author
    db.delete(c)
    db.commit()
    logger.info("Deleted copy %s of %r", copy_id, title)
    try:
        upsert_title(title, author, copies_of(db, title, author))
    except Exception:
        logger.exception("Search index sync failed for %r", title)
