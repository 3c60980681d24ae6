import logging

from sqlalchemy import select, or_, delete
from sqlalchemy.orm import Session

import models as M
from errors import NotFound, ValidationFailed

logger = logging.getLogger(__name__)

def resolve_student(db: Session, ref) -> M.Student | None:
    """Look a student up by numeric id first, then by roll number."""
    if ref is None or ref == "":
        return None
    ref = str(ref).strip()
    student = None
    if ref.isdigit():
        student = db.get(M.Student, int(ref))
    if not student:
        student = db.scalar(select(M.Student).where(M.Student.roll_no == ref))
    return student

def student_for_user(db: Session, user: dict) -> M.Student | None:
    email = user.get("email")
    if not email:
        return None
    return db.scalar(select(M.Student).where(M.Student.email == email))

def create_student(db: Session, data: dict) -> M.Student:
    if db.scalar(select(M.Student).where(M.Student.roll_no == data["roll_no"])):
        raise ValidationFailed("A student with this roll number already exists")
    s = M.Student(**data)
    db.add(s)
    db.commit()
    db.refresh(s)
    return s

def list_students(db: Session, search: str | None = None) -> list[M.Student]:
    q = select(M.Student)
    if search:
        like = f"%{search}%"
        q = q.where(or_(
            M.Student.name.ilike(like),
            M.Student.roll_no.ilike(like),
            M.Student.email.ilike(like),
        ))
    return db.scalars(q.order_by(M.Student.name)).all()

def get_by_roll(db: Session, roll_no: str) -> M.Student:
    s = db.scalar(select(M.Student).where(M.Student.roll_no == roll_no))
    if not s:
        raise NotFound("Student not found")
    return s

def update_student(db: Session, roll_no: str, patch: dict) -> M.Student:
    """Edit a profile in place. The roll number is the key loans are filed under, so it stays fixed."""
    s = get_by_roll(db, roll_no)
    for k, v in patch.items():
        setattr(s, k, v)
    db.commit()
    db.refresh(s)
    logger.info("Student %s updated: %s", roll_no, sorted(patch))
    return s

def delete_student(db: Session, roll_no: str):
    s = get_by_roll(db, roll_no)
    db.execute(delete(M.Reservation).where(M.Reservation.student_id == s.id))
    db.delete(s)
    db.commit()
    logger.info("Student %s deleted", roll_no)
