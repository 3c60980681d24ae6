from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Enum, Boolean, Float, ForeignKey, Text,
    Computed, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from db import Base

# sqlite only autoincrements INTEGER primary keys
Id = BigInteger().with_variant(Integer, "sqlite")

RETURN_STATUSES = ("Not Returned", "Overdue", "Returned")
COPY_STATUSES = ("Available", "Borrowed")
RESERVATION_STATUSES = ("Active", "Fulfilled", "Cancelled")
PAYMENT_METHODS = ("Cash", "UPI")

# role: admin / student
class User(Base):
    __tablename__ = "user"
    user_id = Column(Id, primary_key=True, autoincrement=True)
    name = Column(String(80), nullable=False)
    email = Column(String(120), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(Enum("admin", "student", name="user_role"), nullable=False, default="student")
    created_at = Column(DateTime, nullable=False, server_default=func.now())

class Student(Base):
    __tablename__ = "student"
    id = Column(Id, primary_key=True, autoincrement=True)
    name = Column(String(80), nullable=False)
    roll_no = Column(String(30), unique=True, nullable=False)
    email = Column(String(120))
    department = Column(String(80))
    year_of_study = Column(Integer)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

# one row per physical copy; a "book" in the catalog is the group sharing title/author
class BookCopy(Base):
    __tablename__ = "book"
    id = Column(Id, primary_key=True, autoincrement=True)
    title = Column(String(200), nullable=False)
    author = Column(String(120))
    genre = Column(String(80), default="Uncategorized")
    category = Column(String(80))
    publisher = Column(String(120))
    isbn = Column(String(20))
    location = Column(String(80))
    description = Column(Text)
    is_core = Column(Boolean, nullable=False, default=False)

    status = Column(Enum(*COPY_STATUSES, name="copy_status"), nullable=False, default="Available")
    borrower = Column(String(120), nullable=False, default="")
    due_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

class BorrowedBook(Base):
    __tablename__ = "borrowed_book"
    id = Column(Id, primary_key=True, autoincrement=True)
    student_name = Column(String(80), nullable=False)
    # roll number when a profile exists, otherwise whatever identifier the borrower was recorded under
    student_id = Column(String(64), nullable=False)
    book_id = Column(Id, ForeignKey("book.id", ondelete="SET NULL"), nullable=True)
    book_title = Column(String(200), nullable=False)

    borrow_date = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False)
    return_status = Column(Enum(*RETURN_STATUSES, name="return_status"), nullable=False, default="Not Returned")

    fine_amount = Column(Float, nullable=False, default=0)
    # "no fine owed" is encoded as paid
    is_fine_paid = Column(Boolean, nullable=False, default=True)
    is_payment_enabled = Column(Boolean, nullable=False, default=False)
    payment_method = Column(Enum(*PAYMENT_METHODS, name="payment_method"), nullable=True)
    payment_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    book = relationship("BookCopy")

class Reservation(Base):
    __tablename__ = "reservation"
    id = Column(Id, primary_key=True, autoincrement=True)
    book_id = Column(Id, ForeignKey("book.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(Id, ForeignKey("student.id", ondelete="CASCADE"), nullable=False)
    reservation_date = Column(DateTime, nullable=False)
    status = Column(Enum(*RESERVATION_STATUSES, name="reservation_status"), nullable=False, default="Active")
    # 1 while Active, NULL otherwise; NULLs never collide in a unique index
    active_slot = Column(Integer, Computed("CASE WHEN status = 'Active' THEN 1 END", persisted=True))
    notes = Column(String(255))
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("book_id", "student_id", "active_slot", name="uq_reservation_active"),
    )

    book = relationship("BookCopy")
    student = relationship("Student")

class SystemConfig(Base):
    __tablename__ = "system_config"
    id = Column(Id, primary_key=True, autoincrement=True)
    key = Column(String(50), unique=True, nullable=False, default="main_config")
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    exam_periods = relationship(
        "ExamPeriod", back_populates="config", cascade="all, delete-orphan", order_by="ExamPeriod.id"
    )

class ExamPeriod(Base):
    __tablename__ = "exam_period"
    id = Column(Id, primary_key=True, autoincrement=True)
    config_id = Column(Id, ForeignKey("system_config.id"), nullable=False)
    name = Column(String(80))
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)

    config = relationship("SystemConfig", back_populates="exam_periods")
