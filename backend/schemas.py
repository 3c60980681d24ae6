from datetime import datetime
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Literal, Union

Role = Literal["admin", "student"]
ReturnStatus = Literal["Not Returned", "Overdue", "Returned"]
ReservationStatus = Literal["Active", "Fulfilled", "Cancelled"]
PaymentMethod = Literal["Cash", "UPI"]

# JSON field names are camelCase, matching the web client
class ApiModel(BaseModel):
    class Config:
        from_attributes = True
        populate_by_name = True
        alias_generator = to_camel

class MessageOut(BaseModel):
    message: str

# --- auth ---
class TokenOut(ApiModel):
    access_token: str
    token_type: str = "bearer"
    role: Role
    name: str
    email: str

class LoginIn(ApiModel):
    email: str
    password: str

class RegisterIn(ApiModel):
    name: str
    email: str
    password: str = Field(min_length=6)

# --- students ---
class StudentIn(ApiModel):
    name: str
    roll_no: str
    email: Optional[str] = None
    department: Optional[str] = None
    year_of_study: Optional[int] = Field(default=None, ge=1, le=6)

class StudentOut(StudentIn):
    id: int = Field(alias="_id")

class StudentUpdateIn(ApiModel):
    name: Optional[str] = None
    email: Optional[str] = None
    department: Optional[str] = None
    year_of_study: Optional[int] = Field(default=None, ge=1, le=6)

class StudentBrief(ApiModel):
    name: str
    email: Optional[str] = None

# --- catalog ---
class CopyIn(ApiModel):
    title: str
    author: Optional[str] = None
    genre: Optional[str] = "Uncategorized"
    category: Optional[str] = None
    publisher: Optional[str] = None
    isbn: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    is_core: bool = False

class CopyOut(CopyIn):
    id: int = Field(alias="_id")
    status: str
    borrower: str = ""
    due_date: Optional[datetime] = None

class CopyBrief(ApiModel):
    title: str
    author: Optional[str] = None

class TitleOut(BaseModel):
    title: str
    author: Optional[str] = None
    firstCopyId: int
    category: Optional[str] = None
    genre: Optional[str] = None
    totalCopies: int
    availableCopies: int

class BorrowOut(BaseModel):
    message: str
    book: CopyOut

# --- loans ---
class LoanCreateIn(ApiModel):
    student_id: Union[str, int]
    student_name: Optional[str] = None
    book_id: Optional[int] = None
    book_title: Optional[str] = None
    borrow_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    return_status: Optional[ReturnStatus] = None
    fine_amount: Optional[float] = Field(default=None, ge=0)
    is_fine_paid: Optional[bool] = None
    is_payment_enabled: Optional[bool] = None

class LoanUpdateIn(ApiModel):
    student_name: Optional[str] = None
    student_id: Optional[str] = None
    book_title: Optional[str] = None
    borrow_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    return_status: Optional[ReturnStatus] = None
    fine_amount: Optional[float] = Field(default=None, ge=0)
    is_fine_paid: Optional[bool] = None
    is_payment_enabled: Optional[bool] = None
    payment_method: Optional[PaymentMethod] = None
    payment_date: Optional[datetime] = None

class LoanOut(ApiModel):
    id: int = Field(alias="_id")
    student_name: str
    student_id: str
    book_id: Optional[int] = None
    book_title: str
    borrow_date: datetime
    due_date: datetime
    return_status: ReturnStatus
    fine_amount: float
    is_fine_paid: bool
    is_payment_enabled: bool
    payment_method: Optional[PaymentMethod] = None
    payment_date: Optional[datetime] = None

class LoanPage(BaseModel):
    total: int
    page: int
    limit: int
    records: List[LoanOut]

class PayFineIn(ApiModel):
    payment_method: Optional[PaymentMethod] = None

class BulkDeleteIn(BaseModel):
    ids: List[int]

# --- reservations ---
class ReservationIn(ApiModel):
    book_id: int
    student_id: Optional[Union[str, int]] = None

class ReservationStatusIn(BaseModel):
    status: ReservationStatus

class ReservationOut(ApiModel):
    id: int = Field(alias="_id")
    book_id: int
    student_id: int
    reservation_date: datetime
    status: ReservationStatus
    notes: Optional[str] = None
    book: Optional[CopyBrief] = None
    student: Optional[StudentBrief] = None

# --- system config / admin tools ---
class ExamPeriodIn(ApiModel):
    name: Optional[str] = None
    start_date: datetime
    end_date: datetime

class ExamPeriodsIn(ApiModel):
    exam_periods: List[ExamPeriodIn]

class SystemConfigOut(ApiModel):
    key: str
    exam_periods: List[ExamPeriodIn] = []

class EmailConfigIn(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None

class TestEmailIn(BaseModel):
    email: Optional[str] = None

class CronTaskOut(BaseModel):
    task: str
    status: Literal["fulfilled", "rejected"]
    reason: Optional[str] = None

class CronOut(BaseModel):
    success: bool
    summary: List[CronTaskOut]

# --- dashboard ---
class CountOut(BaseModel):
    key: Optional[str] = Field(default=None, alias="_id")
    count: int

class DashboardStatsOut(BaseModel):
    totalBooks: int
    totalUsers: int
    borrowedCount: int
    overdueCount: int
    genreStats: List[CountOut]
    timeline: List[CountOut]
    topReaders: List[CountOut]
    deadStockCount: int
