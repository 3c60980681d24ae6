import asyncio
import logging

from fastapi import FastAPI, Depends, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.orm import Session
from sqlalchemy import select

from db import Base, engine, get_db, settings, SessionLocal
import models as M
import schemas as S
import catalog
import circulation
import dashboard
import reservations
import students
import system_config
from errors import Internal, LibraryError
from notifications import MailConfig, Mailer, run_sweeps
from scheduler import run_daily
from security import hash_password, verify_password, create_access_token, decode_token

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("athenaeum")

app = FastAPI(title="Athenaeum Library")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

mail_config = MailConfig.from_settings()
mailer = Mailer(mail_config)

def get_mailer() -> Mailer:
    return mailer

@app.exception_handler(LibraryError)
def library_error_handler(request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

@app.exception_handler(StarletteHTTPException)
def http_error_handler(request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=getattr(exc, "headers", None))

# --- startup / shutdown ---
def ensure_admin(db: Session):
    if not settings.ADMIN_EMAIL or not settings.ADMIN_PASSWORD:
        return
    if db.scalar(select(M.User).where(M.User.email == settings.ADMIN_EMAIL)):
        return
    db.add(M.User(
        name=settings.ADMIN_NAME,
        email=settings.ADMIN_EMAIL,
        password_hash=hash_password(settings.ADMIN_PASSWORD),
        role="admin",
    ))
    db.commit()
    logger.info("Created administrator account %s", settings.ADMIN_EMAIL)

@app.on_event("startup")
async def on_startup():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        ensure_admin(db)
    finally:
        db.close()
    if settings.NOTIFY_SCHEDULER_ENABLED:
        app.state.scheduler = asyncio.create_task(run_daily(SessionLocal, mailer, settings.NOTIFY_HOUR))

@app.on_event("shutdown")
async def on_shutdown():
    task = getattr(app.state, "scheduler", None)
    if task:
        task.cancel()

# --- auth deps ---
def get_current_user(authorization: str = Header(default="")) -> dict:
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="No token provided")
    token = authorization.split(" ", 1)[1].strip()
    try:
        return decode_token(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="Token is invalid or expired")

def require_role(*roles):
    def _dep(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            raise HTTPException(status_code=403, detail="Access denied")
        return user
    return _dep

def issue_token(u: M.User) -> S.TokenOut:
    token = create_access_token({
        "sub": u.email,
        "user_id": u.user_id,
        "role": u.role,
        "email": u.email,
        "name": u.name,
    })
    return S.TokenOut(access_token=token, role=u.role, name=u.name, email=u.email)

# --- auth routes ---
@app.post("/api/auth/register", response_model=S.TokenOut)
def register(data: S.RegisterIn, db: Session = Depends(get_db)):
    if db.scalar(select(M.User).where(M.User.email == data.email)):
        raise HTTPException(status_code=400, detail="Email is already registered")
    u = M.User(name=data.name, email=data.email, password_hash=hash_password(data.password), role="student")
    db.add(u)
    db.commit()
    db.refresh(u)
    logger.info("Registered student account %s", u.email)
    return issue_token(u)

@app.post("/api/auth/login", response_model=S.TokenOut)
def login(data: S.LoginIn, db: Session = Depends(get_db)):
    u = db.scalar(select(M.User).where(M.User.email == data.email))
    if not u or not verify_password(data.password, u.password_hash):
        raise HTTPException(status_code=400, detail="Invalid email or password")
    return issue_token(u)

@app.get("/api/auth/me")
def me(user=Depends(get_current_user)):
    return user

# --- students ---
@app.get("/api/students", response_model=list[S.StudentOut])
def list_students(search: str | None = None, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    return students.list_students(db, search)

@app.post("/api/students", response_model=S.StudentOut, status_code=201)
def create_student(data: S.StudentIn, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    return students.create_student(db, data.model_dump())

@app.get("/api/students/me", response_model=S.StudentOut)
def my_profile(db: Session = Depends(get_db), user=Depends(get_current_user)):
    s = students.student_for_user(db, user)
    if not s:
        raise HTTPException(status_code=404, detail="Student profile not found")
    return s

@app.put("/api/students/{roll_no}", response_model=S.StudentOut)
def update_student(roll_no: str, data: S.StudentUpdateIn, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    return students.update_student(db, roll_no, data.model_dump(exclude_unset=True))

@app.delete("/api/students/{roll_no}", response_model=S.MessageOut)
def delete_student(roll_no: str, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    students.delete_student(db, roll_no)
    return {"message": "Student deleted"}

# --- dashboard ---
@app.get("/api/dashboard/stats", response_model=S.DashboardStatsOut)
def dashboard_stats(db: Session = Depends(get_db), user=Depends(get_current_user)):
    return dashboard.stats(db)

# --- catalog ---
@app.get("/api/books", response_model=list[S.TitleOut])
def list_books(search: str | None = None, db: Session = Depends(get_db), user=Depends(get_current_user)):
    return catalog.list_titles(db, search)

@app.get("/api/books/copies", response_model=list[S.CopyOut])
def list_copies(title: str, author: str | None = None, db: Session = Depends(get_db), user=Depends(get_current_user)):
    return catalog.copies_of(db, title, author)

@app.post("/api/books", response_model=S.CopyOut, status_code=201)
def create_copy(data: S.CopyIn, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    return catalog.create_copy(db, data.model_dump())

@app.delete("/api/books/{copy_id}", response_model=S.MessageOut)
def delete_copy(copy_id: int, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    catalog.delete_copy(db, copy_id)
    return {"message": "Book copy deleted successfully"}

@app.post("/api/books/{copy_id}/borrow", response_model=S.BorrowOut)
def borrow(copy_id: int, db: Session = Depends(get_db), user=Depends(get_current_user)):
    book = circulation.borrow_copy(db, copy_id, user)
    return {"message": "Book borrowed successfully", "book": book}

# --- borrowed records ---
@app.get("/api/borrowed", response_model=S.LoanPage)
def list_borrowed(
    page: int = 1,
    limit: int = 10,
    status: str | None = None,
    search: str | None = None,
    sort: str | None = None,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    return circulation.list_loans(db, user, page=page, limit=limit, status=status, search=search, sort=sort)

@app.post("/api/borrowed", response_model=S.LoanOut, status_code=201)
def create_borrowed(data: S.LoanCreateIn, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    return circulation.create_loan(db, data.model_dump())

@app.put("/api/borrowed/{loan_id}", response_model=S.LoanOut)
def update_borrowed(
    loan_id: int,
    data: S.LoanUpdateIn,
    db: Session = Depends(get_db),
    user=Depends(require_role("admin")),
    mail: Mailer = Depends(get_mailer),
):
    return circulation.update_loan(db, loan_id, data.model_dump(exclude_unset=True), mail)

@app.patch("/api/borrowed/{loan_id}/toggle-payment", response_model=S.LoanOut)
def toggle_payment(loan_id: int, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    return circulation.toggle_payment(db, loan_id)

@app.patch("/api/borrowed/{loan_id}/pay-fine", response_model=S.LoanOut)
def pay_fine(loan_id: int, data: S.PayFineIn, db: Session = Depends(get_db), user=Depends(get_current_user)):
    return circulation.pay_fine(db, loan_id, data.payment_method, user)

@app.delete("/api/borrowed/{loan_id}", response_model=S.MessageOut)
def delete_borrowed(loan_id: int, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    circulation.delete_loan(db, loan_id)
    return {"message": "Record deleted successfully"}

@app.post("/api/borrowed/bulk-delete", response_model=S.MessageOut)
def bulk_delete_borrowed(data: S.BulkDeleteIn, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    circulation.bulk_delete_loans(db, data.ids)
    return {"message": "Records deleted"}

# --- reservations ---
@app.post("/api/reservations", response_model=S.ReservationOut, status_code=201)
def create_reservation(data: S.ReservationIn, db: Session = Depends(get_db), user=Depends(get_current_user)):
    return reservations.create_reservation(db, data.book_id, data.student_id, user)

@app.get("/api/reservations", response_model=list[S.ReservationOut])
def list_reservations(
    student_id: int | None = Query(default=None, alias="studentId"),
    book_id: int | None = Query(default=None, alias="bookId"),
    status: str | None = None,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    return reservations.list_reservations(db, user, student_id=student_id, book_id=book_id, status=status)

@app.patch("/api/reservations/{reservation_id}/cancel", response_model=S.ReservationOut)
def cancel_reservation(reservation_id: int, db: Session = Depends(get_db), user=Depends(get_current_user)):
    return reservations.cancel_reservation(db, reservation_id, user)

@app.patch("/api/reservations/{reservation_id}/status", response_model=S.ReservationOut)
def set_reservation_status(
    reservation_id: int,
    data: S.ReservationStatusIn,
    db: Session = Depends(get_db),
    user=Depends(require_role("admin")),
):
    return reservations.set_status(db, reservation_id, data.status)

# --- admin tools ---
@app.get("/api/admin-tools/config", response_model=S.SystemConfigOut)
def get_system_config(db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    cfg = system_config.get_or_create_config(db)
    db.commit()
    return cfg

@app.put("/api/admin-tools/config/exam-periods", response_model=S.SystemConfigOut)
def put_exam_periods(data: S.ExamPeriodsIn, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    for p in data.exam_periods:
        if p.end_date < p.start_date:
            raise HTTPException(status_code=400, detail="Exam period ends before it starts")
    return system_config.replace_exam_periods(db, [p.model_dump() for p in data.exam_periods])

@app.post("/api/admin-tools/update-email-config", response_model=S.MessageOut)
def update_email_config(
    data: S.EmailConfigIn,
    user=Depends(require_role("admin")),
    mail: Mailer = Depends(get_mailer),
):
    if not data.email or not data.password:
        return JSONResponse(status_code=400, content={"message": "Email and App Password are required."})
    mail.config.reload(data.email, data.password)
    return {"message": "Configuration updated successfully! You can now send a test email."}

@app.post("/api/admin-tools/test-email", response_model=S.MessageOut)
def test_email(data: S.TestEmailIn, user=Depends(require_role("admin")), mail: Mailer = Depends(get_mailer)):
    if not data.email:
        return JSONResponse(status_code=400, content={"message": "Target email is required"})
    try:
        mail.send(
            data.email,
            "Athenaeum System Test",
            "This is a test email from your Library Management System.\n"
            "If you are reading this, your email configuration (SMTP) is working correctly!",
        )
    except Exception as e:
        logger.exception("Test email failed")
        raise Internal(str(e) or "Error sending test email")
    return {"message": "Test email sent successfully!"}

# --- cron ---
@app.get("/api/cron/notifications", response_model=S.CronOut, response_model_exclude_none=True)
def cron_notifications(db: Session = Depends(get_db), mail: Mailer = Depends(get_mailer)):
    logger.info("Received cron request for notifications")
    return {"success": True, "summary": run_sweeps(db, mail)}
