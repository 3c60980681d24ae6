from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, select, func
from sqlalchemy.orm import sessionmaker

import models as M
from circulation import (
    borrow_copy, create_loan, list_loans, update_loan, toggle_payment,
    pay_fine, delete_loan, bulk_delete_loans,
)
from conftest import NOW, FailingTransport, make_copy, make_loan, make_student
from db import Base
from errors import Forbidden, NotFound, Unavailable, ValidationFailed
from fines import compute_fine
from loans import refresh_overdue
from notifications import MailConfig, Mailer
from system_config import replace_exam_periods

STUDENT = {"role": "student", "email": "asha@example.com", "name": "Asha Rao"}
ADMIN = {"role": "admin", "email": "admin@example.com", "name": "Library Admin"}


def loan_count(db):
    return db.scalar(select(func.count()).select_from(M.BorrowedBook))


def test_borrow_available_copy(db):
    make_student(db)
    copy = make_copy(db)

    result = borrow_copy(db, copy.id, STUDENT, now=NOW)

    assert result.status == "Borrowed"
    assert result.borrower == "asha@example.com"
    assert result.due_date == NOW + timedelta(days=14)
    records = db.scalars(select(M.BorrowedBook)).all()
    assert len(records) == 1
    assert records[0].return_status == "Not Returned"
    assert records[0].student_id == "CS2101"
    assert records[0].book_id == copy.id
    assert records[0].fine_amount == 0
    assert records[0].is_fine_paid is True


def test_borrow_ignores_exam_periods_and_year(db):
    make_student(db, year_of_study=4)
    copy = make_copy(db, category="Reference")
    replace_exam_periods(db, [{"name": "Finals", "start_date": NOW + timedelta(days=10), "end_date": NOW + timedelta(days=20)}])

    result = borrow_copy(db, copy.id, STUDENT, now=NOW)
    assert result.due_date == NOW + timedelta(days=14)


def test_borrow_unavailable_copy_creates_nothing(db):
    copy = make_copy(db, status="Borrowed")
    with pytest.raises(Unavailable) as e:
        borrow_copy(db, copy.id, STUDENT, now=NOW)
    assert e.value.message == "Book copy is currently unavailable"
    assert loan_count(db) == 0


def test_borrow_twice_second_fails(db):
    make_student(db)
    copy = make_copy(db)
    borrow_copy(db, copy.id, STUDENT, now=NOW)
    with pytest.raises(Unavailable):
        borrow_copy(db, copy.id, STUDENT, now=NOW)
    assert loan_count(db) == 1


def test_borrow_missing_copy(db):
    with pytest.raises(NotFound) as e:
        borrow_copy(db, 404, STUDENT, now=NOW)
    assert e.value.message == "Book copy not found"


def test_borrow_without_profile_records_placeholder_id(db):
    copy = make_copy(db)
    borrow_copy(db, copy.id, {"role": "student", "email": "walkin@example.com", "name": "Walk In"}, now=NOW)
    record = db.scalar(select(M.BorrowedBook))
    assert record.student_id == "N/A"
    assert record.student_name == "Walk In"


def test_admin_create_final_year_reference(db):
    make_student(db, year_of_study=4)
    copy = make_copy(db, category="Reference")

    record = create_loan(db, {"student_id": "CS2101", "book_id": copy.id, "borrow_date": NOW}, now=NOW)

    assert record.due_date == NOW + timedelta(days=30)
    assert record.student_name == "Asha Rao"
    assert record.book_title == "Operating Systems"
    assert record.return_status == "Not Returned"


def test_admin_create_resolves_by_numeric_id_and_title(db):
    student = make_student(db)
    make_copy(db, title="Compilers")

    record = create_loan(db, {"student_id": student.id, "book_title": "Compilers", "borrow_date": NOW}, now=NOW)

    assert record.student_id == "CS2101"
    assert record.book_id is not None
    assert record.due_date == NOW + timedelta(days=14)


def test_admin_create_recomputes_supplied_due_date(db):
    make_student(db)
    copy = make_copy(db)
    record = create_loan(db, {
        "student_id": "CS2101",
        "book_id": copy.id,
        "borrow_date": NOW,
        "due_date": NOW + timedelta(days=60),
    }, now=NOW)
    assert record.due_date == NOW + timedelta(days=14)


def test_admin_create_pushes_past_exam_period(db):
    make_student(db)
    copy = make_copy(db)
    replace_exam_periods(db, [{"name": "Midterms", "start_date": datetime(2025, 3, 10), "end_date": datetime(2025, 3, 20)}])

    record = create_loan(db, {"student_id": "CS2101", "book_id": copy.id, "borrow_date": NOW}, now=NOW)
    assert record.due_date == datetime(2025, 3, 21)


def test_admin_create_unresolved_uses_supplied_due_date(db):
    due = NOW + timedelta(days=7)
    record = create_loan(db, {
        "student_id": "EXT-7",
        "student_name": "Guest Reader",
        "book_title": "Unlisted Pamphlet",
        "borrow_date": NOW,
        "due_date": due,
    }, now=NOW)
    assert record.due_date == due
    assert record.student_id == "EXT-7"
    assert record.book_id is None


def test_admin_create_unresolved_without_due_date_fails(db):
    with pytest.raises(ValidationFailed):
        create_loan(db, {"student_id": "EXT-7", "student_name": "Guest", "book_title": "X"}, now=NOW)


def test_list_before_due_leaves_status(db):
    make_student(db)
    copy = make_copy(db)
    borrow_copy(db, copy.id, STUDENT, now=NOW)

    page = list_loans(db, ADMIN, now=NOW + timedelta(days=10))
    assert page["records"][0].return_status == "Not Returned"
    assert page["records"][0].fine_amount == 0


def test_list_on_day_seventeen_persists_overdue(db, session_factory):
    make_student(db)
    copy = make_copy(db)
    borrow_copy(db, copy.id, STUDENT, now=NOW)

    page = list_loans(db, ADMIN, now=NOW + timedelta(days=17))
    record = page["records"][0]
    assert record.return_status == "Overdue"
    assert record.fine_amount == compute_fine(3, False) == 3
    assert record.is_fine_paid is False

    other = session_factory()
    stored = other.get(M.BorrowedBook, record.id)
    assert stored.return_status == "Overdue"
    assert stored.fine_amount == 3
    other.close()


def test_list_uses_core_rate_from_linked_copy(db):
    copy = make_copy(db, is_core=True)
    make_loan(db, book_id=copy.id, due_date=NOW)
    page = list_loans(db, ADMIN, now=NOW + timedelta(days=4))
    assert page["records"][0].fine_amount == 32


def test_list_falls_back_to_title_for_core_flag(db):
    make_copy(db, title="Data Structures", is_core=True)
    make_loan(db, book_title="Data Structures", book_id=None, due_date=NOW)
    page = list_loans(db, ADMIN, now=NOW + timedelta(days=2))
    assert page["records"][0].fine_amount == 8


def test_list_recomputes_instead_of_accumulating(db):
    make_loan(db, due_date=NOW)
    list_loans(db, ADMIN, now=NOW + timedelta(days=5))
    list_loans(db, ADMIN, now=NOW + timedelta(days=5))
    page = list_loans(db, ADMIN, now=NOW + timedelta(days=5))
    assert page["records"][0].fine_amount == compute_fine(5, False)


def test_student_only_sees_own_records(db):
    make_student(db)
    make_loan(db, student_id="CS2101", book_title="Networks", due_date=NOW + timedelta(days=5))
    make_loan(db, student_id="ME3300", student_name="Ravi", book_title="Thermodynamics", due_date=NOW + timedelta(days=5))

    page = list_loans(db, STUDENT, search="Ravi", now=NOW)
    assert page["total"] == 0

    page = list_loans(db, STUDENT, now=NOW)
    assert page["total"] == 1
    assert page["records"][0].book_title == "Networks"


def test_student_without_profile_sees_nothing(db):
    make_loan(db)
    page = list_loans(db, {"role": "student", "email": "nobody@example.com"}, now=NOW)
    assert page == {"total": 0, "page": 1, "limit": 10, "records": []}


def test_admin_search_status_sort_and_pagination(db):
    for i, name in enumerate(["Ravi", "Asha", "Meera"]):
        make_loan(db, student_name=name, student_id=f"R{i}", due_date=NOW + timedelta(days=i + 1))
    make_loan(db, student_name="Kiran", student_id="R9", return_status="Returned", due_date=NOW + timedelta(days=9))

    page = list_loans(db, ADMIN, search="asha", now=NOW)
    assert [r.student_name for r in page["records"]] == ["Asha"]

    page = list_loans(db, ADMIN, status="Returned", now=NOW)
    assert [r.student_name for r in page["records"]] == ["Kiran"]

    page = list_loans(db, ADMIN, sort="dueDate:desc", limit=2, page=1, now=NOW)
    assert page["total"] == 4
    assert [r.student_name for r in page["records"]] == ["Kiran", "Meera"]

    page = list_loans(db, ADMIN, limit=2, page=2, now=NOW)
    assert [r.student_name for r in page["records"]] == ["Meera", "Kiran"]


def test_out_of_range_paging_reports_what_was_served(db):
    make_loan(db, due_date=NOW + timedelta(days=1))
    page = list_loans(db, ADMIN, page=0, limit=-5, now=NOW)
    assert (page["page"], page["limit"]) == (1, 1)
    assert len(page["records"]) == 1


def test_return_eight_days_late_then_pay(db, mailer):
    make_student(db)
    copy = make_copy(db)
    borrow_copy(db, copy.id, STUDENT, now=NOW)
    record = db.scalar(select(M.BorrowedBook))
    due = record.due_date

    returned = update_loan(db, record.id, {"return_status": "Returned"}, mailer, now=due + timedelta(days=8))

    assert returned.return_status == "Returned"
    assert returned.fine_amount == 33
    assert returned.is_fine_paid is False
    db.refresh(copy)
    assert copy.status == "Available"
    assert copy.borrower == ""
    assert copy.due_date is None

    paid = pay_fine(db, record.id, "Cash", ADMIN, now=due + timedelta(days=9))
    assert paid.is_fine_paid is True
    assert paid.is_payment_enabled is False
    assert paid.payment_method == "Cash"
    assert paid.payment_date == due + timedelta(days=9)


def test_return_on_time_has_no_fine(db, mailer):
    record = make_loan(db, due_date=NOW + timedelta(days=3))
    returned = update_loan(db, record.id, {"return_status": "Returned"}, mailer, now=NOW)
    assert returned.fine_amount == 0
    assert returned.is_fine_paid is True


def test_return_keeps_explicit_fine(db, mailer):
    record = make_loan(db, due_date=NOW)
    returned = update_loan(db, record.id, {"return_status": "Returned", "fine_amount": 10}, mailer, now=NOW + timedelta(days=8))
    assert returned.fine_amount == 10
    assert returned.is_fine_paid is False


def test_return_explicit_zero_fine_waives(db, mailer):
    record = make_loan(db, due_date=NOW)
    returned = update_loan(db, record.id, {"return_status": "Returned", "fine_amount": 0}, mailer, now=NOW + timedelta(days=8))
    assert returned.fine_amount == 0
    assert returned.is_fine_paid is True


def test_return_notifies_oldest_reservation_holder(db, mailer, transport):
    copy = make_copy(db)
    first = make_student(db, roll_no="S1", email="first@example.com", name="First")
    second = make_student(db, roll_no="S2", email="second@example.com", name="Second")
    db.add_all([
        M.Reservation(book_id=copy.id, student_id=second.id, reservation_date=NOW - timedelta(days=1)),
        M.Reservation(book_id=copy.id, student_id=first.id, reservation_date=NOW - timedelta(days=3)),
    ])
    db.commit()
    record = make_loan(db, book_id=copy.id, due_date=NOW + timedelta(days=1))

    update_loan(db, record.id, {"return_status": "Returned"}, mailer, now=NOW)

    assert transport.recipients() == ["first@example.com"]


def test_second_returned_update_does_not_notify_again(db, mailer, transport):
    copy = make_copy(db)
    student = make_student(db)
    db.add(M.Reservation(book_id=copy.id, student_id=student.id, reservation_date=NOW))
    db.commit()
    record = make_loan(db, book_id=copy.id, due_date=NOW + timedelta(days=1))

    update_loan(db, record.id, {"return_status": "Returned"}, mailer, now=NOW)
    update_loan(db, record.id, {"return_status": "Returned"}, mailer, now=NOW)
    assert len(transport.sent) == 1


def test_return_succeeds_when_mail_fails(db):
    failing = FailingTransport()
    broken = Mailer(MailConfig("smtp.test", 465, "library@example.com", "pw"), failing)
    copy = make_copy(db)
    student = make_student(db)
    db.add(M.Reservation(book_id=copy.id, student_id=student.id, reservation_date=NOW))
    db.commit()
    record = make_loan(db, book_id=copy.id, due_date=NOW)

    returned = update_loan(db, record.id, {"return_status": "Returned"}, broken, now=NOW + timedelta(days=1))

    assert failing.attempts == 1
    assert returned.return_status == "Returned"
    assert returned.fine_amount == 1


@pytest.mark.parametrize("status", ["Not Returned", "Overdue"])
def test_returned_loan_cannot_be_reopened(db, mailer, status):
    make_student(db)
    copy = make_copy(db)
    borrow_copy(db, copy.id, STUDENT, now=NOW)
    record = db.scalar(select(M.BorrowedBook))
    update_loan(db, record.id, {"return_status": "Returned"}, mailer, now=NOW)

    with pytest.raises(ValidationFailed):
        update_loan(db, record.id, {"return_status": status}, mailer, now=NOW)

    db.refresh(record)
    db.refresh(copy)
    assert record.return_status == "Returned"
    assert copy.status == "Available"


def test_returned_loan_other_fields_still_editable(db, mailer):
    record = make_loan(db, due_date=NOW)
    update_loan(db, record.id, {"return_status": "Returned"}, mailer, now=NOW)
    edited = update_loan(db, record.id, {"student_name": "Asha R."}, mailer, now=NOW)
    assert edited.student_name == "Asha R."
    assert edited.return_status == "Returned"


def test_update_missing_loan(db, mailer):
    with pytest.raises(NotFound):
        update_loan(db, 12345, {"return_status": "Returned"}, mailer, now=NOW)


def test_student_payment_needs_librarian_gate(db):
    record = make_loan(db, fine_amount=8, is_fine_paid=False)

    with pytest.raises(Forbidden) as e:
        pay_fine(db, record.id, "UPI", STUDENT, now=NOW)
    assert e.value.message == "Payment not enabled by librarian."

    assert toggle_payment(db, record.id).is_payment_enabled is True
    paid = pay_fine(db, record.id, "UPI", STUDENT, now=NOW)
    assert paid.is_fine_paid is True
    assert paid.is_payment_enabled is False
    assert paid.payment_method == "UPI"


def test_pay_fine_defaults_to_cash_and_rejects_unknown(db):
    record = make_loan(db, fine_amount=8, is_fine_paid=False)
    with pytest.raises(ValidationFailed):
        pay_fine(db, record.id, "Cheque", ADMIN, now=NOW)
    assert pay_fine(db, record.id, None, ADMIN, now=NOW).payment_method == "Cash"


def test_toggle_payment_flips_back(db):
    record = make_loan(db)
    toggle_payment(db, record.id)
    assert toggle_payment(db, record.id).is_payment_enabled is False


def test_delete_and_bulk_delete(db):
    a = make_loan(db)
    b = make_loan(db)
    c = make_loan(db)

    delete_loan(db, a.id)
    with pytest.raises(NotFound):
        delete_loan(db, a.id)

    assert bulk_delete_loans(db, [b.id, c.id]) == 2
    assert loan_count(db) == 0


def test_overdue_refresh_never_undoes_a_return(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    setup = Session()
    loan_id = make_loan(setup, due_date=NOW).id
    setup.close()

    # the reader loads the loan, then a return lands before it writes
    reader = Session()
    stale = reader.get(M.BorrowedBook, loan_id)
    assert stale.return_status == "Not Returned"

    writer = Session()
    writer.get(M.BorrowedBook, loan_id).return_status = "Returned"
    writer.commit()
    writer.close()

    assert refresh_overdue(reader, stale, NOW + timedelta(days=3)) is False
    assert stale.return_status == "Returned"
    assert stale.fine_amount == 0
    reader.close()
    engine.dispose()
