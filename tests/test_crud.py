import pytest
from datetime import date, timedelta
from sqlalchemy.orm import Session

from libledger import crud
from libledger.exceptions import (
    ActiveLoanConflictError,
    BookNotAvailableError,
    BookNotFoundError,
    CopiesBelowActiveLoansError,
    DuplicateStudentError,
    LoanAlreadyReturnedError,
    LoanNotFoundError,
    StudentNotFoundError,
)
from libledger.models import Book, IssuedBook, ReturnRecord, Student
from libledger.schemas import (
    BookCreate,
    BookUpdate,
    IssueRequestSchema,
    StudentCreate,
    StudentUpdate,
)


def issue(db, student, book, due=None):
    return crud.issue_book(
        db,
        IssueRequestSchema(
            student_id=student.student_id, book_id=book.book_id, due_date=due
        ),
    )


def test_add_book_merges_existing_title(db_session: Session, test_book: Book):
    book, merged = crud.add_book(
        db_session, BookCreate(title=" test BOOK", total_copies=2)
    )
    assert merged is True
    assert book.book_id == test_book.book_id
    assert book.total_copies == 5
    assert book.available_copies == 5


def test_issue_decrements_availability(
    db_session: Session, test_student: Student, test_book: Book
):
    loan = issue(db_session, test_student, test_book, due=date.today() + timedelta(days=7))

    assert loan.issue_date == date.today()
    assert loan.return_date is None
    assert loan.status == "Issued"
    db_session.refresh(test_book)
    assert test_book.available_copies == 2


def test_issue_without_free_copy(db_session: Session, test_student: Student):
    book, _ = crud.add_book(db_session, BookCreate(title="Single", total_copies=1))
    issue(db_session, test_student, book)

    with pytest.raises(BookNotAvailableError):
        issue(db_session, test_student, book)
    assert db_session.query(IssuedBook).count() == 1


def test_issue_unknown_student(db_session: Session, test_book: Book):
    with pytest.raises(StudentNotFoundError):
        crud.issue_book(
            db_session, IssueRequestSchema(student_id=404, book_id=test_book.book_id)
        )


def test_issue_unknown_book(db_session: Session, test_student: Student):
    with pytest.raises(BookNotFoundError):
        crud.issue_book(
            db_session,
            IssueRequestSchema(student_id=test_student.student_id, book_id=404),
        )


def test_return_late_book_records_fine(
    db_session: Session, test_student: Student, test_book: Book
):
    loan = issue(db_session, test_student, test_book, due=date(2024, 1, 1))

    returned, record = crud.return_book(db_session, loan.issue_id, as_of=date(2024, 1, 4))

    assert record.fine_amount == 30
    assert record.return_date == date(2024, 1, 4)
    assert returned.return_date == date(2024, 1, 4)
    assert returned.status == "Returned"
    db_session.refresh(test_book)
    assert test_book.available_copies == 3


def test_return_twice_is_rejected(
    db_session: Session, test_student: Student, test_book: Book
):
    loan = issue(db_session, test_student, test_book)
    crud.return_book(db_session, loan.issue_id)

    with pytest.raises(LoanAlreadyReturnedError):
        crud.return_book(db_session, loan.issue_id)
    assert (
        db_session.query(ReturnRecord)
        .filter(ReturnRecord.issue_id == loan.issue_id)
        .count()
        == 1
    )


def test_return_unknown_loan(db_session: Session):
    with pytest.raises(LoanNotFoundError):
        crud.return_book(db_session, 12345)


def test_update_book_grows_and_shrinks(db_session: Session, test_book: Book):
    grown = crud.update_book(
        db_session,
        test_book.book_id,
        BookUpdate(title="Test Book", author_name="A", genre="G", total_copies=6),
    )
    assert (grown.total_copies, grown.available_copies) == (6, 6)

    shrunk = crud.update_book(
        db_session,
        test_book.book_id,
        BookUpdate(title="Renamed", author_name="A", genre="G", total_copies=2),
    )
    assert (shrunk.total_copies, shrunk.available_copies) == (2, 2)
    assert shrunk.title == "Renamed"


def test_update_book_respects_active_loans(
    db_session: Session, test_student: Student, test_book: Book
):
    issue(db_session, test_student, test_book)
    issue(db_session, test_student, test_book)

    updated = crud.update_book(
        db_session,
        test_book.book_id,
        BookUpdate(title="Test Book", author_name="A", genre="G", total_copies=2),
    )
    assert updated.available_copies == 0

    with pytest.raises(CopiesBelowActiveLoansError):
        crud.update_book(
            db_session,
            test_book.book_id,
            BookUpdate(title="Test Book", author_name="A", genre="G", total_copies=1),
        )
    db_session.refresh(test_book)
    assert test_book.total_copies == 2


def test_delete_book_blocked_by_active_loan(
    db_session: Session, test_student: Student, test_book: Book
):
    issue(db_session, test_student, test_book)

    with pytest.raises(ActiveLoanConflictError):
        crud.delete_book(db_session, test_book.book_id)
    assert db_session.query(Book).count() == 1


def test_delete_book_keeps_history(
    db_session: Session, test_student: Student, test_book: Book
):
    loan = issue(db_session, test_student, test_book)
    crud.return_book(db_session, loan.issue_id)
    book_id = test_book.book_id

    crud.delete_book(db_session, book_id)
    db_session.expire_all()

    assert db_session.query(Book).filter(Book.book_id == book_id).first() is None
    kept = db_session.query(IssuedBook).filter(IssuedBook.issue_id == loan.issue_id).one()
    assert kept.book_id is None
    assert kept.student_id == test_student.student_id


def test_delete_missing_book(db_session: Session):
    with pytest.raises(BookNotFoundError):
        crud.delete_book(db_session, 999)


def test_create_student_with_explicit_id(db_session: Session):
    student = crud.create_student(
        db_session,
        StudentCreate(student_id=501, student_name="Ravi", email="ravi@example.com"),
    )
    assert student.student_id == 501


def test_create_student_duplicate_email(db_session: Session, test_student: Student):
    with pytest.raises(DuplicateStudentError):
        crud.create_student(
            db_session,
            StudentCreate(student_name="Copy", email=test_student.email),
        )
    assert db_session.query(Student).count() == 1


def test_update_student(db_session: Session, test_student: Student):
    updated = crud.update_student(
        db_session,
        test_student.student_id,
        StudentUpdate(student_name="New Name", email="new@example.com", year=3),
    )
    assert updated.student_name == "New Name"
    assert updated.email == "new@example.com"
    assert updated.year == 3


def test_update_student_email_clash(db_session: Session, test_student: Student):
    other = crud.create_student(
        db_session, StudentCreate(student_name="Other", email="other@example.com")
    )
    with pytest.raises(DuplicateStudentError):
        crud.update_student(
            db_session,
            other.student_id,
            StudentUpdate(student_name="Other", email=test_student.email),
        )


def test_delete_student_blocked_then_allowed(
    db_session: Session, test_student: Student, test_book: Book
):
    loan = issue(db_session, test_student, test_book)
    with pytest.raises(ActiveLoanConflictError):
        crud.delete_student(db_session, test_student.student_id)

    crud.return_book(db_session, loan.issue_id)
    crud.delete_student(db_session, test_student.student_id)
    db_session.expire_all()

    assert db_session.query(Student).count() == 0
    kept = db_session.query(IssuedBook).filter(IssuedBook.issue_id == loan.issue_id).one()
    assert kept.student_id is None
    assert db_session.query(ReturnRecord).count() == 1


def test_active_and_overdue_listings(
    db_session: Session, test_student: Student, test_book: Book
):
    today = date(2024, 3, 10)
    late = issue(db_session, test_student, test_book, due=date(2024, 3, 5))
    on_time = issue(db_session, test_student, test_book, due=date(2024, 3, 10))

    active = crud.get_active_loans(db_session, as_of=today)
    assert [row.issue_id for row in active] == [on_time.issue_id, late.issue_id]
    assert active[1].fine_amount == 50
    assert active[0].fine_amount == 0
    assert active[0].book_title == "Test Book"
    assert active[0].student_name == "Test Student"

    overdue = crud.get_overdue_loans(db_session, as_of=today)
    assert len(overdue) == 1
    assert overdue[0].issue_id == late.issue_id
    assert overdue[0].days_overdue == 5
    assert overdue[0].fine_amount == 50


def test_return_history_survives_student_deletion(
    db_session: Session, test_student: Student, test_book: Book
):
    loan = issue(db_session, test_student, test_book, due=date(2024, 1, 1))
    crud.return_book(db_session, loan.issue_id, as_of=date(2024, 1, 2))
    crud.delete_student(db_session, test_student.student_id)

    history = crud.get_return_history(db_session)
    assert len(history) == 1
    assert history[0].fine_amount == 10
    assert history[0].book_title == "Test Book"
    assert history[0].student_name is None


def test_return_with_existing_record_is_rejected(
    db_session: Session, test_student: Student, test_book: Book
):
    loan = issue(db_session, test_student, test_book)
    # A concurrent request already wrote the return record
    db_session.add(ReturnRecord(issue_id=loan.issue_id, return_date=date.today()))
    db_session.commit()

    with pytest.raises(LoanAlreadyReturnedError):
        crud.return_book(db_session, loan.issue_id)

    assert (
        db_session.query(ReturnRecord)
        .filter(ReturnRecord.issue_id == loan.issue_id)
        .count()
        == 1
    )
    db_session.refresh(test_book)
    assert test_book.available_copies == 2


def test_issue_ignores_drifted_availability(
    db_session: Session, test_student: Student
):
    book, _ = crud.add_book(db_session, BookCreate(title="Drifted", total_copies=1))
    issue(db_session, test_student, book)
    book.available_copies = 5
    db_session.commit()

    with pytest.raises(BookNotAvailableError):
        issue(db_session, test_student, book)
    assert (
        db_session.query(IssuedBook).filter(IssuedBook.book_id == book.book_id).count()
        == 1
    )
