from datetime import date
import logging
from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from typing import List, Optional, Tuple

from libledger import models, schemas
from libledger.reconcile import (
    compute_fine,
    count_active_loans,
    local_today,
    merge_or_create_book,
    overdue_days,
    recompute_all_availability,
    recompute_availability,
    resize_copies,
)
from libledger.exceptions import (
    ActiveLoanConflictError,
    BookNotAvailableError,
    BookNotFoundError,
    CopiesBelowActiveLoansError,
    DatabaseError,
    DuplicateStudentError,
    LibraryException,
    LoanAlreadyReturnedError,
    LoanNotFoundError,
    StudentNotFoundError,
)

logger = logging.getLogger(__name__)


# Books


def list_books(db: Session) -> List[models.Book]:
    try:
        return db.query(models.Book).order_by(models.Book.book_id.desc()).all()
    except SQLAlchemyError as e:
        raise DatabaseError("fetch books", str(e))


def get_book(db: Session, book_id: int, lock: bool = False) -> models.Book:
    query = db.query(models.Book).filter(models.Book.book_id == book_id)
    if lock:
        query = query.with_for_update()
    book = query.first()
    if book is None:
        raise BookNotFoundError(book_id)
    return book


def add_book(db: Session, item: schemas.BookCreate) -> Tuple[models.Book, bool]:
    try:
        book, merged = merge_or_create_book(
            db, item.title, item.author_name, item.genre, item.total_copies
        )
        db.commit()
        db.refresh(book)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("add book", str(e))

    if merged:
        logger.info(
            f"Merged {item.total_copies} copies into existing book {book.book_id} ({book.title})"
        )
    else:
        logger.info(f"Created book {book.book_id} ({book.title})")
    return book, merged


def update_book(db: Session, book_id: int, item: schemas.BookUpdate) -> models.Book:
    try:
        book = get_book(db, book_id, lock=True)
        active = count_active_loans(db, book_id)
        if item.total_copies < active:
            raise CopiesBelowActiveLoansError(book_id, item.total_copies, active)

        # Provisional; the ledger recompute below is authoritative
        book.available_copies = resize_copies(
            book.total_copies, book.available_copies, item.total_copies
        )
        book.total_copies = item.total_copies
        book.title = item.title
        book.author_name = item.author_name
        book.genre = item.genre

        db.flush()
        recompute_availability(db, book_id)
        db.commit()
        db.refresh(book)
        return book
    except LibraryException:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update book", str(e))


def delete_book(db: Session, book_id: int) -> None:
    try:
        book = get_book(db, book_id, lock=True)
        if count_active_loans(db, book_id) > 0:
            raise ActiveLoanConflictError(
                "Cannot delete book: it is currently issued to a student."
            )
        # Keep loan history, sever the link to the catalog row
        db.query(models.IssuedBook).filter(
            models.IssuedBook.book_id == book_id
        ).update({models.IssuedBook.book_id: None}, synchronize_session=False)
        db.delete(book)
        db.commit()
        logger.info(f"Deleted book {book_id}")
    except LibraryException:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("delete book", str(e))


def fix_availability(db: Session) -> int:
    try:
        changed = recompute_all_availability(db)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("recalculate availability", str(e))
    logger.info(f"Availability recalculated for all books, {changed} corrected")
    return changed


# Students


def list_students(db: Session) -> List[models.Student]:
    try:
        return db.query(models.Student).order_by(models.Student.student_id).all()
    except SQLAlchemyError as e:
        raise DatabaseError("fetch students", str(e))


def get_student(db: Session, student_id: int, lock: bool = False) -> models.Student:
    query = db.query(models.Student).filter(models.Student.student_id == student_id)
    if lock:
        query = query.with_for_update()
    student = query.first()
    if student is None:
        raise StudentNotFoundError(student_id)
    return student


def create_student(db: Session, item: schemas.StudentCreate) -> models.Student:
    try:
        db_student = models.Student(**item.model_dump(exclude_none=True))
        db.add(db_student)
        db.commit()
        db.refresh(db_student)
        logger.info(f"Created student {db_student.student_id}")
        return db_student
    except IntegrityError:
        db.rollback()
        raise DuplicateStudentError()
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("add student", str(e))


def update_student(
    db: Session, student_id: int, item: schemas.StudentUpdate
) -> models.Student:
    try:
        student = get_student(db, student_id, lock=True)
        for field, value in item.model_dump().items():
            setattr(student, field, value)
        db.commit()
        db.refresh(student)
        return student
    except LibraryException:
        db.rollback()
        raise
    except IntegrityError:
        db.rollback()
        raise DuplicateStudentError("Another student already uses this email")
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update student", str(e))


def delete_student(db: Session, student_id: int) -> None:
    try:
        student = get_student(db, student_id, lock=True)
        active = (
            db.query(func.count(models.IssuedBook.issue_id))
            .filter(
                models.IssuedBook.student_id == student_id,
                models.IssuedBook.return_date.is_(None),
            )
            .scalar()
        )
        if active > 0:
            raise ActiveLoanConflictError(
                "Cannot delete student: books are issued by this student."
            )
        db.query(models.IssuedBook).filter(
            models.IssuedBook.student_id == student_id
        ).update({models.IssuedBook.student_id: None}, synchronize_session=False)
        db.delete(student)
        db.commit()
        logger.info(f"Deleted student {student_id} (history preserved)")
    except LibraryException:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("delete student", str(e))


# Loans


def get_loan(db: Session, issue_id: int, lock: bool = False) -> models.IssuedBook:
    query = db.query(models.IssuedBook).filter(models.IssuedBook.issue_id == issue_id)
    if lock:
        query = query.with_for_update()
    loan = query.first()
    if loan is None:
        raise LoanNotFoundError(issue_id)
    return loan


def issue_book(db: Session, request: schemas.IssueRequestSchema) -> models.IssuedBook:
    try:
        get_student(db, request.student_id)
        book = get_book(db, request.book_id, lock=True)
        if book.total_copies - count_active_loans(db, book.book_id) <= 0:
            raise BookNotAvailableError(request.book_id)

        loan = models.IssuedBook(
            student_id=request.student_id,
            book_id=request.book_id,
            issue_date=local_today(),
            due_date=request.due_date,
            status=models.STATUS_ISSUED,
        )
        db.add(loan)
        db.flush()
        recompute_availability(db, request.book_id)
        db.commit()
        db.refresh(loan)
        logger.info(
            f"Issued book {request.book_id} to student {request.student_id} "
            f"(issue {loan.issue_id}, due {loan.due_date})"
        )
        return loan
    except LibraryException:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("issue book", str(e))


def return_book(
    db: Session, issue_id: int, as_of: Optional[date] = None
) -> Tuple[models.IssuedBook, models.ReturnRecord]:
    today = as_of or local_today()
    try:
        loan = get_loan(db, issue_id, lock=True)
        if loan.return_date is not None:
            raise LoanAlreadyReturnedError(issue_id)

        fine = compute_fine(loan.due_date, today)
        record = models.ReturnRecord(
            issue_id=issue_id, return_date=today, fine_amount=fine
        )
        db.add(record)
        loan.return_date = today
        loan.status = models.STATUS_RETURNED
        db.flush()
        if loan.book_id is not None:
            recompute_availability(db, loan.book_id)
        db.commit()
        db.refresh(loan)
        db.refresh(record)
        logger.info(f"Returned issue {issue_id}, fine {fine}")
        return loan, record
    except LibraryException:
        db.rollback()
        raise
    except IntegrityError:
        # A concurrent return already wrote the record for this loan
        db.rollback()
        raise LoanAlreadyReturnedError(issue_id)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("return book", str(e))


def _loan_with_names(db: Session):
    return (
        db.query(models.IssuedBook, models.Book.title, models.Student.student_name)
        .outerjoin(models.Book, models.IssuedBook.book_id == models.Book.book_id)
        .outerjoin(
            models.Student, models.IssuedBook.student_id == models.Student.student_id
        )
    )


def get_active_loans(
    db: Session, as_of: Optional[date] = None
) -> List[schemas.IssuedBookSchema]:
    today = as_of or local_today()
    try:
        rows = (
            _loan_with_names(db)
            .filter(models.IssuedBook.return_date.is_(None))
            .order_by(models.IssuedBook.issue_id.desc())
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch issued books", str(e))

    return [
        schemas.IssuedBookSchema(
            issue_id=loan.issue_id,
            student_id=loan.student_id,
            book_id=loan.book_id,
            book_title=title,
            student_name=student_name,
            issue_date=loan.issue_date,
            due_date=loan.due_date,
            return_date=loan.return_date,
            fine_amount=compute_fine(loan.due_date, today),
            status=models.STATUS_ISSUED,
        )
        for loan, title, student_name in rows
    ]


def get_overdue_loans(
    db: Session, as_of: Optional[date] = None
) -> List[schemas.OverdueSchema]:
    today = as_of or local_today()
    try:
        rows = (
            _loan_with_names(db)
            .filter(
                models.IssuedBook.return_date.is_(None),
                models.IssuedBook.due_date.isnot(None),
                models.IssuedBook.due_date < today,
            )
            .order_by(models.IssuedBook.due_date.asc(), models.IssuedBook.issue_id)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch overdue books", str(e))

    return [
        schemas.OverdueSchema(
            issue_id=loan.issue_id,
            student_id=loan.student_id,
            book_title=title,
            student_name=student_name,
            due_date=loan.due_date,
            days_overdue=overdue_days(loan.due_date, today),
            fine_amount=compute_fine(loan.due_date, today),
        )
        for loan, title, student_name in rows
    ]


def get_return_history(db: Session) -> List[schemas.ReturnRecordSchema]:
    try:
        rows = (
            db.query(
                models.ReturnRecord,
                models.IssuedBook.student_id,
                models.Book.title,
                models.Student.student_name,
            )
            .join(
                models.IssuedBook,
                models.ReturnRecord.issue_id == models.IssuedBook.issue_id,
            )
            .outerjoin(models.Book, models.IssuedBook.book_id == models.Book.book_id)
            .outerjoin(
                models.Student,
                models.IssuedBook.student_id == models.Student.student_id,
            )
            .order_by(models.ReturnRecord.return_id.desc())
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch return history", str(e))

    return [
        schemas.ReturnRecordSchema(
            return_id=record.return_id,
            issue_id=record.issue_id,
            student_id=student_id,
            book_title=title,
            student_name=student_name,
            return_date=record.return_date,
            fine_amount=record.fine_amount,
        )
        for record, student_id, title, student_name in rows
    ]


def get_stats(db: Session, as_of: Optional[date] = None) -> schemas.StatsSchema:
    today = as_of or local_today()
    active = models.IssuedBook.return_date.is_(None)
    try:
        return schemas.StatsSchema(
            total_books=db.query(func.count(models.Book.book_id)).scalar() or 0,
            available_books=db.query(
                func.coalesce(func.sum(models.Book.available_copies), 0)
            ).scalar(),
            total_students=db.query(func.count(models.Student.student_id)).scalar()
            or 0,
            books_issued=db.query(func.count(models.IssuedBook.issue_id))
            .filter(active)
            .scalar()
            or 0,
            overdue_books=db.query(func.count(models.IssuedBook.issue_id))
            .filter(active, models.IssuedBook.due_date < today)
            .scalar()
            or 0,
            returned_books=db.query(func.count(models.ReturnRecord.return_id)).scalar()
            or 0,
            total_fine=db.query(
                func.coalesce(func.sum(models.ReturnRecord.fine_amount), 0)
            ).scalar(),
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch stats", str(e))
