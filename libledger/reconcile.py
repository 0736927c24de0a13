"""Availability and fine reconciliation.

Every endpoint that touches loans or copy counts goes through this module so
that ``available_copies`` is always derived the same way:

    available_copies = total_copies - active loans of the book

and overdue fines are always measured in whole local calendar days.

Nothing here commits; callers run these helpers inside their own session
transaction and commit once.
"""

import os
import logging
from datetime import date, datetime
from typing import Optional, Tuple, Union
from zoneinfo import ZoneInfo

from dotenv import load_dotenv
from sqlalchemy import func
from sqlalchemy.orm import Session

from libledger import models

load_dotenv()

logger = logging.getLogger(__name__)

FINE_RATE = int(os.getenv("FINE_RATE", "10"))
LIBRARY_TZ = os.getenv("LIBRARY_TZ") or None

DateLike = Union[date, datetime, str]


def _library_zone() -> Optional[ZoneInfo]:
    return ZoneInfo(LIBRARY_TZ) if LIBRARY_TZ else None


def local_today() -> date:
    """Today's date on the library's wall calendar."""
    return datetime.now(_library_zone()).date()


def to_local_date(value: DateLike) -> date:
    """Normalize a date, datetime or ISO string to a plain local date.

    Aware datetimes are shifted into the library time zone before the time
    part is dropped, so ``2024-01-01T23:30:00-05:00`` lands on the calendar
    day a librarian in ``LIBRARY_TZ`` would see.
    """
    if isinstance(value, str):
        value = value.strip()
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"Not an ISO date: {value!r}")
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(_library_zone())
        return value.date()
    if isinstance(value, date):
        return value
    raise TypeError(f"Cannot interpret {type(value).__name__} as a date")


def overdue_days(due_date: Optional[DateLike], as_of: Optional[DateLike] = None) -> int:
    if due_date is None:
        return 0
    due = to_local_date(due_date)
    today = to_local_date(as_of) if as_of is not None else local_today()
    return max(0, (today - due).days)


def compute_fine(
    due_date: Optional[DateLike],
    as_of: Optional[DateLike] = None,
    rate: int = FINE_RATE,
) -> int:
    """Fine owed on a loan due ``due_date`` when settled on ``as_of``.

    Returning on the due date itself costs nothing; each whole day after it
    costs ``rate``.
    """
    return overdue_days(due_date, as_of) * rate


def resize_copies(old_total: int, old_available: int, new_total: int) -> int:
    """Available count after changing a book's total from old_total to new_total.

    Added copies are free straight away. On shrink the available count is
    clamped to the new total and never goes below zero.
    """
    if new_total > old_total:
        return old_available + (new_total - old_total)
    return max(0, min(old_available, new_total))


def count_active_loans(db: Session, book_id: int) -> int:
    return (
        db.query(func.count(models.IssuedBook.issue_id))
        .filter(
            models.IssuedBook.book_id == book_id,
            models.IssuedBook.return_date.is_(None),
        )
        .scalar()
    )


def _derive_available(book: models.Book, active: int) -> int:
    available = book.total_copies - active
    if available < 0:
        logger.warning(
            f"Book {book.book_id} has {active} active loans but only "
            f"{book.total_copies} copies; clamping availability to 0"
        )
        return 0
    return available


def recompute_availability(db: Session, book_id: int) -> Optional[models.Book]:
    """Re-derive available_copies for one book from the loan ledger.

    Unknown ids are ignored and ``None`` is returned.
    """
    book = db.query(models.Book).filter(models.Book.book_id == book_id).first()
    if book is None:
        return None
    book.available_copies = _derive_available(book, count_active_loans(db, book_id))
    return book


def recompute_all_availability(db: Session) -> int:
    """Repair available_copies for every book; returns how many changed."""
    active_by_book = dict(
        db.query(models.IssuedBook.book_id, func.count(models.IssuedBook.issue_id))
        .filter(
            models.IssuedBook.return_date.is_(None),
            models.IssuedBook.book_id.isnot(None),
        )
        .group_by(models.IssuedBook.book_id)
        .all()
    )
    changed = 0
    for book in db.query(models.Book).all():
        available = _derive_available(book, active_by_book.get(book.book_id, 0))
        if book.available_copies != available:
            book.available_copies = available
            changed += 1
    return changed


def find_book_by_title(db: Session, title: str) -> Optional[models.Book]:
    return (
        db.query(models.Book)
        .filter(
            func.lower(func.trim(models.Book.title))
            == func.lower(func.trim(title.strip()))
        )
        .order_by(models.Book.book_id)
        .with_for_update()
        .first()
    )


def merge_or_create_book(
    db: Session,
    title: str,
    author_name: Optional[str],
    genre: Optional[str],
    copies: int,
) -> Tuple[models.Book, bool]:
    """Add ``copies`` of a title, merging into an existing row when one matches.

    Returns the affected book and ``True`` when an existing row was merged.
    """
    book = find_book_by_title(db, title)
    if book is not None:
        book.total_copies += copies
        book.available_copies += copies
        return book, True

    book = models.Book(
        title=title.strip(),
        author_name=author_name,
        genre=genre,
        total_copies=copies,
        available_copies=copies,
    )
    db.add(book)
    db.flush()
    return book, False
