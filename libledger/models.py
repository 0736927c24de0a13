from sqlalchemy import Column, Integer, String, Date, ForeignKey
from sqlalchemy.orm import relationship

from sqlalchemy.orm import declarative_base

Base = declarative_base()

STATUS_ISSUED = "Issued"
STATUS_RETURNED = "Returned"


class Book(Base):
    __tablename__ = "books"

    book_id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    author_name = Column(String, nullable=True)
    genre = Column(String, nullable=True)
    total_copies = Column(Integer, nullable=False, default=0)
    available_copies = Column(Integer, nullable=False, default=0)


class Student(Base):
    __tablename__ = "students"

    student_id = Column(Integer, primary_key=True, index=True)
    student_name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    department = Column(String, nullable=True)
    year = Column(Integer, nullable=True)
    contact_no = Column(String, nullable=True)


class IssuedBook(Base):
    __tablename__ = "issued_books"

    issue_id = Column(Integer, primary_key=True, index=True)
    student_id = Column(
        Integer, ForeignKey("students.student_id", ondelete="SET NULL"), nullable=True
    )
    book_id = Column(
        Integer, ForeignKey("books.book_id", ondelete="SET NULL"), nullable=True
    )
    issue_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=True)
    # NULL while the loan is active
    return_date = Column(Date, nullable=True)
    status = Column(String, nullable=False, default=STATUS_ISSUED)

    student = relationship("Student", back_populates="loans")
    book = relationship("Book", back_populates="loans")


class ReturnRecord(Base):
    __tablename__ = "return_records"

    return_id = Column(Integer, primary_key=True, index=True)
    issue_id = Column(
        Integer, ForeignKey("issued_books.issue_id"), unique=True, nullable=False
    )
    return_date = Column(Date, nullable=False)
    fine_amount = Column(Integer, nullable=False, default=0)

    loan = relationship("IssuedBook", back_populates="return_record")


Student.loans = relationship("IssuedBook", back_populates="student")
Book.loans = relationship("IssuedBook", back_populates="book")
IssuedBook.return_record = relationship(
    "ReturnRecord", back_populates="loan", uselist=False
)
