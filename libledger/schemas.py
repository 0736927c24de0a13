from datetime import date
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional

from libledger.reconcile import to_local_date


class BookBase(BaseModel):
    title: str = Field(..., min_length=1)
    author_name: Optional[str] = None
    genre: Optional[str] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be blank")
        return v.strip()


class BookCreate(BookBase):
    total_copies: int = Field(..., gt=0)


class BookUpdate(BookBase):
    author_name: str = Field(..., min_length=1)
    genre: str = Field(..., min_length=1)
    total_copies: int = Field(..., ge=0)


class BookSchema(BookBase):
    book_id: int
    total_copies: int
    available_copies: int

    class Config:
        from_attributes = True


class StudentBase(BaseModel):
    student_name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    department: Optional[str] = None
    year: Optional[int] = None
    contact_no: Optional[str] = None


class StudentCreate(StudentBase):
    student_id: Optional[int] = Field(None, gt=0)


class StudentUpdate(StudentBase):
    pass


class StudentSchema(StudentBase):
    student_id: int

    class Config:
        from_attributes = True


class IssueRequestSchema(BaseModel):
    student_id: int
    book_id: int
    due_date: Optional[date] = None

    @field_validator("due_date", mode="before")
    @classmethod
    def normalize_due_date(cls, v):
        if v is None or v == "":
            return None
        if isinstance(v, (str, date)):
            return to_local_date(v)
        return v


class ReturnRequestSchema(BaseModel):
    issue_id: int


class IssuedBookSchema(BaseModel):
    issue_id: int
    student_id: Optional[int] = None
    book_id: Optional[int] = None
    book_title: Optional[str] = None
    student_name: Optional[str] = None
    issue_date: date
    due_date: Optional[date] = None
    return_date: Optional[date] = None
    fine_amount: int
    status: str


class ReturnRecordSchema(BaseModel):
    return_id: int
    issue_id: int
    student_id: Optional[int] = None
    book_title: Optional[str] = None
    student_name: Optional[str] = None
    return_date: date
    fine_amount: int


class OverdueSchema(BaseModel):
    issue_id: int
    student_id: Optional[int] = None
    book_title: Optional[str] = None
    student_name: Optional[str] = None
    due_date: date
    days_overdue: int
    fine_amount: int


class StatsSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_books: int = Field(alias="totalBooks")
    available_books: int = Field(alias="availableBooks")
    total_students: int = Field(alias="totalStudents")
    books_issued: int = Field(alias="booksIssued")
    overdue_books: int = Field(alias="overdueBooks")
    returned_books: int = Field(alias="returnedBooks")
    total_fine: int = Field(alias="totalFine")


# Responses


class SuccessSchema(BaseModel):
    success: bool = True
    message: Optional[str] = None


class BookAddedSchema(SuccessSchema):
    book_id: int
    merged: bool


class BookUpdatedSchema(SuccessSchema):
    total_copies: int
    available_copies: int


class StudentCreatedSchema(SuccessSchema):
    student_id: int


class IssueCreatedSchema(SuccessSchema):
    issue_id: int


class ReturnCreatedSchema(SuccessSchema):
    fine: int


class AvailabilityFixedSchema(SuccessSchema):
    updated: int
