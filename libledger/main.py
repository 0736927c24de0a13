import os
from contextlib import asynccontextmanager
import logging
from fastapi import FastAPI, Depends, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from dotenv import load_dotenv

from libledger import crud
from libledger.exceptions import add_exception_handlers
from libledger.models import Base
from libledger.schemas import (
    AvailabilityFixedSchema,
    BookAddedSchema,
    BookCreate,
    BookSchema,
    BookUpdate,
    BookUpdatedSchema,
    IssueCreatedSchema,
    IssueRequestSchema,
    IssuedBookSchema,
    OverdueSchema,
    ReturnCreatedSchema,
    ReturnRecordSchema,
    ReturnRequestSchema,
    StatsSchema,
    StudentCreate,
    StudentCreatedSchema,
    StudentSchema,
    StudentUpdate,
    SuccessSchema,
)
from libledger.storage import SessionLocal, engine

from typing import List

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
load_dotenv()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        logger.info("Creating library tables if missing")
        Base.metadata.create_all(bind=engine)
    yield
    if not app.state.testing:
        logger.info("Disposing database connection pool")
        engine.dispose()


app = FastAPI(
    title="Library Ledger API",
    lifespan=lifespan,
    description="Books, students, loans and returns with live availability and fines",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)

add_exception_handlers(app)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Books
@app.get("/books", response_model=List[BookSchema])
def list_books(db: Session = Depends(get_db)):
    return crud.list_books(db)


@app.post("/books", response_model=BookAddedSchema, status_code=status.HTTP_201_CREATED)
def add_book(book: BookCreate, response: Response, db: Session = Depends(get_db)):
    db_book, merged = crud.add_book(db, book)
    if merged:
        response.status_code = status.HTTP_200_OK
        message = "Book already exists, added extra copies."
    else:
        message = "New book added successfully"
    return BookAddedSchema(message=message, book_id=db_book.book_id, merged=merged)


@app.put("/books/{book_id}", response_model=BookUpdatedSchema)
def edit_book(book_id: int, book: BookUpdate, db: Session = Depends(get_db)):
    db_book = crud.update_book(db, book_id, book)
    return BookUpdatedSchema(
        message="Book updated successfully",
        total_copies=db_book.total_copies,
        available_copies=db_book.available_copies,
    )


@app.delete("/books/{book_id}", response_model=SuccessSchema)
def remove_book(book_id: int, db: Session = Depends(get_db)):
    crud.delete_book(db, book_id)
    return SuccessSchema(message="Book deleted successfully")


# Students
@app.get("/students", response_model=List[StudentSchema])
def list_students(db: Session = Depends(get_db)):
    return crud.list_students(db)


@app.post(
    "/students",
    response_model=StudentCreatedSchema,
    status_code=status.HTTP_201_CREATED,
)
def create_student(student: StudentCreate, db: Session = Depends(get_db)):
    db_student = crud.create_student(db, student)
    return StudentCreatedSchema(student_id=db_student.student_id)


@app.put("/students/{student_id}", response_model=SuccessSchema)
def edit_student(student_id: int, student: StudentUpdate, db: Session = Depends(get_db)):
    crud.update_student(db, student_id, student)
    return SuccessSchema(message="Student updated successfully")


@app.delete("/students/{student_id}", response_model=SuccessSchema)
def remove_student(student_id: int, db: Session = Depends(get_db)):
    crud.delete_student(db, student_id)
    return SuccessSchema(message="Student deleted successfully (history preserved).")


# Loans
@app.post(
    "/issued", response_model=IssueCreatedSchema, status_code=status.HTTP_201_CREATED
)
def issue_book(issue_request: IssueRequestSchema, db: Session = Depends(get_db)):
    loan = crud.issue_book(db, issue_request)
    return IssueCreatedSchema(issue_id=loan.issue_id)


@app.get("/issued", response_model=List[IssuedBookSchema])
def list_issued_books(db: Session = Depends(get_db)):
    return crud.get_active_loans(db)


@app.post(
    "/returns", response_model=ReturnCreatedSchema, status_code=status.HTTP_201_CREATED
)
def return_book(return_request: ReturnRequestSchema, db: Session = Depends(get_db)):
    _, record = crud.return_book(db, return_request.issue_id)
    fine = record.fine_amount
    message = "Book returned successfully"
    if fine > 0:
        message += f", fine: {fine}"
    return ReturnCreatedSchema(message=message, fine=fine)


@app.get("/returns", response_model=List[ReturnRecordSchema])
def list_returns(db: Session = Depends(get_db)):
    return crud.get_return_history(db)


@app.get("/overdue", response_model=List[OverdueSchema])
def list_overdue(db: Session = Depends(get_db)):
    return crud.get_overdue_loans(db)


@app.get("/stats", response_model=StatsSchema)
def library_stats(db: Session = Depends(get_db)):
    return crud.get_stats(db)


@app.get("/fix-availability", response_model=AvailabilityFixedSchema)
def fix_availability(db: Session = Depends(get_db)):
    updated = crud.fix_availability(db)
    return AvailabilityFixedSchema(
        message="Book availability recalculated for all books", updated=updated
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("LIBRARY_PORT", "4000"))
    logger.info(f"Starting library server on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
