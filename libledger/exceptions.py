from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

logger = logging.getLogger(__name__)


class LibraryException(Exception):
    """Base exception for library-related errors."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


# Not found


class BookNotFoundError(LibraryException):
    """Raised when a book is not found in the database."""

    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, book_id: int):
        self.book_id = book_id
        super().__init__(f"Book with id {book_id} not found")


class StudentNotFoundError(LibraryException):
    """Raised when a student is not found in the database."""

    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, student_id: int):
        self.student_id = student_id
        super().__init__(f"Student with id {student_id} not found")


class LoanNotFoundError(LibraryException):
    """Raised when an issue record is not found in the database."""

    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, issue_id: int):
        self.issue_id = issue_id
        super().__init__(f"Issue record with id {issue_id} not found")


# Conflicts


class ActiveLoanConflictError(LibraryException):
    """Raised when a delete would orphan a loan that is still out."""

    def __init__(self, message: str):
        super().__init__(message)


class BookNotAvailableError(LibraryException):
    """Raised when a book has no free copy left to issue."""

    def __init__(self, book_id: int):
        self.book_id = book_id
        super().__init__(f"Book with id {book_id} has no available copies")


class LoanAlreadyReturnedError(LibraryException):
    def __init__(self, issue_id: int):
        self.issue_id = issue_id
        super().__init__(f"Issue record {issue_id} has already been returned")


class DuplicateStudentError(LibraryException):
    def __init__(self, message: str = "Duplicate email or duplicate student ID!"):
        super().__init__(message)


class CopiesBelowActiveLoansError(LibraryException):
    def __init__(self, book_id: int, requested: int, active: int):
        self.book_id = book_id
        super().__init__(
            f"Cannot set total copies of book {book_id} to {requested}: "
            f"{active} copies are currently issued"
        )


# Store failures


class DatabaseError(LibraryException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, operation: str, details: str):
        self.operation = operation
        self.details = details
        super().__init__(f"Database error during {operation}: {details}")


# Exception handlers


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error(f"HTTP error {exc.status_code}: {exc.detail}")
    return error_response(exc.status_code, str(exc.detail))


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    logger.error(f"Request validation error: {errors}")
    if not errors:
        return error_response(400, "Invalid request parameters. Please check your input.")
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    if first.get("type") == "missing":
        message = f"Missing required field: {field}"
    else:
        message = f"Invalid value for {field}: {first.get('msg')}"
    return error_response(400, message)


async def response_validation_exception_handler(
    request: Request, exc: ResponseValidationError
):
    logger.error(f"Response validation error: {exc.errors()}")
    return error_response(
        500, "The server encountered an unexpected error. Please contact support."
    )


async def database_exception_handler(request: Request, exc: DatabaseError):
    logger.error(f"Store failure on {request.url.path}: {exc}")
    return error_response(
        exc.status_code, f"Failed to {exc.operation}. Please try again later."
    )


async def library_exception_handler(request: Request, exc: LibraryException):
    if exc.status_code >= 500:
        logger.error(f"Library error: {exc}")
    else:
        logger.warning(f"Library error: {exc}")
    return error_response(exc.status_code, exc.message)


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {str(exc)}")
    return error_response(500, "An unexpected error occurred. Please contact support.")


def add_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(
        ResponseValidationError, response_validation_exception_handler
    )
    app.add_exception_handler(Exception, general_exception_handler)
    app.add_exception_handler(DatabaseError, database_exception_handler)
    app.add_exception_handler(LibraryException, library_exception_handler)
