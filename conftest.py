import os
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient
from libledger.main import app, get_db
from libledger.models import Base
from libledger.crud import add_book, create_student
from libledger.schemas import BookCreate, StudentCreate
from libledger.storage import register_sqlite_functions

# File-backed SQLite so the app's sessions and the test session share data
SQLALCHEMY_DATABASE_URL = os.getenv("TEST_DB_URL", "sqlite:///./test.db")

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
register_sqlite_functions(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="session", autouse=True)
def create_test_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def client(db_session):
    app.state.testing = True
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.state.testing = False
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_student(db_session):
    student_data = StudentCreate(
        student_name="Test Student",
        email="test@example.com",
        department="Physics",
        year=2,
        contact_no="5550100",
    )
    return create_student(db_session, student_data)


@pytest.fixture(scope="function")
def test_book(db_session):
    book_data = BookCreate(
        title="Test Book",
        author_name="Test Author",
        genre="Test Genre",
        total_copies=3,
    )
    book, _ = add_book(db_session, book_data)
    return book
