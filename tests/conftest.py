from bookhive import config, models
from bookhive.auth import hash_password
from bookhive.client import LibraryClient
from bookhive.clock import get_now, get_today
from bookhive.database import Base, get_db
from bookhive.endpoints import app

from datetime import date, datetime, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient


SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

PASSWORD = "secret-pass"


def override_get_db():
    """
    Override function for the database dependency.

    This replaces the normal get_db() with one that uses the test database.
    FastAPI's dependency injection will call this instead during tests.
    """
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


class FakeClock:
    """Controllable replacement for the clock dependencies."""

    def __init__(self, today: date):
        self.today = today

    def now(self) -> datetime:
        return datetime.combine(self.today, time(9, 0))


@pytest.fixture(autouse=True)
def setup_database():
    """
    Fixture to set up and tear down the database for each test.

    Internal Working:
    1. autouse=True: This fixture runs automatically before each test
    2. Before yield: Create all tables in the test database
    3. yield: Control passes to the test function
    4. After yield: Drop all tables to ensure clean slate for next test
    """
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clock():
    """Pin "today" to 2024-01-01; tests move it forward by assigning ``clock.today``."""
    fake = FakeClock(date(2024, 1, 1))
    app.dependency_overrides[get_today] = lambda: fake.today
    app.dependency_overrides[get_now] = fake.now
    yield fake
    app.dependency_overrides.pop(get_today, None)
    app.dependency_overrides.pop(get_now, None)


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    directory = tmp_path / "uploads"
    monkeypatch.setattr(config, "UPLOAD_DIR", directory)
    return directory


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    """
    Factory fixture inserting a user straight into the test database.

    Returns:
        Function (email, role="student", ...) -> models.User
    """

    def _make(email, role="student", name=None, student_id=None, password=PASSWORD):
        user = models.User(
            email=email,
            name=name or email.split("@")[0].title(),
            role=role,
            student_id=student_id,
            password_hash=hash_password(password),
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_book(db):
    def _make(title="Intro to Algorithms", author="Cormen", loan_days=14, copies=1, isbn=None):
        book = models.Book(
            title=title,
            author=author,
            isbn=isbn,
            loan_days=loan_days,
            total_copies=copies,
            available_copies=copies,
        )
        db.add(book)
        db.commit()
        db.refresh(book)
        return book

    return _make


@pytest.fixture
def login():
    """
    Factory fixture returning a signed-in LibraryClient per user.

    Each client gets its own TestClient, so each one has its own cookie jar
    and therefore its own session.
    """
    clients = []

    def _login(user, password=PASSWORD, remember_store=None):
        client = LibraryClient(http=TestClient(app), remember_store=remember_store)
        client.login(user.email, password)
        clients.append(client)
        return client

    yield _login
    for client in clients:
        client.close()


@pytest.fixture
def student(make_user):
    return make_user("alice@school.edu", student_id="S-1001")


@pytest.fixture
def other_student(make_user):
    return make_user("bob@school.edu", student_id="S-1002")


@pytest.fixture
def librarian(make_user):
    return make_user("libby@school.edu", role="librarian")


@pytest.fixture
def admin(make_user):
    return make_user("root@school.edu", role="admin")
