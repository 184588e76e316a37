import os
from datetime import datetime

import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from bookflix.catalog import add_book
from bookflix.main import app, get_db
from bookflix.members import create_member
from bookflix.models import Base, SubscriptionStatus, SubscriptionType
from bookflix.notifications import NotificationEmitter
from bookflix.schemas import BookCreate, MemberCreate

load_dotenv()

# File-backed SQLite so the API client and the fixtures share one database
SQLALCHEMY_DATABASE_URL = os.getenv("TEST_DB_URL", "sqlite:///./test.db")

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function", autouse=True)
def create_test_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def client():
    app.state.testing = True
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.state.testing = False
    app.dependency_overrides.clear()


@pytest.fixture
def now():
    return datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
def notifier(db_session):
    return NotificationEmitter(db_session)


@pytest.fixture
def make_member(db_session):
    created = []

    def _make(
        subscription_type=SubscriptionType.FREE,
        subscription_status=SubscriptionStatus.ACTIVE,
    ):
        n = len(created) + 1
        member = create_member(
            db_session,
            MemberCreate(
                email=f"reader{n}@example.com",
                name=f"Reader {n}",
                subscription_type=subscription_type,
                subscription_status=subscription_status,
            ),
        )
        created.append(member)
        return member

    return _make


@pytest.fixture
def member(make_member):
    return make_member()


@pytest.fixture
def premium_member(make_member):
    return make_member(SubscriptionType.MONTHLY)


@pytest.fixture
def make_book(db_session):
    created = []

    def _make(copies=1, title=None):
        n = len(created) + 1
        book = add_book(
            db_session,
            BookCreate(
                title=title or f"Test Book {n}",
                author="Test Author",
                isbn=f"978000000{n:04d}",
                category="Fiction",
                copies=copies,
            ),
        )
        created.append(book)
        return book

    return _make


@pytest.fixture
def book(make_book):
    return make_book(copies=1)
