import os
import pytest
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from librarian.config import settings
from librarian.crud.books import create_book
from librarian.crud.members import create_member
from librarian.crud.racks import create_rack
from librarian.main import app, get_db
from librarian.models import Base
from librarian.schemas import BookCreate, MemberCreate, RackCreate
from librarian.storage import make_engine

# File-backed so that separate sessions and threads see the same data
SQLALCHEMY_DATABASE_URL = os.getenv("TEST_DB_URL", "sqlite:///./test.db")

engine = make_engine(SQLALCHEMY_DATABASE_URL)
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


@pytest.fixture(scope="function")
def session_factory(db_session):
    return TestingSessionLocal


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


@pytest.fixture
def auth_headers():
    return {"X-API-Key": settings.api_key}


@pytest.fixture(scope="function")
def test_rack(db_session):
    rack_data = RackCreate(
        rack_number="A1", location="Ground floor, north wall", capacity=50, shelves=4
    )
    return create_rack(db_session, rack_data)


@pytest.fixture(scope="function")
def test_book(db_session, test_rack):
    book_data = BookCreate(
        title="Things Fall Apart",
        author="Chinua Achebe",
        isbn="9780385474542",
        publisher="Heinemann",
        publication_year=1958,
        category="Fiction",
        language="English",
        description="A novel about Okonkwo and the village of Umuofia",
        copies=2,
        rack_number=test_rack.rack_number,
        shelf_number="1",
    )
    return create_book(db_session, book_data)


@pytest.fixture(scope="function")
def test_copy(test_book):
    return test_book.copies[0]


@pytest.fixture(scope="function")
def test_member(db_session):
    member_data = MemberCreate(
        first_name="Test",
        last_name="User",
        email="test@example.com",
        phone="555-0100",
        city="Lagos",
    )
    return create_member(db_session, member_data)
