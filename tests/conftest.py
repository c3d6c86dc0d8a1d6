"""
Pytest configuration and shared fixtures for the QR code service tests.
"""
import os
import tempfile

# Keep the application engine away from the package data directory
os.environ.setdefault(
    "DATABASE_URL", f"sqlite:///{os.path.join(tempfile.gettempdir(), 'obatku_qr_pytest.db')}"
)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from obatku_core.app.db import create_db_and_tables, engine_options
from obatku_core.app.main import create_app
from obatku_core.app.models import User, MedicineStock
from obatku_core.app.security import get_db, get_password_hash, create_access_token
from obatku_core.app.services.code_format import ClassificationKey

ADMIN_PASSWORD = "Admin12345"

MASTER_NAMES = {
    "funding_source_name": "APBN",
    "medicine_type_name": "Farmasi",
    "active_ingredient_name": "Oxytetracycline",
    "producer_name": "Bio Farma",
}


@pytest.fixture
def key():
    return ClassificationKey("1", "F", "111", "B")


@pytest.fixture
def names():
    return dict(MASTER_NAMES)


@pytest.fixture(scope="function")
def engine():
    """A temporary SQLite file per test."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    url = f"sqlite:///{db_path}"
    test_engine = create_engine(url, **engine_options(url))
    create_db_and_tables(bind=test_engine)

    yield test_engine

    test_engine.dispose()
    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_stock(db_session):
    """Create a medicine stock batch for scans to draw from."""
    def _make(batch_number="BATCH-001", available_quantity=10, unit_size=1, medicine_name="Oxytetracycline 10ml"):
        stock = MedicineStock(
            batch_number=batch_number,
            medicine_name=medicine_name,
            available_quantity=available_quantity,
            unit_size=unit_size,
        )
        db_session.add(stock)
        db_session.commit()
        return stock
    return _make


def _make_user(session, username, role):
    user = User(
        full_name=username.title(),
        email=f"{username}@example.com",
        username=username,
        password_hash=get_password_hash(ADMIN_PASSWORD),
        role=role,
    )
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def app(session_factory):
    application = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    application.dependency_overrides[get_db] = override_get_db
    return application


@pytest.fixture
def admin_user(db_session):
    return _make_user(db_session, "admin", "Admin")


@pytest.fixture
def client(app, admin_user):
    """Test client authenticated as an Admin."""
    test_client = TestClient(app)
    token = create_access_token({"sub": admin_user.username, "role": admin_user.role})
    test_client.headers.update({"Authorization": f"Bearer {token}"})
    return test_client


@pytest.fixture
def viewer_client(app, db_session):
    viewer = _make_user(db_session, "viewer", "Viewer")
    test_client = TestClient(app)
    token = create_access_token({"sub": viewer.username, "role": viewer.role})
    test_client.headers.update({"Authorization": f"Bearer {token}"})
    return test_client
