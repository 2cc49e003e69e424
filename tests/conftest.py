"""Shared fixtures for the API and service tests.

The database URL has to be set before ``eduplatform`` is imported, so every
test session runs against its own throwaway SQLite file.
"""

import itertools
import os
import tempfile
from types import SimpleNamespace

_DB_DIR = tempfile.mkdtemp(prefix="eduplatform-tests-")
os.environ["EDU_DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["EDU_JWT_SECRET"] = "test-secret-key-with-enough-bytes-for-hs256"
os.environ["EDU_SUPER_ADMIN_EMAIL"] = "root@example.com"
os.environ["EDU_SUPER_ADMIN_PASSWORD"] = "RootPass@123"

import pytest
from fastapi.testclient import TestClient

from eduplatform.app import app
from eduplatform.canvas import sessions
from eduplatform.database import Base, SessionLocal, engine
from eduplatform.models import UserRole
from eduplatform.services import create_user

PASSWORD = "Password@123"


def _login(client: TestClient, email: str, password: str) -> SimpleNamespace:
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    token = response.json()["access_token"]
    headers = {"Authorization": f"Bearer {token}"}
    me = client.get("/api/me", headers=headers).json()
    return SimpleNamespace(id=me["id"], email=email, role=me["role"], token=token, headers=headers)


@pytest.fixture
def client():
    Base.metadata.drop_all(bind=engine)
    sessions.clear()
    # Entering the client runs the lifespan, which creates tables and seeds the super admin.
    with TestClient(app) as test_client:
        yield test_client
    sessions.clear()


@pytest.fixture
def db(client):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def admin(client):
    return _login(client, "root@example.com", "RootPass@123")


@pytest.fixture
def make_user(client):
    counter = itertools.count(1)

    def _make(role: UserRole, *, school_id: int | None = None, teacher_id: int | None = None) -> SimpleNamespace:
        n = next(counter)
        email = f"{role.value}{n}@example.com"
        session = SessionLocal()
        try:
            create_user(
                session,
                email=email,
                raw_password=PASSWORD,
                role=role,
                display_name=f"{role.value.title()} {n}",
                school_id=school_id,
                teacher_id=teacher_id,
            )
        finally:
            session.close()
        return _login(client, email, PASSWORD)

    return _make


@pytest.fixture
def author(make_user):
    return make_user(UserRole.AUTHOR)


@pytest.fixture
def moderator(make_user):
    return make_user(UserRole.MODERATOR)


@pytest.fixture
def school_id(client, admin):
    response = client.post("/api/schools", json={"name": "School No. 1"}, headers=admin.headers)
    assert response.status_code == 201, response.text
    return response.json()["id"]


@pytest.fixture
def make_book(client):
    def _make(owner: SimpleNamespace, title: str = "Algebra 7", **fields) -> dict:
        response = client.post("/api/books", json={"title": title, **fields}, headers=owner.headers)
        assert response.status_code == 201, response.text
        return response.json()

    return _make


@pytest.fixture
def publish(client, moderator, admin):
    """Walk a book through the whole pipeline until it is Active."""

    def _publish(owner: SimpleNamespace, book_id: int) -> dict:
        for path, actor in (("submit", owner), ("approve", moderator), ("activate", admin)):
            response = client.post(f"/api/books/{book_id}/{path}", headers=actor.headers)
            assert response.status_code == 200, response.text
        return response.json()

    return _publish
