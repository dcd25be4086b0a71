import os

# Configure the application before anything from ``social`` is imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["ACCESS_TOKEN_SECRET"] = "test-access-secret-0123456789abcdefghij"
os.environ["REFRESH_TOKEN_SECRET"] = "test-refresh-secret-0123456789abcdefghij"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["ROTATION_RETRY_DELAY"] = "0"
os.environ["RATE_LIMIT_ENABLED"] = "false"

import uuid

import pytest
from fastapi.testclient import TestClient

from social.api import app
from social.database import Base, SessionLocal, engine
from social.models import User
from social.tokens import get_token_codec

from helpers import TEST_PASSWORD


@pytest.fixture(autouse=True)
def fresh_database():
    """Every test starts from empty tables."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def codec():
    return get_token_codec()


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user_factory(db_session):
    """Insert a user row directly, bypassing the HTTP layer."""

    def create(username=None, email=None):
        name = username or f"user_{uuid.uuid4().hex[:10]}"
        user = User(
            username=name,
            email=email or f"{name}@example.com",
            password_hash="not-a-real-hash",
        )
        db_session.add(user)
        db_session.commit()
        return user.id

    return create


@pytest.fixture
def signed_in(client):
    """Sign up and sign in a fresh account through the API."""

    def create():
        name = f"user_{uuid.uuid4().hex[:10]}"
        email = f"{name}@mail.com"
        resp = client.post(
            "/auth/signup",
            json={"username": name, "email": email, "password": TEST_PASSWORD},
        )
        assert resp.status_code == 201
        user_id = resp.json()["id"]
        resp = client.post("/auth/signin", json={"email": email, "password": TEST_PASSWORD})
        assert resp.status_code == 200
        client.cookies.clear()
        data = resp.json()
        return {
            "id": user_id,
            "email": email,
            "username": name,
            "access": data["accessToken"],
            "refresh": data["refreshToken"],
        }

    return create
