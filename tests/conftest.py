import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "4")
os.environ.setdefault("METRICS_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from authhub import models, oauth2
from authhub.database import Base, get_db
from authhub.main import app
from authhub.state_store import OAuthStateStore, get_state_store

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeRedis:
    """In-memory stand-in for the handful of Redis commands the state store uses."""

    def __init__(self):
        self.now = 0.0
        self._data = {}

    def advance(self, seconds):
        self.now += seconds

    def _live(self, name):
        entry = self._data.get(name)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self.now >= expires_at:
            del self._data[name]
            return None
        return value

    def set(self, name, value, ex=None):
        expires_at = self.now + ex if ex is not None else None
        self._data[name] = (value, expires_at)
        return True

    def get(self, name):
        return self._live(name)

    def getdel(self, name):
        value = self._live(name)
        self._data.pop(name, None)
        return value

    def delete(self, *names):
        removed = 0
        for name in names:
            if self._data.pop(name, None) is not None:
                removed += 1
        return removed

    def ttl(self, name):
        entry = self._data.get(name)
        if entry is None or entry[1] is None:
            return -2
        return int(entry[1] - self.now)

    def ping(self):
        return True

    def close(self):
        return None


@pytest.fixture
def session():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def state_store(fake_redis):
    return OAuthStateStore(fake_redis, ttl_seconds=300)


@pytest.fixture
def client(session, state_store):
    def override_get_db():
        try:
            yield session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_state_store] = lambda: state_store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def test_user(client):
    user_data = {
        "email": "student@example.com",
        "password": "password123",
        "full_name": "Test Student",
        "student_id": "SE123456",
    }
    res = client.post("/api/v1/auth/register", json=user_data)
    assert res.status_code == 201

    new_user = res.json()["user"]
    new_user["password"] = user_data["password"]
    return new_user


@pytest.fixture
def token(session, test_user):
    user = session.query(models.User).filter(models.User.id == test_user["id"]).first()
    return oauth2.create_access_token(user)


@pytest.fixture
def authorized_client(client, token):
    client.headers = {**client.headers, "Authorization": f"Bearer {token}"}
    return client


@pytest.fixture
def test_user2(client):
    user_data = {
        "email": "classmate@example.com",
        "password": "password123",
        "full_name": "Second Student",
    }
    res = client.post("/api/v1/auth/register", json=user_data)
    assert res.status_code == 201

    new_user = res.json()["user"]
    new_user["password"] = user_data["password"]
    return new_user


@pytest.fixture
def admin_headers(session):
    admin = models.User(
        email="admin@example.com",
        full_name="Admin",
        role=models.UserRole.ADMIN,
        primary_provider=models.AuthProvider.EMAIL,
    )
    session.add(admin)
    session.commit()
    session.refresh(admin)
    return {"Authorization": f"Bearer {oauth2.create_access_token(admin)}"}
