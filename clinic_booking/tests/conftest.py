import fnmatch
import os
from datetime import datetime, timezone

# Must be set before clinic_booking builds its module-level engine and app
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SLOT_CACHE_ENABLED"] = "0"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import RedisError
from sqlalchemy.orm import sessionmaker

from clinic_booking.app.auth import create_access_token
from clinic_booking.app.dependencies import get_db, make_engine
from clinic_booking.app.models import Base

# The day before Monday 2030-01-07
NOW = datetime(2030, 1, 6, 12, 0, tzinfo=timezone.utc)


class FakeRedis:
    """In-memory stand-in for the handful of Redis commands the slot cache uses."""

    def __init__(self, fail=False):
        self.store = {}
        self.fail = fail

    def _check(self):
        if self.fail:
            raise RedisError("connection refused")

    def get(self, key):
        self._check()
        return self.store.get(key)

    def set(self, key, value, nx=False, ex=None):
        self._check()
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    def setex(self, key, ttl, value):
        self._check()
        self.store[key] = value
        return True

    def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    def scan_iter(self, match="*"):
        self._check()
        return iter([key for key in list(self.store) if fnmatch.fnmatchcase(key, match)])


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path}/test.db")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def broken_redis():
    return FakeRedis(fail=True)


@pytest.fixture
def client(session_factory):
    from clinic_booking.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def auth_headers(ref, role):
    token = create_access_token({"sub": ref, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def doctor_headers():
    return auth_headers("doc-1", "doctor")


@pytest.fixture
def patient_headers():
    return auth_headers("pat-1", "patient")


@pytest.fixture
def admin_headers():
    return auth_headers("admin-1", "admin")
