import os

import pytest
from fastapi.testclient import TestClient

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
# Dev auth lets tests identify callers with a bare X-User-Id header.
os.environ["ALLOW_INSECURE_DEV_AUTH"] = "true"
os.environ["INTERNAL_API_KEY"] = "test-internal-key"
os.environ["CRON_SECRET"] = "test-cron-secret"

from app import models  # noqa: E402
from app.database import Base, SessionLocal, engine  # noqa: E402
from app.main import app  # noqa: E402


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def internal_headers():
    return {"X-Internal-API-Key": "test-internal-key"}


@pytest.fixture()
def make_user(db_session):
    def _make_user(user_id: str, email: str | None = None) -> models.User:
        user = models.User(id=user_id, email=email, credits=0, plan_key="free")
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user
