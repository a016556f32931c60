import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from civic_identity.core.auth import create_access_token
from civic_identity.core.config import settings
from civic_identity.core.database import get_db, init_db
from civic_identity.core.face import StubFaceMatcher
from civic_identity.core.redis import RedisClient
from civic_identity.core.storage import LocalFileStorage
from civic_identity.core.totp import Rfc6238Verifier
from civic_identity.services.steps import StepProcessor, UploadedFile
from civic_identity.services.verification_store import VerificationRecordStore

JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 64


def jpeg(name="photo.jpg", data=JPEG) -> UploadedFile:
    return UploadedFile(filename=name, content_type="image/jpeg", data=data)


@pytest.fixture(autouse=True)
def test_settings(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "APP_ENV", "development")
    monkeypatch.setattr(settings, "AUTH_MODE", "production")
    monkeypatch.setattr(settings, "STORAGE_BACKEND", "local")
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setattr(settings, "FACE_MATCHER", "stub")
    monkeypatch.setattr(settings, "STUB_FACE_MATCH_SCORE", 90)
    monkeypatch.setattr(settings, "TOTP_VERIFIER", "rfc6238")
    monkeypatch.setattr(settings, "CAPTCHA_SECRET", None)
    monkeypatch.setattr(settings, "SENDGRID_API_KEY", None)
    # Redis is never reachable in tests; rate limits and cache fail open
    monkeypatch.setattr(RedisClient, "_client", None)
    monkeypatch.setattr(RedisClient, "_is_available", False)
    yield settings


class FakeRedis:
    """Dict-backed counterpart of the few commands the rate limiter and cache issue"""

    def __init__(self):
        self.values = {}
        self.ttls = {}

    def incr(self, key):
        self.values[key] = int(self.values.get(key, 0)) + 1
        return self.values[key]

    def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    def ttl(self, key):
        if key not in self.values:
            return -2
        return self.ttls.get(key, -1)

    def get(self, key):
        value = self.values.get(key)
        return None if value is None else str(value)

    def setex(self, key, ttl, value):
        self.values[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, key):
        existed = key in self.values
        self.values.pop(key, None)
        self.ttls.pop(key, None)
        return int(existed)


@pytest.fixture
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(RedisClient, "_client", fake)
    monkeypatch.setattr(RedisClient, "_is_available", True)
    return fake


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(db) -> VerificationRecordStore:
    return VerificationRecordStore(db)


@pytest.fixture
def storage(tmp_path) -> LocalFileStorage:
    return LocalFileStorage(str(tmp_path / "uploads"))


@pytest.fixture
def processor(store, storage) -> StepProcessor:
    return StepProcessor(
        store,
        storage=storage,
        face_matcher=StubFaceMatcher(score=90),
        totp_verifier=Rfc6238Verifier(),
    )


@pytest.fixture
def client(session_factory):
    from civic_identity.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def user_headers():
    token = create_access_token("user-1", email="user1@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers():
    token = create_access_token("reviewer", role="admin")
    return {"Authorization": f"Bearer {token}"}
