import os
import tempfile
from pathlib import Path

# Settings are read at import time; point them at throwaway resources first.
_TMP = Path(tempfile.mkdtemp(prefix="nutriclinic-tests-"))
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["DB_INIT_MODE"] = "off"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["LOG_FILE"] = str(_TMP / "test.log")
os.environ["EMAIL_API_KEY"] = ""
os.environ["JWT_SECRET"] = "test-secret-0123456789abcdef0123456789abcdef"
os.environ["SITE_DNS"] = "https://clinic.test"
os.environ["INITIAL_ADMIN_EMAIL"] = "owner@example.com"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from nutriclinic.core.database import Base, build_engine, get_db
from nutriclinic.core.security import get_password_hash
from nutriclinic.main import app
from nutriclinic.models.user import AccountState, User, UserProfile, UserRole
from nutriclinic.services.cache import TTLCache, get_user_list_cache
from nutriclinic.services.email_service import email_service

STRONG_PASSWORD = "Str0ng!Pass"


@pytest.fixture
def db_session():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def outbox(monkeypatch):
    """Captures outgoing verification and reset emails instead of sending them."""
    sent = []

    def record(kind):
        def _send(to, code, token, ttl_minutes):
            sent.append({"kind": kind, "to": to, "code": code, "token": token})
            return {}
        return _send

    monkeypatch.setattr(email_service, "send_verification_email", record("verification"))
    monkeypatch.setattr(email_service, "send_password_reset_email", record("reset"))
    return sent


@pytest.fixture
def user_cache():
    return TTLCache(ttl_seconds=30)


@pytest.fixture
def client(db_session, outbox, user_cache):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_user_list_cache] = lambda: user_cache
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_user(db_session):
    def _make(
        email="patient@example.com",
        password=STRONG_PASSWORD,
        role=UserRole.PATIENT,
        state=AccountState.ACTIVE,
        full_name="Maria Silva",
    ):
        user = User(
            email=email,
            email_normalized=email.strip().lower(),
            password_hash=get_password_hash(password),
            role=role.value,
            state=state.value,
            session_version=0,
            display_name=full_name.split(" ")[0],
        )
        db_session.add(user)
        db_session.flush()
        db_session.add(UserProfile(user_id=user.id, full_name=full_name, phone="+5511987654321"))
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


def bearer(token):
    return {"Authorization": f"Bearer {token}"}
