import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["NOTIFICATION_BACKEND"] = "log"
os.environ["RATE_LIMIT_BACKEND"] = "memory"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.testclient import TestClient

from database import Base
from deps import get_db
from main import app
from Assignment_module import Assignment_crud
from Auth_module.auth_user import CurrentUser, Role
from Auth_module.security import create_access_token
from Consent_module.Consent_router import get_consent_workflow
from Consent_module.Consent_workflow import ConsentOtpWorkflow
from Notification_module.Notification_dispatcher import NotificationDispatcher
from Utils import rate_limiter

PATIENT_ID = "patient-1"
PRIMARY_DOCTOR_ID = "doctor-primary"
SECONDARY_DOCTOR_ID = "doctor-secondary"
START = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class SequentialCodes:
    """Deterministic 6-digit codes: 100000, 100001, ..."""

    def __init__(self, start: int = 100000, codes=None):
        self.next_value = start
        self.scripted = list(codes or [])
        self.issued = []

    def __call__(self) -> str:
        if self.scripted:
            code = self.scripted.pop(0)
        else:
            code = str(self.next_value)
            self.next_value += 1
        self.issued.append(code)
        return code


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        self.sms = []
        self.emails = []
        self.sms_result = (True, None)
        self.email_result = (True, None)
        self.raise_on_sms = None

    def send_sms(self, phone, message):
        if self.raise_on_sms is not None:
            raise self.raise_on_sms
        self.sms.append((phone, message))
        return self.sms_result

    def send_email(self, address, subject, body):
        self.emails.append((address, subject, body))
        return self.email_result


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def db_session(engine):
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codes():
    return SequentialCodes()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def workflow(db_session, dispatcher, clock, codes):
    return ConsentOtpWorkflow(
        db_session,
        dispatcher,
        clock=clock,
        code_generator=codes,
        expiry_minutes=15,
        max_attempts=3,
        cas_retries=3,
    )


@pytest.fixture
def assignment(db_session):
    return Assignment_crud.create_assignment(
        db_session,
        patient_id=PATIENT_ID,
        primary_doctor_id=PRIMARY_DOCTOR_ID,
        secondary_doctor_id=SECONDARY_DOCTOR_ID,
        patient_phone="+15550001111",
        patient_email="patient@example.com",
    )


@pytest.fixture
def primary_doctor():
    return CurrentUser(user_id="user-primary", role=Role.DOCTOR, profile_id=PRIMARY_DOCTOR_ID)


@pytest.fixture
def other_doctor():
    return CurrentUser(user_id="user-other", role=Role.DOCTOR, profile_id="doctor-unrelated")


@pytest.fixture
def patient_user():
    return CurrentUser(user_id="user-patient", role=Role.PATIENT, profile_id=PATIENT_ID)


@pytest.fixture
def system_admin():
    return CurrentUser(user_id="user-admin", role=Role.SYSTEM_ADMIN)


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    rate_limiter.set_rate_limiter(None)
    yield
    rate_limiter.set_rate_limiter(None)


def auth_headers(user: CurrentUser) -> dict:
    claims = {"sub": user.user_id, "role": user.role.value}
    if user.profile_id is not None:
        claims["profile_id"] = user.profile_id
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


@pytest.fixture
def client(db_session, dispatcher, codes):
    def override_get_db():
        yield db_session

    def override_get_consent_workflow():
        return ConsentOtpWorkflow(db_session, dispatcher, code_generator=codes)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_consent_workflow] = override_get_consent_workflow
    # No context manager: lifespan (migrations) is not run against the test database
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()
