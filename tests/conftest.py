import io
import os
from datetime import date, timedelta

import pytest
from fastapi import UploadFile
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.datastructures import Headers

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')
os.environ.setdefault('LOCAL_STORAGE_ROOT', './test-media')

from backend.auth.passwords import hash_password  # noqa: E402
from backend.database import Base  # noqa: E402
from backend.models import (  # noqa: E402,F401
    appointment,
    availability,
    exercise,
    outbox,
    patient,
    progress,
    treatment_plan,
)
from backend.models.availability import AvailabilitySlot  # noqa: E402
from backend.models.user import ApprovalStatus, User, UserRole  # noqa: E402
from backend.services.storage import StorageError  # noqa: E402

ALL_WEEKDAYS = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']
TEST_PASSWORD = 'correct-horse'


@pytest.fixture(autouse=True)
def skip_schema_bootstrap(monkeypatch) -> None:
    monkeypatch.setattr('backend.routes.common.ensure_schema', lambda: None)


@pytest.fixture
def db_engine():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, autocommit=False)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def create_user(db, role: UserRole, email: str, **fields) -> User:
    user = User(
        email=email,
        hashed_password=fields.pop('hashed_password', hash_password(TEST_PASSWORD)),
        role=role.value,
        name=fields.pop('name', email.split('@')[0].title()),
        status=fields.pop('status', ApprovalStatus.APPROVED.value),
        **fields,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def therapist(db_session) -> User:
    return create_user(
        db_session,
        UserRole.PHYSIOTHERAPIST,
        'therapist@clinic.test',
        name='Dana Therapist',
        specialization='Sports',
        working_days=ALL_WEEKDAYS,
        working_hours_start='09:00',
        working_hours_end='10:00',
        appointment_duration=30,
    )


@pytest.fixture
def patient(db_session) -> User:
    return create_user(db_session, UserRole.PATIENT, 'patient@clinic.test', name='Pat Patient')


@pytest.fixture
def other_patient(db_session) -> User:
    return create_user(db_session, UserRole.PATIENT, 'other@clinic.test', name='Otto Other')


@pytest.fixture
def admin(db_session) -> User:
    return create_user(db_session, UserRole.ADMIN, 'admin@clinic.test', name='Ada Admin')


@pytest.fixture
def future_day() -> date:
    return date.today() + timedelta(days=7)


def add_slot(db, therapist: User, slot_date: date, slot_time: str, duration: int = 30) -> AvailabilitySlot:
    slot = AvailabilitySlot(
        therapist_id=therapist.id,
        date=slot_date,
        time=slot_time,
        duration_minutes=duration,
        is_booked=False,
    )
    db.add(slot)
    db.commit()
    db.refresh(slot)
    return slot


def make_upload(data: bytes = b'\x89PNG fake image', filename: str = 'photo.png', content_type: str = 'image/png') -> UploadFile:
    return UploadFile(
        file=io.BytesIO(data),
        filename=filename,
        headers=Headers({'content-type': content_type}),
    )


class RecordingMailer:
    def __init__(self, fail_with: Exception | None = None):
        self.sent: list[tuple[str, str, str]] = []
        self.fail_with = fail_with

    def send(self, to: str, subject: str, html_body: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((to, subject, html_body))


class FakeStorage:
    def __init__(self, fail_put: bool = False, fail_delete: bool = False):
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_put = fail_put
        self.fail_delete = fail_delete

    def put(self, key: str, data: bytes, content_type: str) -> str:
        if self.fail_put:
            raise StorageError('bucket unavailable')
        self.objects[key] = data
        return f'https://files.test/{key}'

    def delete(self, key: str) -> None:
        if self.fail_delete:
            raise StorageError('bucket unavailable')
        self.objects.pop(key, None)
        self.deleted.append(key)


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()
