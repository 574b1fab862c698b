"""User model definitions."""

from enum import Enum

from sqlalchemy import JSON, Column, Integer, String, Text

from backend.core.scheduling import DEFAULT_APPOINTMENT_DURATION_MINUTES
from backend.database import Base, TimestampMixin


class UserRole(str, Enum):
    PATIENT = 'patient'
    PHYSIOTHERAPIST = 'physiotherapist'
    ADMIN = 'admin'


class ApprovalStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class User(Base, TimestampMixin):
    """Represents an application user.

    Physiotherapist profile fields live on the same row; patient medical
    data is kept in ``PatientProfile``.
    """
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False, default='')
    phone = Column(String)
    status = Column(String, nullable=False, default=ApprovalStatus.APPROVED.value)
    profile_picture_url = Column(String)
    profile_picture_key = Column(String)

    specialization = Column(String)
    experience = Column(Integer)
    license_number = Column(String)
    clinic_name = Column(String)
    clinic_address = Column(String)
    bio = Column(Text)
    working_days = Column(JSON, default=list)
    working_hours_start = Column(String, default='09:00')
    working_hours_end = Column(String, default='17:00')
    appointment_duration = Column(Integer, default=DEFAULT_APPOINTMENT_DURATION_MINUTES)
