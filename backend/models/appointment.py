"""Appointment model definitions."""

from enum import Enum

from sqlalchemy import Column, Date, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from backend.database import Base, TimestampMixin


class AppointmentType(str, Enum):
    INITIAL = 'initial'
    FOLLOW_UP = 'follow-up'
    ASSESSMENT = 'assessment'


class AppointmentStatus(str, Enum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    CANCELLED = 'cancelled'
    COMPLETED = 'completed'


ACTIVE_STATUSES = frozenset({AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value})

ALLOWED_STATUS_TRANSITIONS = {
    AppointmentStatus.PENDING.value: frozenset({AppointmentStatus.CONFIRMED.value, AppointmentStatus.CANCELLED.value}),
    AppointmentStatus.CONFIRMED.value: frozenset({AppointmentStatus.COMPLETED.value, AppointmentStatus.CANCELLED.value}),
    AppointmentStatus.CANCELLED.value: frozenset(),
    AppointmentStatus.COMPLETED.value: frozenset(),
}


class Appointment(Base, TimestampMixin):
    """Represents a patient's claim on a therapist's time slot."""
    __tablename__ = 'appointments'
    __table_args__ = (
        Index('idx_appointments_therapist_date', 'therapist_id', 'date'),
    )

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    therapist_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    date = Column(Date, nullable=False)
    time = Column(String, nullable=False)
    type = Column(String, nullable=False, default=AppointmentType.INITIAL.value)
    notes = Column(Text, default='')
    status = Column(String, nullable=False, default=AppointmentStatus.PENDING.value)
    cancelled_by = Column(Integer, ForeignKey('users.id'))
    cancellation_reason = Column(Text)

    patient = relationship('User', foreign_keys=[patient_id])
    therapist = relationship('User', foreign_keys=[therapist_id])
