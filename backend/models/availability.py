"""Availability model definitions."""

from sqlalchemy import Boolean, Column, Date, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from backend.core.scheduling import DEFAULT_APPOINTMENT_DURATION_MINUTES
from backend.database import Base, TimestampMixin


class AvailabilitySlot(Base, TimestampMixin):
    """A bookable (therapist, date, time) unit.

    ``is_booked`` and ``appointment_id`` always change together: a booked slot
    points at its appointment, a free slot points at nothing.
    """
    __tablename__ = 'availability_slots'
    __table_args__ = (
        UniqueConstraint('therapist_id', 'date', 'time', name='uq_availability_therapist_date_time'),
        Index('idx_availability_therapist_booked', 'therapist_id', 'date', 'is_booked'),
    )

    id = Column(Integer, primary_key=True)
    therapist_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    date = Column(Date, nullable=False)
    time = Column(String, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=DEFAULT_APPOINTMENT_DURATION_MINUTES)
    is_booked = Column(Boolean, nullable=False, default=False)
    appointment_id = Column(Integer, ForeignKey('appointments.id'))

    therapist = relationship('User')
    appointment = relationship('Appointment')
