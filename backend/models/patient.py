"""Patient profile model definitions."""

from sqlalchemy import JSON, Column, Date, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from backend.database import Base, TimestampMixin


class PatientProfile(Base, TimestampMixin):
    """Demographic and medical details owned 1:1 by a patient account."""
    __tablename__ = 'patient_profiles'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id'), unique=True, nullable=False)
    date_of_birth = Column(Date)
    gender = Column(String)  # male/female/other
    address = Column(String)
    medical_history = Column(Text, default='')
    conditions = Column(JSON, default=list)
    allergies = Column(Text, default='')
    medications = Column(Text, default='')
    emergency_contact = Column(JSON)
    insurance_info = Column(JSON)

    user = relationship('User')
