"""Progress record model definitions."""

from sqlalchemy import Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from backend.database import Base, TimestampMixin


class ProgressEntry(Base, TimestampMixin):
    """A patient's self-reported progress against a treatment plan."""
    __tablename__ = 'progress_entries'

    id = Column(Integer, primary_key=True)
    treatment_plan_id = Column(Integer, ForeignKey('treatment_plans.id'), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    notes = Column(Text, default='')
    pain_level = Column(Integer)
    mobility = Column(String)
    strength = Column(String)
    media_url = Column(String)
    media_key = Column(String)
    media_type = Column(String)  # image/video

    treatment_plan = relationship('TreatmentPlan')
