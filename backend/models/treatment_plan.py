"""Treatment plan model definitions."""

from enum import Enum

from sqlalchemy import JSON, Column, Date, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from backend.database import Base, TimestampMixin


class TreatmentPlanStatus(str, Enum):
    ACTIVE = 'active'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class TreatmentPlan(Base, TimestampMixin):
    """A therapist-authored programme of exercises for one patient."""
    __tablename__ = 'treatment_plans'

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    therapist_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, default='')
    goals = Column(JSON, default=list)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date)
    status = Column(String, nullable=False, default=TreatmentPlanStatus.ACTIVE.value)

    patient = relationship('User', foreign_keys=[patient_id])
    therapist = relationship('User', foreign_keys=[therapist_id])
    exercises = relationship(
        'TreatmentPlanExercise',
        back_populates='plan',
        cascade='all, delete-orphan',
        order_by='TreatmentPlanExercise.position',
    )


class TreatmentPlanExercise(Base):
    __tablename__ = 'treatment_plan_exercises'

    id = Column(Integer, primary_key=True)
    plan_id = Column(Integer, ForeignKey('treatment_plans.id', ondelete='CASCADE'), nullable=False, index=True)
    exercise_id = Column(Integer, ForeignKey('exercises.id'), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    sets = Column(Integer)
    reps = Column(Integer)
    frequency = Column(String)
    notes = Column(Text)

    plan = relationship('TreatmentPlan', back_populates='exercises')
    exercise = relationship('Exercise')
