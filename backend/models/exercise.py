"""Exercise library model definitions."""

from enum import Enum

from sqlalchemy import Column, ForeignKey, Integer, String, Text

from backend.database import Base, TimestampMixin


class ExerciseDifficulty(str, Enum):
    BEGINNER = 'beginner'
    INTERMEDIATE = 'intermediate'
    ADVANCED = 'advanced'


class Exercise(Base, TimestampMixin):
    __tablename__ = 'exercises'

    id = Column(Integer, primary_key=True)
    created_by = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, default='')
    category = Column(String, nullable=False, index=True)
    difficulty = Column(String, nullable=False, default=ExerciseDifficulty.BEGINNER.value)
    instructions = Column(Text, default='')
    video_url = Column(String)
    default_sets = Column(Integer)
    default_reps = Column(Integer)
