import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_therapist, get_current_user
from backend.database import get_db
from backend.models.exercise import Exercise, ExerciseDifficulty
from backend.models.treatment_plan import TreatmentPlanExercise
from backend.models.user import User, UserRole
from backend.routes.common import (
    Envelope,
    conflict,
    database_unavailable,
    ensure_database_ready,
    forbidden,
    not_found,
)

router = APIRouter(tags=['exercises'])
logger = logging.getLogger(__name__)


def _required_text(value: str, label: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError(f'{label} is required.')
    return normalized


def _positive_or_none(value: int | None) -> int | None:
    if value is not None and value < 1:
        raise ValueError('Sets and reps must be positive.')
    return value


class ExerciseRequest(BaseModel):
    name: str
    category: str
    description: str = ''
    difficulty: ExerciseDifficulty = ExerciseDifficulty.BEGINNER
    instructions: str = ''
    video_url: str | None = None
    default_sets: int | None = None
    default_reps: int | None = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _required_text(value, 'Name')

    @field_validator('category')
    @classmethod
    def validate_category(cls, value: str) -> str:
        return _required_text(value, 'Category').lower()

    @field_validator('default_sets', 'default_reps')
    @classmethod
    def validate_counts(cls, value: int | None) -> int | None:
        return _positive_or_none(value)


class ExerciseUpdateRequest(BaseModel):
    name: str | None = None
    category: str | None = None
    description: str | None = None
    difficulty: ExerciseDifficulty | None = None
    instructions: str | None = None
    video_url: str | None = None
    default_sets: int | None = None
    default_reps: int | None = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str | None) -> str | None:
        return None if value is None else _required_text(value, 'Name')

    @field_validator('category')
    @classmethod
    def validate_category(cls, value: str | None) -> str | None:
        return None if value is None else _required_text(value, 'Category').lower()

    @field_validator('default_sets', 'default_reps')
    @classmethod
    def validate_counts(cls, value: int | None) -> int | None:
        return _positive_or_none(value)


class ExerciseResponse(BaseModel):
    id: int
    created_by: int
    name: str
    description: str | None = None
    category: str
    difficulty: str
    instructions: str | None = None
    video_url: str | None = None
    default_sets: int | None = None
    default_reps: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


def get_exercise_or_404(db: Session, exercise_id: int) -> Exercise:
    exercise = db.get(Exercise, exercise_id)
    if exercise is None:
        raise not_found('Exercise not found')
    return exercise


def ensure_exercise_owner(exercise: Exercise, current_user: User) -> None:
    if exercise.created_by != current_user.id:
        raise forbidden('Not authorized to modify this exercise')


@router.post('', response_model=Envelope[ExerciseResponse], status_code=status.HTTP_201_CREATED)
def create_exercise(
    data: ExerciseRequest,
    current_user: User = Depends(get_current_therapist),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    exercise = Exercise(created_by=current_user.id, **data.model_dump(mode='json'))
    try:
        db.add(exercise)
        db.commit()
        db.refresh(exercise)
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    logger.info('Therapist %s created exercise %s', current_user.id, exercise.id)
    return Envelope(message='Exercise created', data=ExerciseResponse.model_validate(exercise))


@router.get('', response_model=Envelope[list[ExerciseResponse]])
def list_exercises(
    category: str | None = Query(default=None),
    search: str | None = Query(default=None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        query = db.query(Exercise)
        if current_user.role == UserRole.PHYSIOTHERAPIST.value:
            query = query.filter(Exercise.created_by == current_user.id)
        elif current_user.role != UserRole.ADMIN.value:
            raise forbidden('You do not have permission to perform this action.')

        if category:
            query = query.filter(Exercise.category == category.strip().lower())
        if search:
            pattern = f'%{search.strip()}%'
            query = query.filter(or_(Exercise.name.ilike(pattern), Exercise.description.ilike(pattern)))

        exercises = query.order_by(Exercise.name.asc()).all()
        return Envelope(data=[ExerciseResponse.model_validate(exercise) for exercise in exercises])
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc


@router.get('/{exercise_id}', response_model=Envelope[ExerciseResponse])
def get_exercise(
    exercise_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        exercise = get_exercise_or_404(db, exercise_id)
        return Envelope(data=ExerciseResponse.model_validate(exercise))
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc


@router.put('/{exercise_id}', response_model=Envelope[ExerciseResponse])
def update_exercise(
    exercise_id: int,
    data: ExerciseUpdateRequest,
    current_user: User = Depends(get_current_therapist),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        exercise = get_exercise_or_404(db, exercise_id)
        ensure_exercise_owner(exercise, current_user)

        for field_name, value in data.model_dump(exclude_unset=True, exclude_none=True, mode='json').items():
            setattr(exercise, field_name, value)

        db.commit()
        db.refresh(exercise)
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    return Envelope(message='Exercise updated', data=ExerciseResponse.model_validate(exercise))


@router.delete('/{exercise_id}', response_model=Envelope[None])
def delete_exercise(
    exercise_id: int,
    current_user: User = Depends(get_current_therapist),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        exercise = get_exercise_or_404(db, exercise_id)
        ensure_exercise_owner(exercise, current_user)

        in_use = db.query(TreatmentPlanExercise.id).filter(
            TreatmentPlanExercise.exercise_id == exercise_id,
        ).first()
        if in_use is not None:
            raise conflict('Exercise is part of a treatment plan and cannot be deleted')

        db.delete(exercise)
        db.commit()
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    logger.info('Therapist %s deleted exercise %s', current_user.id, exercise_id)
    return Envelope(message='Exercise deleted')
