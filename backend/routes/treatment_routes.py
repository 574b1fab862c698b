import logging
from datetime import date, datetime

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_therapist, get_current_user
from backend.database import get_db
from backend.models.exercise import Exercise
from backend.models.progress import ProgressEntry
from backend.models.treatment_plan import TreatmentPlan, TreatmentPlanExercise, TreatmentPlanStatus
from backend.models.user import User, UserRole
from backend.routes.common import (
    Envelope,
    PartySummary,
    bad_request,
    conflict,
    database_unavailable,
    ensure_database_ready,
    forbidden,
    get_mailer,
    not_found,
)
from backend.services.notifications import queue_treatment_plan_email, relay_pending_emails

router = APIRouter(tags=['treatment-plans'])
logger = logging.getLogger(__name__)


class PlanExerciseRequest(BaseModel):
    exercise_id: int
    sets: int | None = None
    reps: int | None = None
    frequency: str | None = None
    notes: str | None = None

    @field_validator('sets', 'reps')
    @classmethod
    def validate_counts(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError('Sets and reps must be positive.')
        return value


def _clean_goals(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    return [goal.strip() for goal in value if goal and goal.strip()]


class CreateTreatmentPlanRequest(BaseModel):
    patient_id: int
    title: str
    description: str = ''
    goals: list[str] = []
    start_date: date
    end_date: date | None = None
    exercises: list[PlanExerciseRequest] = []

    @field_validator('title')
    @classmethod
    def validate_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Title is required.')
        return normalized

    @field_validator('goals')
    @classmethod
    def validate_goals(cls, value: list[str]) -> list[str]:
        return _clean_goals(value)

    @model_validator(mode='after')
    def validate_dates(self):
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError('End date must not be before start date.')
        return self


class UpdateTreatmentPlanRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    goals: list[str] | None = None
    start_date: date | None = None
    end_date: date | None = None
    status: TreatmentPlanStatus | None = None
    exercises: list[PlanExerciseRequest] | None = None

    @field_validator('title')
    @classmethod
    def validate_title(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            raise ValueError('Title is required.')
        return normalized

    @field_validator('goals')
    @classmethod
    def validate_goals(cls, value: list[str] | None) -> list[str] | None:
        return _clean_goals(value)


class PlanExerciseResponse(BaseModel):
    id: int
    exercise_id: int
    position: int
    sets: int | None = None
    reps: int | None = None
    frequency: str | None = None
    notes: str | None = None
    name: str
    category: str
    difficulty: str
    instructions: str | None = None
    video_url: str | None = None


class TreatmentPlanResponse(BaseModel):
    id: int
    patient_id: int
    therapist_id: int
    title: str
    description: str | None = None
    goals: list[str] = []
    start_date: date
    end_date: date | None = None
    status: str
    patient: PartySummary | None = None
    therapist: PartySummary | None = None
    exercises: list[PlanExerciseResponse] = []
    created_at: datetime | None = None
    updated_at: datetime | None = None


def to_plan_response(plan: TreatmentPlan) -> TreatmentPlanResponse:
    return TreatmentPlanResponse(
        id=plan.id,
        patient_id=plan.patient_id,
        therapist_id=plan.therapist_id,
        title=plan.title,
        description=plan.description,
        goals=plan.goals or [],
        start_date=plan.start_date,
        end_date=plan.end_date,
        status=plan.status,
        patient=PartySummary.model_validate(plan.patient) if plan.patient else None,
        therapist=PartySummary.model_validate(plan.therapist) if plan.therapist else None,
        exercises=[
            PlanExerciseResponse(
                id=item.id,
                exercise_id=item.exercise_id,
                position=item.position,
                sets=item.sets,
                reps=item.reps,
                frequency=item.frequency,
                notes=item.notes,
                name=item.exercise.name,
                category=item.exercise.category,
                difficulty=item.exercise.difficulty,
                instructions=item.exercise.instructions,
                video_url=item.exercise.video_url,
            )
            for item in plan.exercises
        ],
        created_at=plan.created_at,
        updated_at=plan.updated_at,
    )


def get_plan_or_404(db: Session, plan_id: int) -> TreatmentPlan:
    plan = db.get(TreatmentPlan, plan_id)
    if plan is None:
        raise not_found('Treatment plan not found')
    return plan


def ensure_can_view_plan(plan: TreatmentPlan, user: User) -> None:
    if user.role == UserRole.ADMIN.value:
        return
    if user.id not in (plan.patient_id, plan.therapist_id):
        raise forbidden('Not authorized to view this treatment plan')


def ensure_plan_owner(plan: TreatmentPlan, user: User) -> None:
    if plan.therapist_id != user.id:
        raise forbidden('Not authorized to modify this treatment plan')


def build_plan_exercises(db: Session, therapist: User, items: list[PlanExerciseRequest]) -> list[TreatmentPlanExercise]:
    """Resolve requested exercises against the therapist's own library, keeping request order."""
    requested_ids = {item.exercise_id for item in items}
    exercises = {
        exercise.id: exercise
        for exercise in db.query(Exercise).filter(
            Exercise.id.in_(requested_ids),
            Exercise.created_by == therapist.id,
        )
    } if requested_ids else {}

    missing = sorted(requested_ids - exercises.keys())
    if missing:
        raise bad_request(f'Unknown exercises: {", ".join(str(exercise_id) for exercise_id in missing)}')

    return [
        TreatmentPlanExercise(
            exercise=exercises[item.exercise_id],
            position=position,
            sets=item.sets if item.sets is not None else exercises[item.exercise_id].default_sets,
            reps=item.reps if item.reps is not None else exercises[item.exercise_id].default_reps,
            frequency=item.frequency,
            notes=item.notes,
        )
        for position, item in enumerate(items)
    ]


@router.post('', response_model=Envelope[TreatmentPlanResponse], status_code=status.HTTP_201_CREATED)
def create_treatment_plan(
    data: CreateTreatmentPlanRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_therapist),
    db: Session = Depends(get_db),
    mailer=Depends(get_mailer),
):
    ensure_database_ready()

    try:
        patient = db.query(User).filter(
            User.id == data.patient_id,
            User.role == UserRole.PATIENT.value,
        ).first()
        if patient is None:
            raise not_found('Patient not found')

        plan = TreatmentPlan(
            patient_id=patient.id,
            therapist_id=current_user.id,
            title=data.title,
            description=data.description,
            goals=data.goals,
            start_date=data.start_date,
            end_date=data.end_date,
            status=TreatmentPlanStatus.ACTIVE.value,
        )
        plan.exercises = build_plan_exercises(db, current_user, data.exercises)
        db.add(plan)
        db.flush()

        queue_treatment_plan_email(db, patient, current_user, plan)
        db.commit()
        db.refresh(plan)
        response = to_plan_response(plan)
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    logger.info('Therapist %s created treatment plan %s for patient %s', current_user.id, plan.id, patient.id)
    background_tasks.add_task(relay_pending_emails, mailer)
    return Envelope(message='Treatment plan created', data=response)


@router.get('', response_model=Envelope[list[TreatmentPlanResponse]])
def list_treatment_plans(
    patient_id: int | None = Query(default=None),
    plan_status: TreatmentPlanStatus | None = Query(default=None, alias='status'),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        query = db.query(TreatmentPlan)
        if current_user.role == UserRole.PATIENT.value:
            query = query.filter(TreatmentPlan.patient_id == current_user.id)
        elif current_user.role == UserRole.PHYSIOTHERAPIST.value:
            query = query.filter(TreatmentPlan.therapist_id == current_user.id)

        if patient_id is not None:
            query = query.filter(TreatmentPlan.patient_id == patient_id)
        if plan_status is not None:
            query = query.filter(TreatmentPlan.status == plan_status.value)

        plans = query.order_by(TreatmentPlan.start_date.desc(), TreatmentPlan.id.desc()).all()
        return Envelope(data=[to_plan_response(plan) for plan in plans])
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc


@router.get('/{plan_id}', response_model=Envelope[TreatmentPlanResponse])
def get_treatment_plan(
    plan_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        plan = get_plan_or_404(db, plan_id)
        ensure_can_view_plan(plan, current_user)
        return Envelope(data=to_plan_response(plan))
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc


@router.put('/{plan_id}', response_model=Envelope[TreatmentPlanResponse])
def update_treatment_plan(
    plan_id: int,
    data: UpdateTreatmentPlanRequest,
    current_user: User = Depends(get_current_therapist),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        plan = get_plan_or_404(db, plan_id)
        ensure_plan_owner(plan, current_user)

        changes = data.model_dump(exclude_unset=True, exclude={'exercises'})
        start_date = changes.get('start_date') or plan.start_date
        end_date = changes['end_date'] if 'end_date' in changes else plan.end_date
        if end_date is not None and end_date < start_date:
            raise bad_request('End date must not be before start date.')

        for field_name, value in changes.items():
            if value is None and field_name in ('title', 'start_date', 'status'):
                continue
            if field_name == 'status':
                value = value.value
            setattr(plan, field_name, value)

        if data.exercises is not None:
            plan.exercises = build_plan_exercises(db, current_user, data.exercises)

        db.commit()
        db.refresh(plan)
        response = to_plan_response(plan)
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    return Envelope(message='Treatment plan updated', data=response)


@router.delete('/{plan_id}', response_model=Envelope[None])
def delete_treatment_plan(
    plan_id: int,
    current_user: User = Depends(get_current_therapist),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        plan = get_plan_or_404(db, plan_id)
        ensure_plan_owner(plan, current_user)

        has_progress = db.query(ProgressEntry.id).filter(ProgressEntry.treatment_plan_id == plan_id).first()
        if has_progress is not None:
            raise conflict('Treatment plan has progress entries; mark it cancelled instead')

        db.delete(plan)
        db.commit()
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    logger.info('Therapist %s deleted treatment plan %s', current_user.id, plan_id)
    return Envelope(message='Treatment plan deleted')
