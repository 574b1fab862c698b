import logging
from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, UploadFile, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_patient, get_current_user
from backend.database import get_db
from backend.models.progress import ProgressEntry
from backend.models.treatment_plan import TreatmentPlanStatus
from backend.models.user import User, UserRole
from backend.routes.common import (
    Envelope,
    bad_request,
    database_unavailable,
    ensure_database_ready,
    forbidden,
    get_mailer,
    get_storage,
    not_found,
    read_image_upload,
)
from backend.routes.treatment_routes import ensure_can_view_plan, get_plan_or_404
from backend.services.notifications import queue_progress_report_email, relay_pending_emails
from backend.services.storage import StorageError, build_object_key, delete_quietly

router = APIRouter(tags=['progress'])
logger = logging.getLogger(__name__)

MIN_PAIN_LEVEL = 0
MAX_PAIN_LEVEL = 10


def _validate_pain_level(value: int | None) -> int | None:
    if value is not None and not MIN_PAIN_LEVEL <= value <= MAX_PAIN_LEVEL:
        raise ValueError(f'Pain level must be between {MIN_PAIN_LEVEL} and {MAX_PAIN_LEVEL}.')
    return value


class UpdateProgressRequest(BaseModel):
    notes: str | None = None
    pain_level: int | None = None
    mobility: str | None = None
    strength: str | None = None

    @field_validator('pain_level')
    @classmethod
    def validate_pain_level(cls, value: int | None) -> int | None:
        return _validate_pain_level(value)


class ProgressResponse(BaseModel):
    id: int
    treatment_plan_id: int
    patient_id: int
    notes: str | None = None
    pain_level: int | None = None
    mobility: str | None = None
    strength: str | None = None
    media_url: str | None = None
    media_type: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


def get_entry_or_404(db: Session, entry_id: int) -> ProgressEntry:
    entry = db.get(ProgressEntry, entry_id)
    if entry is None:
        raise not_found('Progress entry not found')
    return entry


def ensure_entry_owner(entry: ProgressEntry, user: User) -> None:
    if entry.patient_id != user.id:
        raise forbidden('Not authorized to modify this progress entry')


@router.post('', response_model=Envelope[ProgressResponse], status_code=status.HTTP_201_CREATED)
def create_progress_entry(
    background_tasks: BackgroundTasks,
    treatment_plan_id: int = Form(...),
    notes: str = Form(default=''),
    pain_level: int | None = Form(default=None),
    mobility: str | None = Form(default=None),
    strength: str | None = Form(default=None),
    media: UploadFile | None = File(default=None),
    current_user: User = Depends(get_current_patient),
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
    mailer=Depends(get_mailer),
):
    try:
        _validate_pain_level(pain_level)
    except ValueError as exc:
        raise bad_request(str(exc)) from exc

    ensure_database_ready()

    media_key = None
    try:
        plan = get_plan_or_404(db, treatment_plan_id)
        if plan.patient_id != current_user.id:
            raise forbidden('Not authorized to report progress on this treatment plan')
        if plan.status != TreatmentPlanStatus.ACTIVE.value:
            raise bad_request(f'Cannot record progress on a {plan.status} treatment plan')

        entry = ProgressEntry(
            treatment_plan_id=plan.id,
            patient_id=current_user.id,
            notes=notes.strip(),
            pain_level=pain_level,
            mobility=mobility,
            strength=strength,
        )

        if media is not None:
            data, content_type = read_image_upload(media, allow_video=True)
            media_key = build_object_key('progress', media.filename, content_type)
            try:
                entry.media_url = storage.put(media_key, data, content_type)
            except StorageError as exc:
                logger.warning('Progress media upload failed for patient %s', current_user.id, exc_info=True)
                raise bad_request('Failed to upload media') from exc
            entry.media_key = media_key
            entry.media_type = content_type.split('/', 1)[0]

        db.add(entry)
        db.flush()
        queue_progress_report_email(db, plan.therapist, current_user, entry)
        db.commit()
        db.refresh(entry)
    except SQLAlchemyError as exc:
        delete_quietly(storage, media_key)
        raise database_unavailable(db, exc) from exc

    logger.info('Patient %s recorded progress %s on plan %s', current_user.id, entry.id, treatment_plan_id)
    background_tasks.add_task(relay_pending_emails, mailer)
    return Envelope(message='Progress recorded', data=ProgressResponse.model_validate(entry))


@router.get('/plan/{plan_id}', response_model=Envelope[list[ProgressResponse]])
def list_progress_for_plan(
    plan_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        plan = get_plan_or_404(db, plan_id)
        ensure_can_view_plan(plan, current_user)

        entries = db.query(ProgressEntry).filter(
            ProgressEntry.treatment_plan_id == plan_id,
        ).order_by(ProgressEntry.created_at.desc(), ProgressEntry.id.desc()).all()
        return Envelope(data=[ProgressResponse.model_validate(entry) for entry in entries])
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc


@router.get('/{entry_id}', response_model=Envelope[ProgressResponse])
def get_progress_entry(
    entry_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        entry = get_entry_or_404(db, entry_id)
        ensure_can_view_plan(entry.treatment_plan, current_user)
        return Envelope(data=ProgressResponse.model_validate(entry))
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc


@router.put('/{entry_id}', response_model=Envelope[ProgressResponse])
def update_progress_entry(
    entry_id: int,
    data: UpdateProgressRequest,
    current_user: User = Depends(get_current_patient),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        entry = get_entry_or_404(db, entry_id)
        ensure_entry_owner(entry, current_user)

        for field_name, value in data.model_dump(exclude_unset=True).items():
            setattr(entry, field_name, value)

        db.commit()
        db.refresh(entry)
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    return Envelope(message='Progress updated', data=ProgressResponse.model_validate(entry))


@router.delete('/{entry_id}', response_model=Envelope[None])
def delete_progress_entry(
    entry_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
):
    ensure_database_ready()

    try:
        entry = get_entry_or_404(db, entry_id)
        if current_user.role != UserRole.ADMIN.value:
            ensure_entry_owner(entry, current_user)

        media_key = entry.media_key
        db.delete(entry)
        db.commit()
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    delete_quietly(storage, media_key)
    logger.info('User %s deleted progress entry %s', current_user.id, entry_id)
    return Envelope(message='Progress entry deleted')
