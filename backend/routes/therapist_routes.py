import logging
from datetime import date, datetime

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel, ValidationError, field_validator
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_therapist
from backend.core.scheduling import (
    MAX_APPOINTMENT_DURATION_MINUTES,
    MIN_APPOINTMENT_DURATION_MINUTES,
    is_valid_appointment_duration,
    normalize_weekday_names,
    parse_time_of_day,
)
from backend.database import get_db
from backend.models.appointment import Appointment, AppointmentStatus
from backend.models.availability import AvailabilitySlot
from backend.models.user import ApprovalStatus, User, UserRole
from backend.routes.availability_routes import WorkingHoursResponse, working_hours_of
from backend.routes.common import (
    Envelope,
    bad_request,
    database_unavailable,
    ensure_database_ready,
    forbidden,
    get_storage,
    not_found,
    parse_json_field,
    replace_profile_picture,
    validation_message,
)
from backend.services.storage import delete_quietly

router = APIRouter(tags=['therapists'])
logger = logging.getLogger(__name__)


class TherapistProfileResponse(BaseModel):
    id: int
    name: str
    email: str
    phone: str | None = None
    status: str
    specialization: str | None = None
    experience: int | None = None
    license_number: str | None = None
    clinic_name: str | None = None
    clinic_address: str | None = None
    bio: str | None = None
    profile_picture_url: str | None = None
    working_days: list[str] = []
    working_hours: WorkingHoursResponse
    appointment_duration: int | None = None
    created_at: datetime | None = None


class TherapistProfileUpdate(BaseModel):
    name: str | None = None
    phone: str | None = None
    specialization: str | None = None
    experience: int | None = None
    license_number: str | None = None
    clinic_name: str | None = None
    clinic_address: str | None = None
    bio: str | None = None
    working_days: list[str] | None = None
    working_hours_start: str | None = None
    working_hours_end: str | None = None
    appointment_duration: int | None = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            raise ValueError('Name must not be empty.')
        return normalized

    @field_validator('experience')
    @classmethod
    def validate_experience(cls, value: int | None) -> int | None:
        if value is not None and value < 0:
            raise ValueError('Experience must not be negative.')
        return value

    @field_validator('working_days')
    @classmethod
    def validate_working_days(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return normalize_weekday_names(value)

    @field_validator('working_hours_start', 'working_hours_end')
    @classmethod
    def validate_working_hours(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return parse_time_of_day(value).strftime('%H:%M')

    @field_validator('appointment_duration')
    @classmethod
    def validate_appointment_duration(cls, value: int | None) -> int | None:
        if value is not None and not is_valid_appointment_duration(value):
            raise ValueError(
                'Invalid appointment duration. Must be between '
                f'{MIN_APPOINTMENT_DURATION_MINUTES} and {MAX_APPOINTMENT_DURATION_MINUTES} minutes.'
            )
        return value


class DashboardStatsResponse(BaseModel):
    total_patients: int
    appointments_today: int
    completed_sessions: int
    open_slots: int


def _parse_working_days(raw: str | None) -> list[str] | None:
    if raw is None or raw == '':
        return None
    if raw.lstrip().startswith('['):
        return parse_json_field(raw, 'working days')
    return [item.strip() for item in raw.split(',') if item.strip()]


def therapist_profile_form(
    name: str | None = Form(default=None),
    phone: str | None = Form(default=None),
    specialization: str | None = Form(default=None),
    experience: int | None = Form(default=None),
    license_number: str | None = Form(default=None),
    clinic_name: str | None = Form(default=None),
    clinic_address: str | None = Form(default=None),
    bio: str | None = Form(default=None),
    working_days: str | None = Form(default=None),
    working_hours: str | None = Form(default=None),
    appointment_duration: int | None = Form(default=None),
) -> TherapistProfileUpdate:
    """Collect multipart fields; ``working_hours`` is a JSON ``{start, end}`` object."""
    hours = parse_json_field(working_hours, 'working hours') or {}
    if not isinstance(hours, dict):
        raise bad_request('Invalid working hours format')

    values = {
        'name': name,
        'phone': phone,
        'specialization': specialization,
        'experience': experience,
        'license_number': license_number,
        'clinic_name': clinic_name,
        'clinic_address': clinic_address,
        'bio': bio,
        'working_days': _parse_working_days(working_days),
        'working_hours_start': hours.get('start'),
        'working_hours_end': hours.get('end'),
        'appointment_duration': appointment_duration,
    }
    try:
        return TherapistProfileUpdate(**{key: value for key, value in values.items() if value is not None})
    except ValidationError as exc:
        raise bad_request(validation_message(exc)) from exc


def to_profile_response(therapist: User) -> TherapistProfileResponse:
    return TherapistProfileResponse(
        id=therapist.id,
        name=therapist.name,
        email=therapist.email,
        phone=therapist.phone,
        status=therapist.status,
        specialization=therapist.specialization,
        experience=therapist.experience,
        license_number=therapist.license_number,
        clinic_name=therapist.clinic_name,
        clinic_address=therapist.clinic_address,
        bio=therapist.bio,
        profile_picture_url=therapist.profile_picture_url,
        working_days=therapist.working_days or [],
        working_hours=working_hours_of(therapist),
        appointment_duration=therapist.appointment_duration,
        created_at=therapist.created_at,
    )


def get_therapist_or_404(db: Session, therapist_id: int) -> User:
    therapist = db.query(User).filter(
        User.id == therapist_id,
        User.role == UserRole.PHYSIOTHERAPIST.value,
    ).first()
    if therapist is None:
        raise not_found('Therapist not found')
    return therapist


def ensure_owner(therapist_id: int, current_user: User) -> None:
    if current_user.id != therapist_id:
        raise forbidden('Not authorized to access this profile')


@router.get('/approved', response_model=Envelope[list[TherapistProfileResponse]])
def list_approved_therapists(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        therapists = db.query(User).filter(
            User.role == UserRole.PHYSIOTHERAPIST.value,
            User.status == ApprovalStatus.APPROVED.value,
        ).order_by(User.name.asc()).all()
        return Envelope(data=[to_profile_response(therapist) for therapist in therapists])
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc


@router.get('/{therapist_id}/profile', response_model=Envelope[TherapistProfileResponse])
def get_therapist_profile(therapist_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        therapist = get_therapist_or_404(db, therapist_id)
        return Envelope(data=to_profile_response(therapist))
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc


@router.put('/{therapist_id}/profile', response_model=Envelope[TherapistProfileResponse])
def update_therapist_profile(
    therapist_id: int,
    updates: TherapistProfileUpdate = Depends(therapist_profile_form),
    profile_picture: UploadFile | None = File(default=None),
    current_user: User = Depends(get_current_therapist),
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
):
    ensure_owner(therapist_id, current_user)

    changes = updates.model_dump(exclude_unset=True)
    if not changes and profile_picture is None:
        raise bad_request('No data provided for update')

    ensure_database_ready()

    previous_key = new_key = None
    try:
        therapist = get_therapist_or_404(db, therapist_id)

        start = changes.get('working_hours_start', therapist.working_hours_start)
        end = changes.get('working_hours_end', therapist.working_hours_end)
        if start and end and parse_time_of_day(start) >= parse_time_of_day(end):
            raise bad_request('Working hours end must be after start')

        if profile_picture is not None:
            previous_key = replace_profile_picture(storage, therapist, profile_picture, 'therapists')
            new_key = therapist.profile_picture_key

        for field_name, value in changes.items():
            setattr(therapist, field_name, value)

        db.commit()
        db.refresh(therapist)
    except SQLAlchemyError as exc:
        delete_quietly(storage, new_key)
        raise database_unavailable(db, exc) from exc

    if new_key is not None:
        delete_quietly(storage, previous_key)

    logger.info('Therapist %s updated profile fields: %s', therapist_id, ', '.join(sorted(changes)) or 'picture')
    return Envelope(message='Profile updated successfully', data=to_profile_response(therapist))


@router.get('/{therapist_id}/dashboard', response_model=Envelope[DashboardStatsResponse])
def get_dashboard_stats(
    therapist_id: int,
    current_user: User = Depends(get_current_therapist),
    db: Session = Depends(get_db),
):
    ensure_owner(therapist_id, current_user)
    ensure_database_ready()

    today = date.today()
    try:
        total_patients = db.query(func.count(func.distinct(Appointment.patient_id))).filter(
            Appointment.therapist_id == therapist_id,
        ).scalar()
        appointments_today = db.query(func.count(Appointment.id)).filter(
            Appointment.therapist_id == therapist_id,
            Appointment.date == today,
            Appointment.status != AppointmentStatus.CANCELLED.value,
        ).scalar()
        completed_sessions = db.query(func.count(Appointment.id)).filter(
            Appointment.therapist_id == therapist_id,
            Appointment.status == AppointmentStatus.COMPLETED.value,
        ).scalar()
        open_slots = db.query(func.count(AvailabilitySlot.id)).filter(
            AvailabilitySlot.therapist_id == therapist_id,
            AvailabilitySlot.date >= today,
            AvailabilitySlot.is_booked.is_(False),
        ).scalar()
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc

    return Envelope(
        data=DashboardStatsResponse(
            total_patients=total_patients or 0,
            appointments_today=appointments_today or 0,
            completed_sessions=completed_sessions or 0,
            open_slots=open_slots or 0,
        )
    )
