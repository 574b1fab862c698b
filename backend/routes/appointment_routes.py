from datetime import date, datetime

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_patient, get_current_therapist, get_current_user
from backend.database import get_db
from backend.models.appointment import Appointment, AppointmentStatus, AppointmentType
from backend.models.user import User, UserRole
from backend.routes.availability_routes import WorkingHoursResponse, working_hours_of
from backend.routes.common import (
    Envelope,
    PartySummary,
    database_unavailable,
    ensure_database_ready,
    forbidden,
    get_mailer,
)
from backend.services import booking
from backend.services.notifications import relay_pending_emails

router = APIRouter(tags=['appointments'])

MAX_APPOINTMENT_NOTES_LENGTH = 600
MAX_CANCELLATION_REASON_LENGTH = 600


def _normalize_optional_text(value: str | None, max_length: int, label: str) -> str | None:
    if value is None:
        return None

    normalized = value.strip()
    if not normalized:
        return None

    if len(normalized) > max_length:
        raise ValueError(f'{label} must be {max_length} characters or fewer.')

    return normalized


class CreateAppointmentRequest(BaseModel):
    slot_id: int
    type: AppointmentType = AppointmentType.INITIAL
    notes: str | None = None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value, MAX_APPOINTMENT_NOTES_LENGTH, 'Notes')


class UpdateAppointmentStatusRequest(BaseModel):
    status: AppointmentStatus
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value, MAX_CANCELLATION_REASON_LENGTH, 'Reason')


class CancelAppointmentRequest(BaseModel):
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value, MAX_CANCELLATION_REASON_LENGTH, 'Reason')


class AppointmentResponse(BaseModel):
    id: int
    patient_id: int
    therapist_id: int
    date: date
    time: str
    type: str
    notes: str | None = None
    status: str
    cancelled_by: int | None = None
    cancellation_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    patient: PartySummary | None = None
    therapist: PartySummary | None = None

    class Config:
        from_attributes = True


class AvailableTimesResponse(BaseModel):
    available_slots: list[str]
    working_hours: WorkingHoursResponse
    appointment_duration: int | None = None
    working_days: list[str]


def ensure_can_view(appointment: Appointment, user: User) -> None:
    if user.role == UserRole.ADMIN.value:
        return
    if user.id not in (appointment.patient_id, appointment.therapist_id):
        raise forbidden('Not authorized to view this appointment')


@router.post('', response_model=Envelope[AppointmentResponse], status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_patient),
    db: Session = Depends(get_db),
    mailer=Depends(get_mailer),
):
    ensure_database_ready()

    try:
        appointment = booking.book_appointment(
            db,
            patient=current_user,
            slot_id=data.slot_id,
            appointment_type=data.type.value,
            notes=data.notes,
        )
        response = AppointmentResponse.model_validate(appointment)
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    background_tasks.add_task(relay_pending_emails, mailer)
    return Envelope(data=response)


@router.get('', response_model=Envelope[list[AppointmentResponse]])
def list_appointments(
    appointment_date: date | None = Query(default=None, alias='date'),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        query = db.query(Appointment)
        if current_user.role == UserRole.PATIENT.value:
            query = query.filter(Appointment.patient_id == current_user.id)
        elif current_user.role == UserRole.PHYSIOTHERAPIST.value:
            query = query.filter(Appointment.therapist_id == current_user.id)

        if appointment_date is not None:
            query = query.filter(Appointment.date == appointment_date)

        appointments = query.order_by(Appointment.date.asc(), Appointment.time.asc()).all()
        return Envelope(data=[AppointmentResponse.model_validate(appointment) for appointment in appointments])
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc


@router.get('/available-slots/{therapist_id}/{slot_date}', response_model=Envelope[AvailableTimesResponse])
def get_available_time_slots(
    therapist_id: int,
    slot_date: date,
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        therapist = booking.get_bookable_therapist(db, therapist_id)
        available, message = booking.list_available_times(db, therapist, slot_date)
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc

    return Envelope(
        message=message,
        data=AvailableTimesResponse(
            available_slots=available,
            working_hours=working_hours_of(therapist),
            appointment_duration=therapist.appointment_duration,
            working_days=therapist.working_days or [],
        ),
    )


@router.get('/{appointment_id}', response_model=Envelope[AppointmentResponse])
def get_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = booking.get_appointment_or_404(db, appointment_id)
        ensure_can_view(appointment, current_user)
        return Envelope(data=AppointmentResponse.model_validate(appointment))
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc


@router.put('/{appointment_id}/status', response_model=Envelope[AppointmentResponse])
def update_appointment_status(
    appointment_id: int,
    data: UpdateAppointmentStatusRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_therapist),
    db: Session = Depends(get_db),
    mailer=Depends(get_mailer),
):
    ensure_database_ready()

    try:
        appointment = booking.get_appointment_or_404(db, appointment_id)
        appointment = booking.update_appointment_status(
            db,
            appointment,
            actor=current_user,
            new_status=data.status.value,
            reason=data.reason,
        )
        response = AppointmentResponse.model_validate(appointment)
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    background_tasks.add_task(relay_pending_emails, mailer)
    return Envelope(data=response)


@router.put('/{appointment_id}/cancel', response_model=Envelope[AppointmentResponse])
def cancel_appointment(
    appointment_id: int,
    background_tasks: BackgroundTasks,
    data: CancelAppointmentRequest | None = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    mailer=Depends(get_mailer),
):
    ensure_database_ready()

    try:
        appointment = booking.get_appointment_or_404(db, appointment_id)
        appointment = booking.cancel_appointment(
            db,
            appointment,
            actor=current_user,
            reason=data.reason if data else None,
        )
        response = AppointmentResponse.model_validate(appointment)
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    background_tasks.add_task(relay_pending_emails, mailer)
    return Envelope(data=response)
