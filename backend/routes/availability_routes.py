import logging
from datetime import date, timedelta

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_therapist
from backend.core.scheduling import (
    DEFAULT_APPOINTMENT_DURATION_MINUTES,
    MAX_APPOINTMENT_DURATION_MINUTES,
    MIN_APPOINTMENT_DURATION_MINUTES,
    is_valid_appointment_duration,
    parse_time_of_day,
)
from backend.database import get_db
from backend.models.availability import AvailabilitySlot
from backend.models.user import User
from backend.routes.common import (
    Envelope,
    PartySummary,
    bad_request,
    conflict,
    database_unavailable,
    ensure_database_ready,
    not_found,
)
from backend.services.booking import get_bookable_therapist

router = APIRouter(tags=['availability'])
logger = logging.getLogger(__name__)

DEFAULT_RANGE_DAYS = 30


class AddSlotsRequest(BaseModel):
    date: date
    time_slots: list[str]
    duration: int = DEFAULT_APPOINTMENT_DURATION_MINUTES

    @field_validator('time_slots')
    @classmethod
    def validate_time_slots(cls, value: list[str]) -> list[str]:
        normalized = [item.strip() for item in value if item and item.strip()]
        if not normalized:
            raise ValueError('Date and time slots are required')
        return normalized

    @field_validator('duration')
    @classmethod
    def validate_duration(cls, value: int) -> int:
        if not is_valid_appointment_duration(value):
            raise ValueError(
                f'Duration must be between {MIN_APPOINTMENT_DURATION_MINUTES} '
                f'and {MAX_APPOINTMENT_DURATION_MINUTES} minutes.'
            )
        return value


class SlotAppointmentSummary(BaseModel):
    id: int
    status: str
    patient: PartySummary | None = None

    class Config:
        from_attributes = True


class SlotResponse(BaseModel):
    id: int
    therapist_id: int
    date: date
    time: str
    duration_minutes: int
    is_booked: bool
    appointment_id: int | None = None
    appointment: SlotAppointmentSummary | None = None

    class Config:
        from_attributes = True


class AddSlotsResponse(Envelope[list[SlotResponse]]):
    errors: list[str] | None = None


class PublicSlotResponse(BaseModel):
    id: int
    time: str
    duration: int


class WorkingHoursResponse(BaseModel):
    start: str | None = None
    end: str | None = None


class TherapistSummaryResponse(BaseModel):
    id: int
    name: str
    specialization: str | None = None
    working_hours: WorkingHoursResponse
    appointment_duration: int | None = None


class PublicAvailabilityResponse(BaseModel):
    available_slots: list[PublicSlotResponse]
    therapist: TherapistSummaryResponse


def working_hours_of(therapist: User) -> WorkingHoursResponse:
    return WorkingHoursResponse(start=therapist.working_hours_start, end=therapist.working_hours_end)


def resolve_slot_range(
    slot_date: date | None,
    start_date: date | None,
    end_date: date | None,
    today: date | None = None,
) -> tuple[date, date]:
    """Single date, an explicit inclusive range, or the next 30 days."""
    if slot_date is not None:
        return slot_date, slot_date

    if start_date is not None and end_date is not None:
        if end_date < start_date:
            raise bad_request('end_date must not be before start_date')
        return start_date, end_date

    first_day = today or date.today()
    return first_day, first_day + timedelta(days=DEFAULT_RANGE_DAYS)


@router.post('/slots', response_model=AddSlotsResponse, status_code=status.HTTP_201_CREATED)
def add_availability_slots(
    data: AddSlotsRequest,
    current_user: User = Depends(get_current_therapist),
    db: Session = Depends(get_db),
):
    if data.date < date.today():
        raise bad_request('Cannot add slots for past dates')

    ensure_database_ready()

    try:
        existing_times = {
            slot_time for (slot_time,) in db.query(AvailabilitySlot.time).filter(
                AvailabilitySlot.therapist_id == current_user.id,
                AvailabilitySlot.date == data.date,
            )
        }

        errors: list[str] = []
        slots_to_add: list[AvailabilitySlot] = []
        for requested_time in data.time_slots:
            try:
                slot_time = parse_time_of_day(requested_time).strftime('%H:%M')
            except ValueError:
                errors.append(f'Invalid time format: {requested_time}')
                continue

            if slot_time in existing_times:
                errors.append(f'Slot at {slot_time} already exists')
                continue

            existing_times.add(slot_time)
            slots_to_add.append(
                AvailabilitySlot(
                    therapist_id=current_user.id,
                    date=data.date,
                    time=slot_time,
                    duration_minutes=data.duration,
                    is_booked=False,
                )
            )

        if not slots_to_add:
            raise bad_request({'message': 'No valid slots to add', 'errors': errors})

        db.add_all(slots_to_add)
        db.commit()
        for slot in slots_to_add:
            db.refresh(slot)
    except IntegrityError as exc:
        db.rollback()
        raise conflict('One or more slots were added by another request. Reload and try again.') from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    logger.info('Therapist %s added %s slots on %s', current_user.id, len(slots_to_add), data.date)
    return AddSlotsResponse(
        message=f'Added {len(slots_to_add)} availability slots',
        data=[SlotResponse.model_validate(slot) for slot in slots_to_add],
        errors=errors or None,
    )


@router.get('/slots', response_model=Envelope[list[SlotResponse]])
def list_my_availability_slots(
    slot_date: date | None = Query(default=None, alias='date'),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    current_user: User = Depends(get_current_therapist),
    db: Session = Depends(get_db),
):
    first_day, last_day = resolve_slot_range(slot_date, start_date, end_date)

    ensure_database_ready()

    try:
        slots = db.query(AvailabilitySlot).filter(
            AvailabilitySlot.therapist_id == current_user.id,
            AvailabilitySlot.date >= first_day,
            AvailabilitySlot.date <= last_day,
        ).order_by(AvailabilitySlot.date.asc(), AvailabilitySlot.time.asc()).all()

        return Envelope(data=[SlotResponse.model_validate(slot) for slot in slots])
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc


@router.get('/therapists/{therapist_id}/slots/{slot_date}', response_model=Envelope[PublicAvailabilityResponse])
def list_available_slots_for_patient(
    therapist_id: int,
    slot_date: date,
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        therapist = get_bookable_therapist(db, therapist_id)

        slots = db.query(AvailabilitySlot).filter(
            AvailabilitySlot.therapist_id == therapist_id,
            AvailabilitySlot.date == slot_date,
            AvailabilitySlot.is_booked.is_(False),
        ).order_by(AvailabilitySlot.time.asc()).all()

        return Envelope(
            data=PublicAvailabilityResponse(
                available_slots=[
                    PublicSlotResponse(id=slot.id, time=slot.time, duration=slot.duration_minutes)
                    for slot in slots
                ],
                therapist=TherapistSummaryResponse(
                    id=therapist.id,
                    name=therapist.name,
                    specialization=therapist.specialization,
                    working_hours=working_hours_of(therapist),
                    appointment_duration=therapist.appointment_duration,
                ),
            )
        )
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc


@router.delete('/slots/{slot_id}', response_model=Envelope[None])
def delete_availability_slot(
    slot_id: int,
    current_user: User = Depends(get_current_therapist),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        slot = db.query(AvailabilitySlot).filter(
            AvailabilitySlot.id == slot_id,
            AvailabilitySlot.therapist_id == current_user.id,
        ).first()

        if slot is None:
            raise not_found('Slot not found')

        if slot.is_booked:
            raise conflict('Cannot delete a booked slot')

        deleted = db.query(AvailabilitySlot).filter(
            AvailabilitySlot.id == slot_id,
            AvailabilitySlot.is_booked.is_(False),
        ).delete(synchronize_session=False)
        if deleted == 0:
            db.rollback()
            raise conflict('Cannot delete a booked slot')

        db.commit()
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    logger.info('Therapist %s deleted slot %s', current_user.id, slot_id)
    return Envelope(message='Slot deleted successfully')
