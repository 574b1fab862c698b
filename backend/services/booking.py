"""Appointment booking workflow.

Booking, cancelling and status changes keep ``AvailabilitySlot`` and
``Appointment`` consistent: each operation performs its writes, queues its
emails and commits once, so callers either see every change or none of them.
"""

import logging
from datetime import date

from sqlalchemy.orm import Session

from backend.core.scheduling import (
    DEFAULT_APPOINTMENT_DURATION_MINUTES,
    generate_time_slots,
    parse_time_of_day,
    weekday_name,
)
from backend.models.appointment import (
    ACTIVE_STATUSES,
    ALLOWED_STATUS_TRANSITIONS,
    Appointment,
    AppointmentStatus,
    AppointmentType,
)
from backend.models.availability import AvailabilitySlot
from backend.models.user import ApprovalStatus, User, UserRole
from backend.routes.common import bad_request, conflict, forbidden, not_found
from backend.services.notifications import queue_booking_emails, queue_status_update_email

logger = logging.getLogger(__name__)


def get_bookable_therapist(db: Session, therapist_id: int) -> User:
    therapist = db.query(User).filter(
        User.id == therapist_id,
        User.role == UserRole.PHYSIOTHERAPIST.value,
        User.status == ApprovalStatus.APPROVED.value,
    ).first()
    if therapist is None:
        raise not_found('Therapist not found or not approved')
    return therapist


def get_appointment_or_404(db: Session, appointment_id: int) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise not_found('Appointment not found')
    return appointment


def claim_slot(db: Session, slot_id: int, appointment_id: int) -> bool:
    """Mark a free slot as booked by ``appointment_id``.

    The update only matches while ``is_booked`` is false, so of two concurrent
    claims exactly one sees a row count of 1.
    """
    claimed = db.query(AvailabilitySlot).filter(
        AvailabilitySlot.id == slot_id,
        AvailabilitySlot.is_booked.is_(False),
    ).update(
        {AvailabilitySlot.is_booked: True, AvailabilitySlot.appointment_id: appointment_id},
        synchronize_session=False,
    )
    return claimed == 1


def release_slot(db: Session, appointment: Appointment) -> AvailabilitySlot | None:
    slot = db.query(AvailabilitySlot).filter(
        AvailabilitySlot.therapist_id == appointment.therapist_id,
        AvailabilitySlot.date == appointment.date,
        AvailabilitySlot.time == appointment.time,
        AvailabilitySlot.appointment_id == appointment.id,
    ).first()

    if slot is None:
        logger.info('No booked slot found for appointment %s; nothing to release', appointment.id)
        return None

    slot.is_booked = False
    slot.appointment_id = None
    return slot


def book_appointment(
    db: Session,
    patient: User,
    slot_id: int,
    appointment_type: str = AppointmentType.INITIAL.value,
    notes: str | None = None,
    today: date | None = None,
) -> Appointment:
    slot = db.get(AvailabilitySlot, slot_id)
    if slot is None:
        raise not_found('Slot not found')

    if slot.is_booked:
        raise conflict('This slot is already booked')

    if slot.date < (today or date.today()):
        raise bad_request('Cannot book a slot in the past')

    therapist = get_bookable_therapist(db, slot.therapist_id)

    appointment = Appointment(
        patient_id=patient.id,
        therapist_id=slot.therapist_id,
        date=slot.date,
        time=slot.time,
        type=appointment_type,
        notes=notes or '',
        status=AppointmentStatus.PENDING.value,
    )
    db.add(appointment)
    db.flush()

    if not claim_slot(db, slot.id, appointment.id):
        db.rollback()
        raise conflict('This slot is already booked')

    queue_booking_emails(db, patient, therapist, appointment)
    db.commit()
    db.refresh(appointment)

    logger.info(
        'Patient %s booked slot %s with therapist %s (appointment %s)',
        patient.id, slot_id, therapist.id, appointment.id,
    )
    return appointment


def cancel_appointment(db: Session, appointment: Appointment, actor: User, reason: str | None = None) -> Appointment:
    if actor.id not in (appointment.patient_id, appointment.therapist_id):
        raise forbidden('Not authorized to cancel this appointment')

    if appointment.status not in ACTIVE_STATUSES:
        raise bad_request(f'Cannot cancel appointment with status: {appointment.status}')

    release_slot(db, appointment)

    appointment.status = AppointmentStatus.CANCELLED.value
    appointment.cancelled_by = actor.id
    appointment.cancellation_reason = reason

    other_party_id = appointment.therapist_id if actor.id == appointment.patient_id else appointment.patient_id
    queue_status_update_email(db, db.get(User, other_party_id), actor, appointment)

    db.commit()
    db.refresh(appointment)

    logger.info('Appointment %s cancelled by user %s', appointment.id, actor.id)
    return appointment


def update_appointment_status(
    db: Session,
    appointment: Appointment,
    actor: User,
    new_status: str,
    reason: str | None = None,
) -> Appointment:
    if actor.id != appointment.therapist_id:
        raise forbidden('Not authorized to update this appointment')

    current_status = appointment.status
    if new_status not in ALLOWED_STATUS_TRANSITIONS.get(current_status, frozenset()):
        raise bad_request(f'Cannot change appointment status from {current_status} to {new_status}')

    if new_status == AppointmentStatus.CANCELLED.value:
        return cancel_appointment(db, appointment, actor, reason)

    appointment.status = new_status
    queue_status_update_email(db, db.get(User, appointment.patient_id), actor, appointment)

    db.commit()
    db.refresh(appointment)

    logger.info('Appointment %s moved from %s to %s', appointment.id, current_status, new_status)
    return appointment


def list_available_times(db: Session, therapist: User, on_date: date) -> tuple[list[str], str | None]:
    """Bookable ``HH:MM`` times for ``therapist`` on ``on_date``.

    Booked slots decide what is taken. Active appointments are subtracted as
    well, and a mismatch between the two is logged.
    """
    if weekday_name(on_date) not in (therapist.working_days or []):
        return [], 'Therapist does not work on this day'

    try:
        start = parse_time_of_day(therapist.working_hours_start)
        end = parse_time_of_day(therapist.working_hours_end)
    except ValueError:
        logger.warning('Therapist %s has invalid working hours', therapist.id)
        return [], 'Therapist working hours are not configured'

    duration = therapist.appointment_duration or DEFAULT_APPOINTMENT_DURATION_MINUTES
    candidates = generate_time_slots(start, end, duration)

    booked_times = {
        slot_time for (slot_time,) in db.query(AvailabilitySlot.time).filter(
            AvailabilitySlot.therapist_id == therapist.id,
            AvailabilitySlot.date == on_date,
            AvailabilitySlot.is_booked.is_(True),
        )
    }
    appointment_times = {
        appointment_time for (appointment_time,) in db.query(Appointment.time).filter(
            Appointment.therapist_id == therapist.id,
            Appointment.date == on_date,
            Appointment.status.in_(ACTIVE_STATUSES),
        )
    }

    unmatched = appointment_times - booked_times
    if unmatched:
        logger.warning(
            'Therapist %s has active appointments on %s without a booked slot: %s',
            therapist.id, on_date, ', '.join(sorted(unmatched)),
        )

    taken = booked_times | appointment_times
    return [slot_time for slot_time in candidates if slot_time not in taken], None
