from datetime import date, timedelta

import pytest
from fastapi import HTTPException

from backend.models.appointment import Appointment, AppointmentStatus
from backend.models.availability import AvailabilitySlot
from backend.models.outbox import EmailOutbox
from backend.models.user import ApprovalStatus
from backend.services import booking
from conftest import add_slot


def _available(db, therapist, on_date):
    times, _message = booking.list_available_times(db, therapist, on_date)
    return times


def test_booking_then_cancelling_restores_the_generated_times(db_session, therapist, patient, future_day) -> None:
    nine = add_slot(db_session, therapist, future_day, '09:00')
    add_slot(db_session, therapist, future_day, '09:30')

    assert _available(db_session, therapist, future_day) == ['09:00', '09:30']

    appointment = booking.book_appointment(db_session, patient, nine.id)
    assert _available(db_session, therapist, future_day) == ['09:30']

    booking.cancel_appointment(db_session, appointment, actor=patient, reason='Feeling better')
    assert _available(db_session, therapist, future_day) == ['09:00', '09:30']


def test_book_appointment_claims_slot_and_queues_two_emails(db_session, therapist, patient, future_day) -> None:
    slot = add_slot(db_session, therapist, future_day, '09:00')

    appointment = booking.book_appointment(db_session, patient, slot.id, appointment_type='assessment', notes='Knee')

    db_session.refresh(slot)
    assert appointment.status == AppointmentStatus.PENDING.value
    assert (appointment.date, appointment.time, appointment.therapist_id) == (slot.date, slot.time, therapist.id)
    assert appointment.type == 'assessment'
    assert slot.is_booked is True
    assert slot.appointment_id == appointment.id
    assert sorted(message.recipient for message in db_session.query(EmailOutbox)) == [
        patient.email,
        therapist.email,
    ]


def test_booking_a_booked_slot_is_a_conflict_and_creates_nothing(db_session, therapist, patient, other_patient, future_day) -> None:
    slot = add_slot(db_session, therapist, future_day, '09:00')
    booking.book_appointment(db_session, patient, slot.id)

    with pytest.raises(HTTPException) as exception_info:
        booking.book_appointment(db_session, other_patient, slot.id)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == 'This slot is already booked'
    assert db_session.query(Appointment).count() == 1


def test_claim_slot_only_succeeds_once(db_session, therapist, future_day) -> None:
    slot = add_slot(db_session, therapist, future_day, '09:00')

    assert booking.claim_slot(db_session, slot.id, appointment_id=1) is True
    assert booking.claim_slot(db_session, slot.id, appointment_id=2) is False


def test_lost_claim_rolls_back_the_new_appointment(db_session, therapist, patient, future_day, monkeypatch) -> None:
    slot = add_slot(db_session, therapist, future_day, '09:00')
    monkeypatch.setattr(booking, 'claim_slot', lambda db, slot_id, appointment_id: False)

    with pytest.raises(HTTPException) as exception_info:
        booking.book_appointment(db_session, patient, slot.id)

    assert exception_info.value.status_code == 409
    assert db_session.query(Appointment).count() == 0
    assert db_session.query(EmailOutbox).count() == 0


def test_booking_missing_slot_is_not_found(db_session, patient) -> None:
    with pytest.raises(HTTPException) as exception_info:
        booking.book_appointment(db_session, patient, 999)

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail == 'Slot not found'


def test_booking_past_slot_is_rejected(db_session, therapist, patient) -> None:
    slot = add_slot(db_session, therapist, date.today() - timedelta(days=1), '09:00')

    with pytest.raises(HTTPException) as exception_info:
        booking.book_appointment(db_session, patient, slot.id)

    assert exception_info.value.status_code == 400


def test_booking_with_unapproved_therapist_is_not_found(db_session, therapist, patient, future_day) -> None:
    therapist.status = ApprovalStatus.PENDING.value
    db_session.commit()
    slot = add_slot(db_session, therapist, future_day, '09:00')

    with pytest.raises(HTTPException) as exception_info:
        booking.book_appointment(db_session, patient, slot.id)

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail == 'Therapist not found or not approved'
    db_session.refresh(slot)
    assert slot.is_booked is False


def test_cancel_confirmed_appointment_releases_slot(db_session, therapist, patient, future_day) -> None:
    slot = add_slot(db_session, therapist, future_day, '09:00')
    appointment = booking.book_appointment(db_session, patient, slot.id)
    booking.update_appointment_status(db_session, appointment, therapist, AppointmentStatus.CONFIRMED.value)

    cancelled = booking.cancel_appointment(db_session, appointment, actor=therapist, reason='Sick leave')

    db_session.refresh(slot)
    assert cancelled.status == AppointmentStatus.CANCELLED.value
    assert cancelled.cancelled_by == therapist.id
    assert cancelled.cancellation_reason == 'Sick leave'
    assert slot.is_booked is False
    assert slot.appointment_id is None
    assert db_session.query(EmailOutbox).filter(EmailOutbox.recipient == patient.email).count() == 3


def test_cancel_without_matching_slot_still_cancels(db_session, therapist, patient, future_day) -> None:
    slot = add_slot(db_session, therapist, future_day, '09:00')
    appointment = booking.book_appointment(db_session, patient, slot.id)
    db_session.query(AvailabilitySlot).delete()
    db_session.commit()

    cancelled = booking.cancel_appointment(db_session, appointment, actor=patient)

    assert cancelled.status == AppointmentStatus.CANCELLED.value


@pytest.mark.parametrize('terminal_status', [AppointmentStatus.COMPLETED.value, AppointmentStatus.CANCELLED.value])
def test_cancel_terminal_appointment_names_current_status(db_session, therapist, patient, future_day, terminal_status) -> None:
    slot = add_slot(db_session, therapist, future_day, '09:00')
    appointment = booking.book_appointment(db_session, patient, slot.id)
    appointment.status = terminal_status
    db_session.commit()

    with pytest.raises(HTTPException) as exception_info:
        booking.cancel_appointment(db_session, appointment, actor=patient)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == f'Cannot cancel appointment with status: {terminal_status}'


def test_cancel_by_unrelated_user_is_forbidden(db_session, therapist, patient, other_patient, future_day) -> None:
    slot = add_slot(db_session, therapist, future_day, '09:00')
    appointment = booking.book_appointment(db_session, patient, slot.id)

    with pytest.raises(HTTPException) as exception_info:
        booking.cancel_appointment(db_session, appointment, actor=other_patient)

    assert exception_info.value.status_code == 403


@pytest.mark.parametrize(
    ('path', 'rejected'),
    [
        ([], AppointmentStatus.PENDING.value),
        ([], AppointmentStatus.COMPLETED.value),
        ([AppointmentStatus.CONFIRMED.value], AppointmentStatus.PENDING.value),
        ([AppointmentStatus.CONFIRMED.value], AppointmentStatus.CONFIRMED.value),
        ([AppointmentStatus.CONFIRMED.value, AppointmentStatus.COMPLETED.value], AppointmentStatus.CANCELLED.value),
    ],
)
def test_update_status_enforces_transition_table(db_session, therapist, patient, future_day, path, rejected) -> None:
    slot = add_slot(db_session, therapist, future_day, '09:00')
    appointment = booking.book_appointment(db_session, patient, slot.id)
    for next_status in path:
        booking.update_appointment_status(db_session, appointment, therapist, next_status)

    current = appointment.status
    with pytest.raises(HTTPException) as exception_info:
        booking.update_appointment_status(db_session, appointment, therapist, rejected)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == f'Cannot change appointment status from {current} to {rejected}'


def test_update_status_to_cancelled_runs_cancellation(db_session, therapist, patient, future_day) -> None:
    slot = add_slot(db_session, therapist, future_day, '09:00')
    appointment = booking.book_appointment(db_session, patient, slot.id)

    updated = booking.update_appointment_status(
        db_session, appointment, therapist, AppointmentStatus.CANCELLED.value, reason='Clinic closed',
    )

    db_session.refresh(slot)
    assert updated.status == AppointmentStatus.CANCELLED.value
    assert updated.cancelled_by == therapist.id
    assert slot.is_booked is False


def test_update_status_requires_assigned_therapist(db_session, therapist, patient, future_day) -> None:
    slot = add_slot(db_session, therapist, future_day, '09:00')
    appointment = booking.book_appointment(db_session, patient, slot.id)

    with pytest.raises(HTTPException) as exception_info:
        booking.update_appointment_status(db_session, appointment, patient, AppointmentStatus.CONFIRMED.value)

    assert exception_info.value.status_code == 403


def test_list_available_times_reports_non_working_day(db_session, therapist, future_day) -> None:
    therapist.working_days = []
    db_session.commit()

    times, message = booking.list_available_times(db_session, therapist, future_day)

    assert times == []
    assert message == 'Therapist does not work on this day'


def test_list_available_times_subtracts_active_appointments_without_slot(db_session, therapist, patient, future_day) -> None:
    db_session.add(
        Appointment(
            patient_id=patient.id,
            therapist_id=therapist.id,
            date=future_day,
            time='09:30',
            type='initial',
            status=AppointmentStatus.CONFIRMED.value,
        )
    )
    db_session.commit()

    assert _available(db_session, therapist, future_day) == ['09:00']
