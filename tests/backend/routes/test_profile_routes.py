import json
from datetime import date, timedelta

import pytest
from fastapi import HTTPException

from backend.models.patient import PatientProfile
from backend.models.user import ApprovalStatus, UserRole
from backend.routes.patient_routes import (
    PatientProfileUpdate,
    get_patient_profile,
    patient_profile_form,
    update_patient_profile,
)
from backend.routes.therapist_routes import (
    TherapistProfileUpdate,
    get_dashboard_stats,
    get_therapist_profile,
    list_approved_therapists,
    therapist_profile_form,
    update_therapist_profile,
)
from backend.services import booking
from conftest import FakeStorage, add_slot, create_user, make_upload


def _therapist_form(**fields) -> TherapistProfileUpdate:
    values = {
        'name': None,
        'phone': None,
        'specialization': None,
        'experience': None,
        'license_number': None,
        'clinic_name': None,
        'clinic_address': None,
        'bio': None,
        'working_days': None,
        'working_hours': None,
        'appointment_duration': None,
    }
    values.update(fields)
    return therapist_profile_form(**values)


def _patient_form(**fields) -> PatientProfileUpdate:
    values = {
        'name': None,
        'phone': None,
        'date_of_birth': None,
        'gender': None,
        'address': None,
        'medical_history': None,
        'conditions': None,
        'allergies': None,
        'medications': None,
        'emergency_contact': None,
        'insurance_info': None,
    }
    values.update(fields)
    return patient_profile_form(**values)


def test_therapist_form_parses_working_schedule() -> None:
    updates = _therapist_form(
        working_days='["friday", "Monday"]',
        working_hours=json.dumps({'start': '08:00', 'end': '16:30'}),
        appointment_duration=45,
    )

    assert updates.working_days == ['Monday', 'Friday']
    assert updates.working_hours_start == '08:00'
    assert updates.working_hours_end == '16:30'
    assert updates.model_dump(exclude_unset=True).keys() == {
        'working_days', 'working_hours_start', 'working_hours_end', 'appointment_duration',
    }


def test_therapist_form_accepts_comma_separated_days() -> None:
    assert _therapist_form(working_days='Tuesday, thursday').working_days == ['Tuesday', 'Thursday']


@pytest.mark.parametrize(
    ('fields', 'detail'),
    [
        ({'appointment_duration': 10}, 'Invalid appointment duration. Must be between 15 and 120 minutes.'),
        ({'working_hours': '{not json'}, 'Invalid working hours format'),
        ({'working_hours': '["09:00"]'}, 'Invalid working hours format'),
        ({'working_days': 'Mondays'}, 'Invalid working days: Mondays'),
    ],
)
def test_therapist_form_rejects_invalid_fields(fields: dict, detail: str) -> None:
    with pytest.raises(HTTPException) as exception_info:
        _therapist_form(**fields)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == detail


def test_update_therapist_profile_replaces_picture_and_removes_old_one(db_session, therapist, storage) -> None:
    therapist.profile_picture_key = 'therapists/old.png'
    therapist.profile_picture_url = 'https://files.test/therapists/old.png'
    db_session.commit()

    response = update_therapist_profile(
        therapist.id,
        updates=_therapist_form(bio='Ten years in sports rehab', experience=10),
        profile_picture=make_upload(),
        current_user=therapist,
        db=db_session,
        storage=storage,
    )

    assert response.data.bio == 'Ten years in sports rehab'
    assert response.data.experience == 10
    assert response.data.profile_picture_url.startswith('https://files.test/therapists/')
    assert storage.deleted == ['therapists/old.png']
    assert list(storage.objects) == [therapist.profile_picture_key]


def test_update_therapist_profile_survives_failed_cleanup(db_session, therapist) -> None:
    therapist.profile_picture_key = 'therapists/old.png'
    db_session.commit()
    flaky = FakeStorage(fail_delete=True)

    response = update_therapist_profile(
        therapist.id,
        updates=_therapist_form(),
        profile_picture=make_upload(),
        current_user=therapist,
        db=db_session,
        storage=flaky,
    )

    assert response.data.profile_picture_url.startswith('https://files.test/therapists/')


def test_failed_upload_leaves_profile_untouched(db_session, therapist) -> None:
    with pytest.raises(HTTPException) as exception_info:
        update_therapist_profile(
            therapist.id,
            updates=_therapist_form(bio='changed'),
            profile_picture=make_upload(),
            current_user=therapist,
            db=db_session,
            storage=FakeStorage(fail_put=True),
        )

    assert exception_info.value.detail == 'Failed to upload profile picture'
    db_session.rollback()
    db_session.refresh(therapist)
    assert therapist.bio is None


def test_profile_picture_must_be_an_image(db_session, therapist, storage) -> None:
    with pytest.raises(HTTPException) as exception_info:
        update_therapist_profile(
            therapist.id,
            updates=_therapist_form(),
            profile_picture=make_upload(b'%PDF', 'cv.pdf', 'application/pdf'),
            current_user=therapist,
            db=db_session,
            storage=storage,
        )

    assert exception_info.value.status_code == 400
    assert storage.objects == {}


def test_update_therapist_profile_rejects_inverted_hours(db_session, therapist, storage) -> None:
    with pytest.raises(HTTPException) as exception_info:
        update_therapist_profile(
            therapist.id,
            updates=_therapist_form(working_hours='{"start": "17:00", "end": "09:00"}'),
            profile_picture=None,
            current_user=therapist,
            db=db_session,
            storage=storage,
        )

    assert exception_info.value.detail == 'Working hours end must be after start'


def test_update_therapist_profile_requires_owner_and_data(db_session, therapist, storage) -> None:
    colleague = create_user(db_session, UserRole.PHYSIOTHERAPIST, 'colleague@clinic.test')

    with pytest.raises(HTTPException) as forbidden_info:
        update_therapist_profile(
            therapist.id,
            updates=_therapist_form(bio='hijack'),
            profile_picture=None,
            current_user=colleague,
            db=db_session,
            storage=storage,
        )
    with pytest.raises(HTTPException) as empty_info:
        update_therapist_profile(
            therapist.id,
            updates=_therapist_form(),
            profile_picture=None,
            current_user=therapist,
            db=db_session,
            storage=storage,
        )

    assert forbidden_info.value.status_code == 403
    assert empty_info.value.detail == 'No data provided for update'


def test_approved_listing_hides_pending_therapists(db_session, therapist) -> None:
    create_user(db_session, UserRole.PHYSIOTHERAPIST, 'pending@clinic.test', status=ApprovalStatus.PENDING.value)

    response = list_approved_therapists(db=db_session)

    assert [item.email for item in response.data] == [therapist.email]
    assert get_therapist_profile(therapist.id, db=db_session).data.working_days[0] == 'Monday'


def test_dashboard_counts(db_session, therapist, patient, other_patient) -> None:
    today = date.today()
    tomorrow = today + timedelta(days=1)
    first = add_slot(db_session, therapist, today, '09:00')
    second = add_slot(db_session, therapist, tomorrow, '09:00')
    add_slot(db_session, therapist, tomorrow, '09:30')
    booking.book_appointment(db_session, patient, first.id)
    later = booking.book_appointment(db_session, other_patient, second.id)
    booking.update_appointment_status(db_session, later, therapist, 'confirmed')
    booking.update_appointment_status(db_session, later, therapist, 'completed')

    stats = get_dashboard_stats(therapist.id, current_user=therapist, db=db_session).data

    assert stats.total_patients == 2
    assert stats.appointments_today == 1
    assert stats.completed_sessions == 1
    assert stats.open_slots == 1


def test_patient_form_parses_nested_json() -> None:
    updates = _patient_form(
        gender='female',
        date_of_birth='1990-04-01',
        conditions='["Tendinitis", " "]',
        emergency_contact='{"name": "Sam", "relationship": "Sibling", "phone": "555-0100"}',
    )

    assert updates.date_of_birth == date(1990, 4, 1)
    assert updates.conditions == ['Tendinitis']
    assert updates.emergency_contact.relationship == 'Sibling'


@pytest.mark.parametrize(
    'fields',
    [{'gender': 'unknown'}, {'date_of_birth': '2999-01-01'}, {'insurance_info': 'not json'}],
)
def test_patient_form_rejects_invalid_fields(fields: dict) -> None:
    with pytest.raises(HTTPException) as exception_info:
        _patient_form(**fields)

    assert exception_info.value.status_code == 400


def test_update_patient_profile_creates_profile_row(db_session, patient, storage) -> None:
    response = update_patient_profile(
        patient.id,
        updates=_patient_form(
            phone='555-0199',
            date_of_birth='1985-06-15',
            medical_history='ACL reconstruction 2019',
            insurance_info='{"provider": "Acme", "policy_number": "P-1", "expiry_date": "2027-01-31"}',
        ),
        profile_picture=make_upload(filename='me.jpg', content_type='image/jpeg'),
        current_user=patient,
        db=db_session,
        storage=storage,
    )

    profile = db_session.query(PatientProfile).filter(PatientProfile.user_id == patient.id).one()
    assert response.data.phone == '555-0199'
    assert response.data.date_of_birth == date(1985, 6, 15)
    assert response.data.insurance_info.expiry_date == date(2027, 1, 31)
    assert response.data.profile_picture_url.endswith('.jpg')
    assert profile.medical_history == 'ACL reconstruction 2019'


def test_update_patient_profile_updates_existing_row(db_session, patient, storage) -> None:
    db_session.add(PatientProfile(user_id=patient.id, allergies='Latex'))
    db_session.commit()

    update_patient_profile(
        patient.id,
        updates=_patient_form(medications='Ibuprofen'),
        profile_picture=None,
        current_user=patient,
        db=db_session,
        storage=storage,
    )

    profile = db_session.query(PatientProfile).filter(PatientProfile.user_id == patient.id).one()
    assert (profile.allergies, profile.medications) == ('Latex', 'Ibuprofen')


def test_patient_profile_is_private(db_session, patient, other_patient, admin) -> None:
    assert get_patient_profile(patient.id, current_user=admin, db=db_session).data.email == patient.email
    assert get_patient_profile(patient.id, current_user=patient, db=db_session).data.emergency_contact.name == ''

    with pytest.raises(HTTPException) as exception_info:
        get_patient_profile(patient.id, current_user=other_patient, db=db_session)

    assert exception_info.value.status_code == 403
