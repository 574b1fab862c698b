import logging
from datetime import date, datetime
from enum import Enum

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel, ValidationError, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_patient, get_current_user
from backend.database import get_db
from backend.models.patient import PatientProfile
from backend.models.user import User, UserRole
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

router = APIRouter(tags=['patients'])
logger = logging.getLogger(__name__)


class Gender(str, Enum):
    MALE = 'male'
    FEMALE = 'female'
    OTHER = 'other'


class EmergencyContact(BaseModel):
    name: str = ''
    relationship: str = ''
    phone: str = ''


class InsuranceInfo(BaseModel):
    provider: str = ''
    policy_number: str = ''
    expiry_date: date | None = None


class PatientProfileResponse(BaseModel):
    id: int
    name: str
    email: str
    phone: str | None = None
    profile_picture_url: str | None = None
    date_of_birth: date | None = None
    gender: str | None = None
    address: str | None = None
    medical_history: str = ''
    conditions: list[str] = []
    allergies: str = ''
    medications: str = ''
    emergency_contact: EmergencyContact
    insurance_info: InsuranceInfo
    created_at: datetime | None = None


class PatientProfileUpdate(BaseModel):
    name: str | None = None
    phone: str | None = None
    date_of_birth: date | None = None
    gender: Gender | None = None
    address: str | None = None
    medical_history: str | None = None
    conditions: list[str] | None = None
    allergies: str | None = None
    medications: str | None = None
    emergency_contact: EmergencyContact | None = None
    insurance_info: InsuranceInfo | None = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            raise ValueError('Name must not be empty.')
        return normalized

    @field_validator('date_of_birth')
    @classmethod
    def validate_date_of_birth(cls, value: date | None) -> date | None:
        if value is not None and value > date.today():
            raise ValueError('Date of birth cannot be in the future.')
        return value

    @field_validator('conditions')
    @classmethod
    def validate_conditions(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return [item.strip() for item in value if item and item.strip()]


USER_FIELDS = ('name', 'phone')


def patient_profile_form(
    name: str | None = Form(default=None),
    phone: str | None = Form(default=None),
    date_of_birth: str | None = Form(default=None),
    gender: str | None = Form(default=None),
    address: str | None = Form(default=None),
    medical_history: str | None = Form(default=None),
    conditions: str | None = Form(default=None),
    allergies: str | None = Form(default=None),
    medications: str | None = Form(default=None),
    emergency_contact: str | None = Form(default=None),
    insurance_info: str | None = Form(default=None),
) -> PatientProfileUpdate:
    """Collect multipart fields; nested objects and ``conditions`` arrive JSON-encoded."""
    values = {
        'name': name,
        'phone': phone,
        'date_of_birth': date_of_birth or None,
        'gender': gender or None,
        'address': address,
        'medical_history': medical_history,
        'conditions': parse_json_field(conditions, 'conditions'),
        'allergies': allergies,
        'medications': medications,
        'emergency_contact': parse_json_field(emergency_contact, 'emergency contact'),
        'insurance_info': parse_json_field(insurance_info, 'insurance info'),
    }
    try:
        return PatientProfileUpdate(**{key: value for key, value in values.items() if value is not None})
    except ValidationError as exc:
        raise bad_request(validation_message(exc)) from exc


def to_profile_response(patient: User, profile: PatientProfile | None) -> PatientProfileResponse:
    return PatientProfileResponse(
        id=patient.id,
        name=patient.name,
        email=patient.email,
        phone=patient.phone,
        profile_picture_url=patient.profile_picture_url,
        date_of_birth=profile.date_of_birth if profile else None,
        gender=profile.gender if profile else None,
        address=profile.address if profile else None,
        medical_history=(profile.medical_history if profile else None) or '',
        conditions=(profile.conditions if profile else None) or [],
        allergies=(profile.allergies if profile else None) or '',
        medications=(profile.medications if profile else None) or '',
        emergency_contact=EmergencyContact(**((profile.emergency_contact if profile else None) or {})),
        insurance_info=InsuranceInfo(**((profile.insurance_info if profile else None) or {})),
        created_at=patient.created_at,
    )


def get_patient_or_404(db: Session, patient_id: int) -> User:
    patient = db.query(User).filter(
        User.id == patient_id,
        User.role == UserRole.PATIENT.value,
    ).first()
    if patient is None:
        raise not_found('Patient not found')
    return patient


def get_profile(db: Session, patient_id: int) -> PatientProfile | None:
    return db.query(PatientProfile).filter(PatientProfile.user_id == patient_id).first()


@router.get('/{patient_id}/profile', response_model=Envelope[PatientProfileResponse])
def get_patient_profile(
    patient_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if current_user.id != patient_id and current_user.role != UserRole.ADMIN.value:
        raise forbidden('Not authorized to access this profile')

    ensure_database_ready()

    try:
        patient = get_patient_or_404(db, patient_id)
        return Envelope(data=to_profile_response(patient, get_profile(db, patient_id)))
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc


@router.put('/{patient_id}/profile', response_model=Envelope[PatientProfileResponse])
def update_patient_profile(
    patient_id: int,
    updates: PatientProfileUpdate = Depends(patient_profile_form),
    profile_picture: UploadFile | None = File(default=None),
    current_user: User = Depends(get_current_patient),
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
):
    if current_user.id != patient_id:
        raise forbidden('Not authorized to access this profile')

    changes = updates.model_dump(exclude_unset=True, mode='json')
    if not changes and profile_picture is None:
        raise bad_request('No data provided for update')

    ensure_database_ready()

    previous_key = new_key = None
    try:
        patient = get_patient_or_404(db, patient_id)

        if profile_picture is not None:
            previous_key = replace_profile_picture(storage, patient, profile_picture, 'patients')
            new_key = patient.profile_picture_key

        for field_name in USER_FIELDS:
            if field_name in changes:
                setattr(patient, field_name, changes.pop(field_name))

        profile = get_profile(db, patient_id)
        if profile is None:
            profile = PatientProfile(user_id=patient_id)
            db.add(profile)

        if 'date_of_birth' in changes:
            changes['date_of_birth'] = updates.date_of_birth
        for field_name, value in changes.items():
            setattr(profile, field_name, value)

        db.commit()
        db.refresh(patient)
        db.refresh(profile)
    except SQLAlchemyError as exc:
        delete_quietly(storage, new_key)
        raise database_unavailable(db, exc) from exc

    if new_key is not None:
        delete_quietly(storage, previous_key)

    logger.info('Patient %s updated profile', patient_id)
    return Envelope(message='Profile updated successfully', data=to_profile_response(patient, profile))
