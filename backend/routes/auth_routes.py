import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth import jwt_handler
from backend.auth.dependencies import get_current_user
from backend.auth.passwords import hash_password, verify_password
from backend.core import config
from backend.core.scheduling import DEFAULT_APPOINTMENT_DURATION_MINUTES
from backend.database import get_db
from backend.models.user import ApprovalStatus, User, UserRole
from backend.routes.common import (
    Envelope,
    conflict,
    database_unavailable,
    ensure_database_ready,
    forbidden,
)

router = APIRouter(tags=['auth'])
logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
SELF_REGISTER_ROLES = (UserRole.PATIENT, UserRole.PHYSIOTHERAPIST)


def _normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    local_part, _, domain = normalized.partition('@')
    if not local_part or '.' not in domain:
        raise ValueError('A valid email address is required.')
    return normalized


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str
    role: UserRole = UserRole.PATIENT
    phone: str | None = None
    specialization: str | None = None
    license_number: str | None = None

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator('password')
    @classmethod
    def validate_password(cls, value: str) -> str:
        if len(value) < MIN_PASSWORD_LENGTH:
            raise ValueError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters.')
        return value

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Name is required.')
        return normalized

    @field_validator('role')
    @classmethod
    def validate_role(cls, value: UserRole) -> UserRole:
        if value not in SELF_REGISTER_ROLES:
            raise ValueError('Only patient and physiotherapist accounts can be registered.')
        return value


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return value.strip().lower()


class UserResponse(BaseModel):
    id: int
    email: str
    name: str
    role: str
    status: str
    phone: str | None = None
    profile_picture_url: str | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = 'bearer'
    user: UserResponse


def set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=config.AUTH_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=config.AUTH_COOKIE_SECURE,
        samesite='lax',
        max_age=config.JWT_EXPIRES_MINUTES * 60,
    )


@router.post('/register', response_model=Envelope[UserResponse], status_code=status.HTTP_201_CREATED)
def register(data: RegisterRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    is_therapist = data.role == UserRole.PHYSIOTHERAPIST
    user = User(
        email=data.email,
        hashed_password=hash_password(data.password),
        role=data.role.value,
        name=data.name,
        phone=data.phone,
        status=ApprovalStatus.PENDING.value if is_therapist else ApprovalStatus.APPROVED.value,
        specialization=data.specialization if is_therapist else None,
        license_number=data.license_number if is_therapist else None,
        working_days=[],
        appointment_duration=DEFAULT_APPOINTMENT_DURATION_MINUTES,
    )

    try:
        if db.query(User.id).filter(User.email == data.email).first() is not None:
            raise conflict('Email already registered')

        db.add(user)
        db.commit()
        db.refresh(user)
    except IntegrityError as exc:
        db.rollback()
        raise conflict('Email already registered') from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    logger.info('Registered %s account %s', user.role, user.id)
    message = 'Registration successful'
    if is_therapist:
        message = 'Registration successful. Your account is pending admin approval.'
    return Envelope(message=message, data=UserResponse.model_validate(user))


@router.post('/login', response_model=Envelope[LoginResponse])
def login(data: LoginRequest, response: Response, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        user = db.query(User).filter(User.email == data.email).first()
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc

    if user is None or not verify_password(data.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail='Incorrect email or password',
            headers={'WWW-Authenticate': 'Bearer'},
        )

    if user.status == ApprovalStatus.REJECTED.value:
        raise forbidden('Your account registration was rejected.')

    token = jwt_handler.create_access_token(subject=user.email, role=user.role)
    set_auth_cookie(response, token)
    return Envelope(
        message='Login successful',
        data=LoginResponse(access_token=token, user=UserResponse.model_validate(user)),
    )


@router.post('/logout', response_model=Envelope[None])
def logout(response: Response):
    response.delete_cookie(config.AUTH_COOKIE_NAME)
    return Envelope(message='Logged out')


@router.get('/me', response_model=Envelope[UserResponse])
def me(current_user: User = Depends(get_current_user)):
    return Envelope(data=UserResponse.model_validate(current_user))
