import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_admin
from backend.database import get_db
from backend.models.user import ApprovalStatus, User, UserRole
from backend.routes.common import Envelope, database_unavailable, ensure_database_ready, not_found
from backend.routes.therapist_routes import TherapistProfileResponse, to_profile_response

router = APIRouter(tags=['admin'])
logger = logging.getLogger(__name__)


class TherapistApprovalRequest(BaseModel):
    status: ApprovalStatus

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: ApprovalStatus) -> ApprovalStatus:
        if value == ApprovalStatus.PENDING:
            raise ValueError('Status must be approved or rejected.')
        return value


@router.get('/therapists', response_model=Envelope[list[TherapistProfileResponse]])
def list_therapists(
    approval_status: ApprovalStatus | None = Query(default=None, alias='status'),
    current_user: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        query = db.query(User).filter(User.role == UserRole.PHYSIOTHERAPIST.value)
        if approval_status is not None:
            query = query.filter(User.status == approval_status.value)

        therapists = query.order_by(User.created_at.desc(), User.id.desc()).all()
        return Envelope(data=[to_profile_response(therapist) for therapist in therapists])
    except SQLAlchemyError as exc:
        raise database_unavailable(None, exc) from exc


@router.put('/therapists/{therapist_id}/status', response_model=Envelope[TherapistProfileResponse])
def set_therapist_status(
    therapist_id: int,
    data: TherapistApprovalRequest,
    current_user: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        therapist = db.query(User).filter(
            User.id == therapist_id,
            User.role == UserRole.PHYSIOTHERAPIST.value,
        ).first()
        if therapist is None:
            raise not_found('Therapist not found')

        therapist.status = data.status.value
        db.commit()
        db.refresh(therapist)
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    logger.info('Admin %s set therapist %s to %s', current_user.id, therapist_id, data.status.value)
    return Envelope(message=f'Therapist {data.status.value}', data=to_profile_response(therapist))
