import json
import logging
from typing import Any, Generic, TypeVar

from fastapi import HTTPException, Request, UploadFile, status
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core import config
from backend.database import ensure_schema
from backend.services.storage import StorageError, build_object_key

logger = logging.getLogger(__name__)

DataT = TypeVar('DataT')

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and database credentials.'


class Envelope(BaseModel, Generic[DataT]):
    success: bool = True
    message: str | None = None
    data: DataT | None = None


class PartySummary(BaseModel):
    id: int
    name: str
    email: str

    class Config:
        from_attributes = True


def ensure_database_ready() -> None:
    try:
        ensure_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_DETAIL,
        ) from exc


def database_unavailable(db: Session | None, exc: SQLAlchemyError) -> HTTPException:
    logger.error('Database operation failed', exc_info=exc)
    if db is not None:
        db.rollback()
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def get_mailer(request: Request):
    return request.app.state.mailer


def get_storage(request: Request):
    return request.app.state.storage


def read_image_upload(upload: UploadFile, allow_video: bool = False) -> tuple[bytes, str]:
    """Return the upload's bytes and content type after type/size checks."""
    content_type = (upload.content_type or '').lower()
    allowed = content_type.startswith('image/') or (allow_video and content_type.startswith('video/'))
    if not allowed:
        kinds = 'image or video' if allow_video else 'image'
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f'Only {kinds} files are allowed.')

    data = upload.file.read(config.MAX_UPLOAD_BYTES + 1)
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Files must be {config.MAX_UPLOAD_BYTES // (1024 * 1024)} MB or smaller.',
        )
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Uploaded file is empty.')
    return data, content_type


def not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def forbidden(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def bad_request(detail: Any) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def conflict(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


def parse_json_field(raw: str | None, label: str):
    """Decode a JSON-encoded multipart field; blank means not supplied."""
    if raw is None or raw == '':
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise bad_request(f'Invalid {label} format') from exc


def validation_message(exc: ValidationError) -> str:
    first_error = exc.errors()[0]
    message = str(first_error.get('msg', 'Invalid request.'))
    return message.removeprefix('Value error, ')


def replace_profile_picture(storage, owner, upload: UploadFile, folder: str) -> str | None:
    """Store ``upload`` and point ``owner`` at it; returns the replaced object key."""
    data, content_type = read_image_upload(upload)
    key = build_object_key(folder, upload.filename, content_type)
    try:
        url = storage.put(key, data, content_type)
    except StorageError as exc:
        logger.warning('Profile picture upload failed for user %s', owner.id, exc_info=True)
        raise bad_request('Failed to upload profile picture') from exc

    previous_key = owner.profile_picture_key
    owner.profile_picture_url = url
    owner.profile_picture_key = key
    return previous_key
