import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend.core import config
from backend.core.logging import setup_logging
from backend.database import ensure_schema
from backend.routes import (
    admin_routes,
    appointment_routes,
    auth_routes,
    availability_routes,
    exercise_routes,
    patient_routes,
    progress_routes,
    therapist_routes,
    treatment_routes,
)
from backend.services.mailer import build_mailer
from backend.services.storage import build_storage

setup_logging()
config.validate_runtime_config()

logger = logging.getLogger(__name__)

app = FastAPI(title='PhysioMe API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

app.state.mailer = build_mailer()
app.state.storage = build_storage()

if config.STORAGE_PROVIDER == 'local' and config.MEDIA_BASE_URL.startswith('/'):
    app.mount(
        config.MEDIA_BASE_URL,
        StaticFiles(directory=config.LOCAL_STORAGE_ROOT, check_dir=False),
        name='media',
    )


def error_body(detail) -> dict:
    if isinstance(detail, dict):
        body = {'success': False, 'message': str(detail.get('message', 'Request failed'))}
        body.update({key: value for key, value in detail.items() if key != 'message'})
        return body
    return {'success': False, 'message': str(detail)}


def validation_error_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return 'Invalid request.'
    first_error = errors[0]
    location = '.'.join(str(part) for part in first_error.get('loc', ()) if part not in ('body', 'query', 'path'))
    message = str(first_error.get('msg', 'Invalid request.')).removeprefix('Value error, ')
    return f'{location}: {message}' if location else message


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.detail),
        headers=getattr(exc, 'headers', None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={'success': False, 'message': validation_error_message(exc)},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception('Unhandled error on %s %s', request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={'success': False, 'message': 'Internal server error'},
    )


@app.on_event('startup')
def initialize_database() -> None:
    try:
        ensure_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.get('/')
def root():
    return {'status': 'PhysioMe API Running'}


app.include_router(auth_routes.router, prefix='/api/auth')
app.include_router(availability_routes.router, prefix='/api/availability')
app.include_router(appointment_routes.router, prefix='/api/appointments')
app.include_router(therapist_routes.router, prefix='/api/therapists')
app.include_router(patient_routes.router, prefix='/api/patients')
app.include_router(admin_routes.router, prefix='/api/admin')
app.include_router(exercise_routes.router, prefix='/api/exercises')
app.include_router(treatment_routes.router, prefix='/api/treatment-plans')
app.include_router(progress_routes.router, prefix='/api/progress')
