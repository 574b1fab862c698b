import os

from dotenv import load_dotenv

load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG" if APP_ENV == "development" else "INFO")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./physio.db")

CORS_ORIGINS = _get_list(
    os.getenv("CORS_ORIGINS"),
    ["http://localhost:5173", "http://localhost:5174", "http://localhost:3000"],
)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))
AUTH_COOKIE_NAME = os.getenv("AUTH_COOKIE_NAME", "access_token")
AUTH_COOKIE_SECURE = _get_bool(os.getenv("AUTH_COOKIE_SECURE"), default=APP_ENV == "production")

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_USE_TLS = _get_bool(os.getenv("SMTP_USE_TLS"), default=True)
SMTP_TIMEOUT_SECONDS = int(os.getenv("SMTP_TIMEOUT_SECONDS", "10"))
FROM_NAME = os.getenv("FROM_NAME", "PhysioMe")
FROM_EMAIL = os.getenv("FROM_EMAIL", "no-reply@physiome.local")

STORAGE_PROVIDER = os.getenv("STORAGE_PROVIDER", "local")
LOCAL_STORAGE_ROOT = os.getenv("LOCAL_STORAGE_ROOT", "./media")
MEDIA_BASE_URL = os.getenv("MEDIA_BASE_URL", "/media")
S3_BUCKET = os.getenv("S3_BUCKET", "physiome-media")
S3_REGION = os.getenv("S3_REGION", "us-east-1")
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL") or None
S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY") or None
S3_SECRET_KEY = os.getenv("S3_SECRET_KEY") or None
S3_PUBLIC_BASE_URL = os.getenv("S3_PUBLIC_BASE_URL", "")

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))

OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))
OUTBOX_BATCH_SIZE = int(os.getenv("OUTBOX_BATCH_SIZE", "50"))


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if STORAGE_PROVIDER not in {"local", "s3"}:
        raise RuntimeError("STORAGE_PROVIDER must be 'local' or 's3'.")
