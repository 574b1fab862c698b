"""Object storage for uploaded profile pictures and progress media."""

import logging
import mimetypes
import os
import uuid
from urllib.parse import quote

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from backend.core import config

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when an object could not be written or removed."""


def build_object_key(folder: str, filename: str | None, content_type: str | None) -> str:
    extension = os.path.splitext(filename or '')[1].lower()
    if not extension and content_type:
        extension = mimetypes.guess_extension(content_type) or ''
    return f'{folder.strip("/")}/{uuid.uuid4().hex}{extension}'


class LocalFileStorage:
    def __init__(self, root: str, base_url: str):
        self.root = os.path.abspath(root)
        self.base_url = base_url.rstrip('/')

    def _path(self, key: str) -> str:
        safe = key.strip('/').replace('..', '')
        return os.path.join(self.root, safe)

    def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path(key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'wb') as handle:
                handle.write(data)
        except OSError as exc:
            raise StorageError(f'Could not store {key}: {exc}') from exc
        return f'{self.base_url}/{quote(key)}'

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as exc:
            raise StorageError(f'Could not delete {key}: {exc}') from exc


class S3Storage:
    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        public_base_url: str = '',
    ):
        session = boto3.session.Session(
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )
        self.s3 = session.client(
            's3',
            endpoint_url=endpoint_url,
            config=Config(signature_version='s3v4'),
        )
        self.bucket = bucket
        self.region = region
        self.public_base_url = public_base_url.rstrip('/')

    def _url(self, key: str) -> str:
        if self.public_base_url:
            return f'{self.public_base_url}/{quote(key)}'
        return f'https://{self.bucket}.s3.{self.region}.amazonaws.com/{quote(key)}'

    def put(self, key: str, data: bytes, content_type: str) -> str:
        try:
            self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f'Could not store {key}: {exc}') from exc
        return self._url(key)

    def delete(self, key: str) -> None:
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f'Could not delete {key}: {exc}') from exc


def build_storage() -> LocalFileStorage | S3Storage:
    if config.STORAGE_PROVIDER == 's3':
        return S3Storage(
            bucket=config.S3_BUCKET,
            region=config.S3_REGION,
            endpoint_url=config.S3_ENDPOINT_URL,
            access_key=config.S3_ACCESS_KEY,
            secret_key=config.S3_SECRET_KEY,
            public_base_url=config.S3_PUBLIC_BASE_URL,
        )
    return LocalFileStorage(config.LOCAL_STORAGE_ROOT, config.MEDIA_BASE_URL)


def delete_quietly(storage, key: str | None) -> None:
    """Remove a stored object; failures are logged and otherwise ignored."""
    if not key:
        return
    try:
        storage.delete(key)
    except StorageError:
        logger.warning('Could not delete stored object %s', key, exc_info=True)
