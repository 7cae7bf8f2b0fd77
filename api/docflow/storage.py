import io
import logging

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError

from .config import MINIO_ENDPOINT, MINIO_ACCESS_KEY, MINIO_SECRET_KEY, MINIO_BUCKET, MINIO_SECURE
from .errors import NotFound, TransientIOFailure

logger = logging.getLogger(__name__)

_client = Minio(
    MINIO_ENDPOINT,
    access_key=MINIO_ACCESS_KEY,
    secret_key=MINIO_SECRET_KEY,
    secure=MINIO_SECURE,
)


def artifact_key(tenant_id: int, kind: str, document_id: int) -> str:
    return f"tenants/{tenant_id}/{kind}s/{document_id}.pdf"


def ensure_bucket():
    if not _client.bucket_exists(MINIO_BUCKET):
        _client.make_bucket(MINIO_BUCKET)


def put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream"):
    try:
        ensure_bucket()
        _client.put_object(MINIO_BUCKET, key, io.BytesIO(data), length=len(data), content_type=content_type)
    except (S3Error, HTTPError) as exc:
        logger.warning("storage write failed key=%s: %s", key, exc)
        raise TransientIOFailure(f"could not store {key}") from exc


def get_bytes(key: str) -> bytes:
    try:
        resp = _client.get_object(MINIO_BUCKET, key)
    except S3Error as exc:
        if exc.code == "NoSuchKey":
            raise NotFound(f"artifact {key} not found") from exc
        raise TransientIOFailure(f"could not read {key}") from exc
    except HTTPError as exc:
        raise TransientIOFailure(f"could not read {key}") from exc
    try:
        return resp.read()
    finally:
        resp.close()
        resp.release_conn()
