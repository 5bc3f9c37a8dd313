import io
import logging
from minio import Minio
from .config import MINIO_ENDPOINT, MINIO_ACCESS_KEY, MINIO_SECRET_KEY, MINIO_BUCKET, MINIO_SECURE

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"

_client = Minio(
    MINIO_ENDPOINT,
    access_key=MINIO_ACCESS_KEY,
    secret_key=MINIO_SECRET_KEY,
    secure=MINIO_SECURE,
)
_bucket_ready = False

def ensure_bucket():
    global _bucket_ready
    if _bucket_ready:
        return
    if not _client.bucket_exists(MINIO_BUCKET):
        logger.info("creating bucket %s", MINIO_BUCKET)
        _client.make_bucket(MINIO_BUCKET)
    _bucket_ready = True

def executed_document_key(organization_id: int, agreement_id: int, envelope_id: str) -> str:
    return f"organizations/{organization_id}/agreements/{agreement_id}/envelopes/{envelope_id}.pdf"

def save_executed_document(key: str, pdf: bytes) -> None:
    ensure_bucket()
    _client.put_object(MINIO_BUCKET, key, io.BytesIO(pdf), length=len(pdf), content_type=PDF_CONTENT_TYPE)
    logger.info("stored executed document %s (%d bytes)", key, len(pdf))

def load_executed_document(key: str) -> bytes:
    resp = _client.get_object(MINIO_BUCKET, key)
    try:
        return resp.read()
    finally:
        resp.close()
        resp.release_conn()
