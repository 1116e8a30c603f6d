"""
Local object storage for profile photos and identity documents.

Objects live under ``STORAGE_DIR/<bucket>/<user_id>/...`` and are served back
by the ``/storage`` static mount.
"""
import logging
import os
import time

from fastapi import HTTPException, UploadFile, status

from zemi import config

logger = logging.getLogger(__name__)

IDENTITY_BUCKET = "identity-documents"


def file_extension(filename: str | None, default: str = "jpg") -> str:
    if filename and "." in filename:
        return filename.rsplit(".", 1)[-1].lower()
    return default


def timestamped_path(user_id: str, filename: str | None, suffix: str = "") -> str:
    return f"{user_id}/{int(time.time() * 1000)}{suffix}.{file_extension(filename)}"


def public_url(bucket: str, path: str) -> str:
    return f"{config.PUBLIC_BASE_URL.rstrip('/')}/storage/{bucket}/{path}"


async def read_image(upload: UploadFile) -> bytes:
    """Read an uploaded image, enforcing type and size limits."""
    if not (upload.content_type or "").startswith("image/"):
        raise HTTPException(status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, "Veuillez sélectionner une image")
    data = await upload.read()
    if len(data) > config.MAX_UPLOAD_BYTES:
        limit_mb = config.MAX_UPLOAD_BYTES // (1024 * 1024)
        raise HTTPException(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            f"Le fichier ne doit pas dépasser {limit_mb} MB",
        )
    return data


def put_object(bucket: str, path: str, data: bytes) -> str:
    """Write (or overwrite) an object and return its public URL."""
    target = os.path.join(config.STORAGE_DIR, bucket, *path.split("/"))
    os.makedirs(os.path.dirname(target), exist_ok=True)
    with open(target, "wb") as fh:
        fh.write(data)
    logger.info(f"Stored {len(data)} bytes at {bucket}/{path}")
    return public_url(bucket, path)


async def upload_image(upload: UploadFile, bucket: str, path: str) -> str:
    data = await read_image(upload)
    return put_object(bucket, path, data)
