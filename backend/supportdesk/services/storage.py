"""S3 blob storage for attachments and inline images."""

from __future__ import annotations

import re
import threading
import uuid
from typing import Any

import boto3

from supportdesk.config import settings

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

# Uploads run on worker threads. boto3's default session is not thread-safe,
# so one client is built from a private session and shared (clients are).
_client: Any = None
_client_lock = threading.Lock()


def _get_s3_client() -> Any:
    global _client
    with _client_lock:
        if _client is None:
            _client = boto3.session.Session().client(
                "s3",
                region_name=settings.S3_REGION,
                aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
                aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            )
    return _client


def generate_key(parts: list[str], file_name: str) -> str:
    """Build a unique object key such as ``attachments/<slug>/<uuid>/<name>``."""
    safe_name = _UNSAFE_KEY_CHARS.sub("_", file_name).strip("_") or "untitled"
    return "/".join([*parts, uuid.uuid4().hex, safe_name])


def upload_file(key: str, data: bytes, *, mimetype: str) -> str:
    """Upload *data* under *key* and return the key."""
    _get_s3_client().put_object(
        Bucket=settings.S3_BUCKET,
        Key=key,
        Body=data,
        ContentType=mimetype,
    )
    return key
