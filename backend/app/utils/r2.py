"""Cloudflare R2 client wrapper: S3-compatible object storage.

Sync boto3 calls are exposed as plain functions; `R2Storage` offloads them
to a thread and is the storage adapter the services depend on. Key layout:
    users/{user_id}/uploads/{upload_id}.jpg
    users/{user_id}/generations/{generation_id}.jpg
"""

from __future__ import annotations

import asyncio
from typing import Any

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.config import settings
from app.errors import StorageError
from app.utils.http import fetch_bytes

logger = structlog.get_logger()


def _build_client() -> Any:
    """Create an S3 client pointed at Cloudflare R2."""
    return boto3.client(
        "s3",
        endpoint_url=f"https://{settings.r2_account_id}.r2.cloudflarestorage.com",
        aws_access_key_id=settings.r2_access_key_id,
        aws_secret_access_key=settings.r2_secret_access_key,
        config=Config(signature_version="s3v4"),
        region_name="auto",
    )


_client: Any = None


def _get_client() -> Any:
    """Lazy-init singleton client."""
    global _client  # noqa: PLW0603
    if _client is None:
        _client = _build_client()
    return _client


def reset_client() -> None:
    """Reset the singleton client (for testing)."""
    global _client  # noqa: PLW0603
    _client = None


def upload_key(user_id: str, upload_id: str) -> str:
    return f"users/{user_id}/uploads/{upload_id}.jpg"


def generation_output_key(user_id: str, generation_id: str) -> str:
    return f"users/{user_id}/generations/{generation_id}.jpg"


def is_remote_url(key_or_url: str) -> bool:
    return key_or_url.startswith(("http://", "https://"))


def upload_object(key: str, data: bytes, content_type: str = "image/jpeg") -> str:
    """Upload bytes to R2. Returns the storage key."""
    client = _get_client()
    client.put_object(
        Bucket=settings.r2_bucket_name,
        Key=key,
        Body=data,
        ContentType=content_type,
    )
    logger.info("r2_upload", key=key, size=len(data), content_type=content_type)
    return key


def generate_presigned_url(key: str) -> str:
    """Generate a pre-signed GET URL for downloading an object.

    URL expires after `settings.presigned_url_expiry_seconds` (default 1 hour).
    """
    client = _get_client()
    try:
        url: str = client.generate_presigned_url(
            "get_object",
            Params={"Bucket": settings.r2_bucket_name, "Key": key},
            ExpiresIn=settings.presigned_url_expiry_seconds,
        )
    except ClientError as e:
        logger.error("r2_presign_failed", key=key, error=str(e))
        raise
    return url


def head_object(key: str) -> bool:
    """Check if an object exists in R2. Returns True if found."""
    client = _get_client()
    try:
        client.head_object(Bucket=settings.r2_bucket_name, Key=key)
        return True
    except ClientError as e:
        if e.response["Error"]["Code"] in ("404", "NoSuchKey"):
            return False
        logger.error("r2_head_failed", key=key, error=str(e))
        raise


def resolve_url(key_or_url: str) -> str:
    """Convert an R2 storage key to a presigned URL; pass through existing URLs."""
    if is_remote_url(key_or_url):
        return key_or_url
    return generate_presigned_url(key_or_url)


class R2Storage:
    """Async storage adapter over the R2 helpers.

    boto3 and botocore failures surface as StorageError.
    """

    async def upload_bytes(self, key: str, data: bytes, content_type: str = "image/jpeg") -> str:
        try:
            return await asyncio.to_thread(upload_object, key, data, content_type)
        except (ClientError, BotoCoreError) as exc:
            logger.error("r2_upload_failed", key=key, error=str(exc))
            raise StorageError(f"Could not store {key}", detail=str(exc)) from exc

    async def upload_from_url(self, url: str, key: str) -> str:
        data, content_type = await fetch_bytes(url)
        return await self.upload_bytes(key, data, content_type or "image/jpeg")

    async def exists(self, key: str) -> bool:
        try:
            return await asyncio.to_thread(head_object, key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Could not check {key}", detail=str(exc)) from exc

    async def signed_url(self, key_or_url: str) -> str:
        try:
            return await asyncio.to_thread(resolve_url, key_or_url)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Could not sign {key_or_url}", detail=str(exc)) from exc
