"""Outbound download helper used when re-hosting provider output.

Provider result URLs are short-lived, so output is copied into R2 as soon as
a job succeeds. Transport failures and non-image responses raise
StorageError; 429 and 5xx are flagged retryable in the message detail.
"""

from __future__ import annotations

import httpx

from app.errors import StorageError

DOWNLOAD_TIMEOUT_SECONDS = 30.0
MAX_DOWNLOAD_BYTES = 25 * 1024 * 1024


async def fetch_bytes(
    url: str, *, client: httpx.AsyncClient | None = None
) -> tuple[bytes, str | None]:
    """Download `url`. Returns (body, content_type)."""
    owns_client = client is None
    http = client or httpx.AsyncClient(follow_redirects=True)
    try:
        response = await http.get(url, timeout=DOWNLOAD_TIMEOUT_SECONDS)
    except httpx.TimeoutException as exc:
        raise StorageError(f"Timeout downloading {url[:100]}") from exc
    except httpx.RequestError as exc:
        raise StorageError(
            f"Network error downloading {url[:100]}: {type(exc).__name__}"
        ) from exc
    finally:
        if owns_client:
            await http.aclose()

    if response.status_code >= 400:
        transient = response.status_code >= 500 or response.status_code == 429
        raise StorageError(
            f"HTTP {response.status_code} downloading {url[:100]}",
            detail="transient" if transient else "permanent",
        )

    content_type = response.headers.get("content-type", "")
    if content_type and not content_type.startswith("image/"):
        raise StorageError(f"Expected image content-type, got: {content_type}")
    if len(response.content) > MAX_DOWNLOAD_BYTES:
        raise StorageError(f"Downloaded object too large: {len(response.content)} bytes")
    return response.content, content_type or None
