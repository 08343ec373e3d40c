"""Result Transfer: move short-lived provider outputs into durable storage.

Provider CDNs usually expire outputs within hours or days, and some adapters
return inline data URIs. S3ResultTransfer copies either kind into an
S3-compatible bucket and returns the durable URL.
"""

import asyncio
import base64
import binascii
import mimetypes
import re
from typing import Any, Protocol
from uuid import uuid4

import boto3
import httpx
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from unigen.core.timezone import utcnow
from unigen.services.exceptions import S3UploadError

logger = structlog.get_logger(__name__)

_DATA_URI_PATTERN = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<b64>;base64)?,(?P<data>.*)$", re.S
)

_EXTENSION_OVERRIDES = {
    "image/jpeg": ".jpg",
    "audio/mpeg": ".mp3",
    "video/mp4": ".mp4",
}


class ResultTransfer(Protocol):
    """transfer(source_url, path_prefix) → durable URL."""

    async def transfer(self, source_url: str, path_prefix: str) -> str: ...


class PassthroughResultTransfer:
    """Used when no bucket is configured: artifacts keep their provider URLs."""

    async def transfer(self, source_url: str, path_prefix: str) -> str:
        return source_url


def extension_for(content_type: str) -> str:
    mime = content_type.split(";")[0].strip().lower()
    if mime in _EXTENSION_OVERRIDES:
        return _EXTENSION_OVERRIDES[mime]
    return mimetypes.guess_extension(mime) or ".bin"


def decode_data_uri(source_url: str) -> tuple[bytes, str]:
    """Decode a data URI into (bytes, content type).

    Raises:
        S3UploadError: If the URI is malformed (not retryable)
    """
    match = _DATA_URI_PATTERN.match(source_url)
    if not match:
        raise S3UploadError("Malformed data URI", retryable=False)
    content_type = match.group("mime") or "application/octet-stream"
    payload = match.group("data")
    if not match.group("b64"):
        return payload.encode("utf-8"), content_type
    try:
        return base64.b64decode(payload, validate=True), content_type
    except (binascii.Error, ValueError) as e:
        raise S3UploadError("Malformed base64 payload in data URI", retryable=False) from e


class S3ResultTransfer:
    """Uploads artifacts to an S3-compatible bucket.

    boto3 is synchronous, so uploads run in a worker thread.
    """

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        public_base_url: str | None = None,
        download_timeout: float = 60.0,
        client: Any | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize S3 transfer.

        Args:
            bucket: Target bucket name
            region: Bucket region (used for the default public URL)
            endpoint_url: Custom endpoint for S3-compatible stores (R2, MinIO)
            public_base_url: CDN/public URL prefix for stored objects
            download_timeout: Timeout for fetching provider outputs
            client: Preconfigured boto3 S3 client (tests inject a stub)
            transport: Optional httpx transport for downloads
        """
        if not bucket:
            raise ValueError("bucket is required")
        self.bucket = bucket
        self.region = region
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.download_timeout = download_timeout
        self._transport = transport
        self._client = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            config=Config(signature_version="s3v4", retries={"max_attempts": 1}),
        )

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def build_key(self, path_prefix: str, content_type: str) -> str:
        prefix = path_prefix.strip("/")
        dated = utcnow().strftime("%Y/%m/%d")
        name = f"{uuid4().hex}{extension_for(content_type)}"
        return "/".join(part for part in (prefix, dated, name) if part)

    async def fetch(self, source_url: str) -> tuple[bytes, str]:
        """Load the artifact bytes from a data URI or an http(s) URL."""
        if source_url.startswith("data:"):
            return decode_data_uri(source_url)

        try:
            async with httpx.AsyncClient(
                timeout=self.download_timeout, transport=self._transport, follow_redirects=True
            ) as client:
                response = await client.get(source_url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise S3UploadError(f"Failed to download artifact: {e}") from e

        content_type = response.headers.get("content-type", "application/octet-stream")
        return response.content, content_type.split(";")[0].strip()

    async def transfer(self, source_url: str, path_prefix: str) -> str:
        """Copy one artifact into the bucket.

        Raises:
            S3UploadError: Download or upload failed (retryable unless the source is malformed)
        """
        body, content_type = await self.fetch(source_url)
        if not body:
            raise S3UploadError("Artifact is empty", retryable=False)

        key = self.build_key(path_prefix, content_type)
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise S3UploadError(f"Failed to upload {key}: {e}", details={"key": key}) from e

        url = self.public_url(key)
        logger.info("transfer.uploaded", key=key, bytes=len(body), content_type=content_type)
        return url


def create_result_transfer(settings: Any) -> ResultTransfer:
    """Build the configured transfer backend from Settings."""
    if not settings.storage_enabled:
        return PassthroughResultTransfer()
    return S3ResultTransfer(
        bucket=settings.s3_bucket,
        region=settings.s3_region,
        endpoint_url=settings.s3_endpoint_url,
        public_base_url=settings.s3_public_base_url,
        download_timeout=settings.transfer_download_timeout_seconds,
    )
