"""
Object Storage — read side of the external document store

The audit pipeline never uploads anything: documents already live in the
bucket, and each JobFileItem carries an opaque source_reference that
points at one object. This module resolves that reference to bytes.

Key resolution:
    <S3_KEY_PREFIX>/<source_reference>     when a prefix is configured
    <source_reference>                     otherwise

The reference comes from the job snapshot, which is written server-side
at createJob time; leading slashes and ".." segments are still stripped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import aioboto3
from botocore.exceptions import ClientError

from auditvault.core.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Storage config
# ---------------------------------------------------------------------------

@dataclass
class StorageConfig:
    bucket:       str = field(default_factory=lambda: settings.s3_bucket)
    key_prefix:   str = field(default_factory=lambda: settings.s3_key_prefix)
    endpoint_url: str = field(default_factory=lambda: settings.s3_endpoint_url)
    region:       str = field(default_factory=lambda: settings.aws_region)

    def key_for(self, reference: str) -> str:
        """Map a source_reference to the full object key."""
        parts = [p for p in reference.strip().split("/") if p and p not in (".", "..")]
        if not parts:
            raise ValueError(f"Invalid source reference: {reference!r}")
        key = "/".join(parts)
        prefix = self.key_prefix.strip("/")
        return f"{prefix}/{key}" if prefix else key


# ---------------------------------------------------------------------------
# Object storage
# ---------------------------------------------------------------------------

class ObjectStorage:
    """
    Async, read-only access to the document bucket.

    fetch_bytes() is the only call the extraction pipeline makes; it is
    safe to share one instance across requests and Celery tasks because a
    fresh client is opened per call.
    """

    def __init__(self, config: StorageConfig | None = None) -> None:
        self._cfg = config or StorageConfig()
        self._session = aioboto3.Session()

    @property
    def bucket(self) -> str:
        return self._cfg.bucket

    def _client(self):
        """Return a scoped async S3 client context manager."""
        kwargs: dict = {"region_name": self._cfg.region}
        # LocalStack / MinIO
        if self._cfg.endpoint_url:
            kwargs["endpoint_url"] = self._cfg.endpoint_url
        if settings.aws_access_key_id and settings.aws_secret_access_key:
            kwargs["aws_access_key_id"]     = settings.aws_access_key_id
            kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
        return self._session.client("s3", **kwargs)

    async def fetch_bytes(self, reference: str) -> bytes:
        """
        Download the object behind a source_reference.

        Raises:
            FileNotFoundError: the object does not exist.
            ValueError:        the reference is empty after normalisation.
            ClientError:       any other S3 failure (access denied, throttling …).
        """
        key = self._cfg.key_for(reference)
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._cfg.bucket, Key=key)
                data = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise

        logger.debug("S3 fetch ok | bucket=%s key=%s size=%d", self._cfg.bucket, key, len(data))
        return data
