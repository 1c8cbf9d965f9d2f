"""Static site publishing to S3-compatible object storage.

Works with AWS S3, MinIO, LocalStack, and other S3-compatible services.
"""
import asyncio
import functools
import mimetypes
from pathlib import Path
from typing import TYPE_CHECKING, Any, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from deployflow.config import settings
from deployflow.exceptions import PublishError
from deployflow.utils.logging import get_logger

if TYPE_CHECKING:
    from deployflow.services.log_sink import RunLog

logger = get_logger(__name__)

# DeleteObjects accepts at most this many keys per request
DELETE_BATCH_SIZE = 1000

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def content_type_for(path: Path) -> str:
    """Guess the Content-Type header for a published file."""
    content_type, _ = mimetypes.guess_type(path.name)
    return content_type or DEFAULT_CONTENT_TYPE


def create_s3_client() -> Any:
    """Build a boto3 S3 client from settings."""
    client_kwargs = {
        "service_name": "s3",
        "region_name": settings.aws_region,
        "config": Config(signature_version="s3v4"),
    }

    if settings.s3_endpoint_url:
        client_kwargs["endpoint_url"] = settings.s3_endpoint_url

    if settings.aws_access_key_id and settings.aws_secret_access_key:
        client_kwargs["aws_access_key_id"] = settings.aws_access_key_id
        client_kwargs["aws_secret_access_key"] = settings.aws_secret_access_key

    return boto3.client(**client_kwargs)


class ArtifactPublisher:
    """Uploads build output under a per-project key prefix."""

    def __init__(
        self,
        client: Optional[Any] = None,
        bucket: Optional[str] = None,
        key_prefix: Optional[str] = None,
        concurrency: Optional[int] = None,
    ) -> None:
        self._client = client
        self.bucket = bucket or settings.s3_bucket_name
        self.key_prefix = (key_prefix or settings.s3_key_prefix).strip("/")
        self.concurrency = concurrency or settings.s3_upload_concurrency

    @property
    def client(self) -> Any:
        """S3 client, created on first use."""
        if self._client is None:
            self._client = create_s3_client()
            logger.info(
                "S3 client initialized",
                bucket=self.bucket,
                endpoint=settings.s3_endpoint_url,
                region=settings.aws_region,
            )
        return self._client

    def prefix_for(self, subdomain: str) -> str:
        """Key prefix a project's static files live under."""
        return f"{self.key_prefix}/{subdomain}"

    async def upload(self, local_dir: Path, prefix: str, log: Optional["RunLog"] = None) -> int:
        """Upload every file under ``local_dir`` to ``{prefix}/{relative path}``.

        Args:
            local_dir: Directory holding the build output
            prefix: Destination key prefix
            log: Optional per-deployment log handle

        Returns:
            Number of uploaded objects

        Raises:
            PublishError: If the directory is missing or any upload fails
        """
        if not local_dir.is_dir():
            raise PublishError(f"Publish directory not found: {local_dir}")

        prefix = prefix.strip("/")
        files: List[Path] = sorted(p for p in local_dir.rglob("*") if p.is_file())
        if not files:
            logger.warning("Publish directory is empty", path=str(local_dir))

        if log is not None:
            await log.info(f"Uploading {len(files)} files to s3://{self.bucket}/{prefix}/")

        semaphore = asyncio.Semaphore(self.concurrency)
        loop = asyncio.get_running_loop()

        async def upload_one(path: Path) -> None:
            key = f"{prefix}/{path.relative_to(local_dir).as_posix()}"
            async with semaphore:
                await loop.run_in_executor(
                    None,
                    functools.partial(self._put_file, path, key, content_type_for(path)),
                )

        try:
            await asyncio.gather(*(upload_one(path) for path in files))
        except (BotoCoreError, ClientError, OSError) as e:
            logger.error("Upload failed", bucket=self.bucket, prefix=prefix, error=str(e))
            raise PublishError(f"Failed to upload to s3://{self.bucket}/{prefix}/: {e}")

        logger.info("Upload complete", bucket=self.bucket, prefix=prefix, files=len(files))
        return len(files)

    def _put_file(self, path: Path, key: str, content_type: str) -> None:
        self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=path.read_bytes(),
            ContentType=content_type,
        )

    async def delete_all(self, prefix: str) -> int:
        """Delete every object under ``prefix``.

        Missing prefixes are a no-op. Errors are logged, never raised.

        Returns:
            Number of deleted objects
        """
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._delete_prefix, prefix)
        except (BotoCoreError, ClientError) as e:
            logger.error("Failed to delete objects", bucket=self.bucket, prefix=prefix, error=str(e))
            return 0

    def _delete_prefix(self, prefix: str) -> int:
        # Trailing slash so "projects/app" never matches "projects/app2"
        listing_prefix = prefix.strip("/") + "/"

        keys: List[str] = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=listing_prefix):
            for obj in page.get("Contents", []):
                keys.append(obj["Key"])

        deleted = 0
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            response = self.client.delete_objects(
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
            )
            # Quiet mode reports only the keys that could not be deleted
            errors = response.get("Errors", [])
            for error in errors:
                logger.error(
                    "Failed to delete object",
                    bucket=self.bucket,
                    key=error.get("Key"),
                    code=error.get("Code"),
                    error=error.get("Message"),
                )
            deleted += len(batch) - len(errors)

        logger.info("Deleted objects", bucket=self.bucket, prefix=listing_prefix, count=deleted, failed=len(keys) - deleted)
        return deleted
