"""Storage for rendered tracks: local filesystem or any S3-compatible bucket (R2, MinIO, AWS)."""

import datetime as dt
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import aioboto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError, ConnectionClosedError, EndpointConnectionError
from botocore.exceptions import ReadTimeoutError as BotoReadTimeoutError
from loguru import logger

from mindscript.worker.exceptions import StorageError
from mindscript.worker.retry import RetriesExhausted, RetryPolicy, retry_async

CONTENT_TYPES = {"mp3": "audio/mpeg", "wav": "audio/wav"}
PRESIGNED_URL_TTL_SECONDS = 7 * 24 * 3600
_TRANSIENT_S3_CODES = {"SlowDown", "Throttling", "RequestTimeout", "InternalError", "ServiceUnavailable"}


@dataclass(frozen=True)
class StoredObject:
    url: str
    key: str
    size_bytes: int
    public: bool


def object_key(owner_id: str, job_id: str, fmt: str, *, now: dt.datetime | None = None) -> str:
    """`{owner}/{YYYY}/{MM}/{job_id}.{fmt}` keeps per-user listings cheap."""
    now = now or dt.datetime.now(tz=dt.UTC)
    return f"{owner_id}/{now:%Y}/{now:%m}/{job_id}.{fmt}"


class AudioStorage(ABC):
    @abstractmethod
    async def store(self, key: str, data: bytes, *, content_type: str, public: bool) -> StoredObject:
        """Store the rendered file and return where it can be fetched from."""


class LocalAudioStorage(AudioStorage):
    """Files under `base_path/{public,private}/`, for development and single-host deployments."""

    def __init__(self, base_path: Path, *, public_url: str = "/audio"):
        self.base_path = base_path
        self.public_url = public_url.rstrip("/")

    async def store(self, key: str, data: bytes, *, content_type: str, public: bool) -> StoredObject:
        path = self._path(key, public)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            path.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Could not write {path}: {e}") from e
        url = f"{self.public_url}/{key}" if public else path.resolve().as_uri()
        return StoredObject(url=url, key=key, size_bytes=len(data), public=public)

    def _path(self, key: str, public: bool) -> Path:
        return self.base_path / ("public" if public else "private") / key


class S3AudioStorage(AudioStorage):
    """Public renders go to a CDN-fronted bucket, private ones get a presigned URL."""

    def __init__(
        self,
        *,
        endpoint_url: str | None,
        access_key_id: str,
        secret_access_key: str,
        public_bucket: str,
        private_bucket: str,
        public_url: str | None = None,
        region: str = "auto",
        retry: RetryPolicy | None = None,
    ):
        self.public_bucket = public_bucket
        self.private_bucket = private_bucket
        self.public_url = public_url.rstrip("/") if public_url else None
        self.retry = retry or RetryPolicy()
        self._session = aioboto3.Session()
        self._client_config = {
            "endpoint_url": endpoint_url,
            "aws_access_key_id": access_key_id,
            "aws_secret_access_key": secret_access_key,
            "region_name": region,
            "config": Config(signature_version="s3v4"),
        }

    async def store(self, key: str, data: bytes, *, content_type: str, public: bool) -> StoredObject:
        bucket = self.public_bucket if public else self.private_bucket

        async def upload() -> str:
            async with self._session.client("s3", **self._client_config) as s3:
                await s3.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
                if public and self.public_url:
                    return f"{self.public_url}/{key}"
                return await s3.generate_presigned_url(
                    "get_object", Params={"Bucket": bucket, "Key": key}, ExpiresIn=PRESIGNED_URL_TTL_SECONDS
                )

        try:
            url = await retry_async(upload, self.retry, is_transient=_is_transient_s3, description=f"upload {key}")
        except RetriesExhausted as e:
            raise StorageError(f"Upload of {key} failed after {e.attempts} attempts: {e.last_error}") from e
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Upload of {key} to {bucket} failed: {e}") from e

        logger.debug(f"Uploaded {len(data)} bytes to {bucket}/{key}")
        return StoredObject(url=url, key=key, size_bytes=len(data), public=public)


def _is_transient_s3(error: BaseException) -> bool:
    if isinstance(error, (EndpointConnectionError, ConnectionClosedError, BotoReadTimeoutError)):
        return True
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return code in _TRANSIENT_S3_CODES or status >= 500
    return False
