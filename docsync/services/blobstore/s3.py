from __future__ import annotations

import asyncio
import logging
from typing import Any

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from docsync.core.errors import (
    BlobNotFoundError,
    BlobStoreError,
    ConfigError,
    StorageUnavailableError,
)
from docsync.services.blobstore.base import BlobInfo, BlobStore


logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
# Throttling and server-side faults are transient; callers may retry with backoff.
_RETRYABLE_CODES = {
    "SlowDown",
    "RequestTimeout",
    "ServiceUnavailable",
    "InternalError",
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "500",
    "503",
}
_UNAVAILABLE_ERRORS = (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _http_status(exc: ClientError) -> int:
    try:
        return int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)
    except (TypeError, ValueError):
        return 0


class S3BlobStore(BlobStore):
    """S3-compatible object storage (AWS S3, Cloudflare R2, MinIO)."""

    backend = "remote"

    def __init__(
        self,
        *,
        bucket: str,
        endpoint_url: str | None = None,
        region: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        client: Any | None = None,
        timeout_s: float | None = None,
    ) -> None:
        super().__init__(timeout_s=timeout_s)
        if not bucket:
            raise ConfigError("storage_bucket is required for the remote blob backend")
        self._bucket = bucket
        self._endpoint_url = endpoint_url
        self._region = region
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        import boto3

        self._client = boto3.client(
            "s3",
            endpoint_url=self._endpoint_url,
            region_name=self._region,
            aws_access_key_id=self._access_key_id,
            aws_secret_access_key=self._secret_access_key,
        )
        return self._client

    async def _call(self, method: str, key: str | None = None, **kwargs: Any) -> Any:
        # boto3 is blocking; keep it off the event loop.
        client = self._get_client()
        try:
            return await asyncio.to_thread(getattr(client, method), **kwargs)
        except ClientError as exc:
            code = _error_code(exc)
            if key is not None and code in _NOT_FOUND_CODES:
                raise BlobNotFoundError(key) from exc
            if code in _RETRYABLE_CODES or _http_status(exc) >= 500:
                raise StorageUnavailableError(f"S3 {method} failed: {code or _http_status(exc)}") from exc
            raise BlobStoreError(f"S3 {method} failed: {code or 'unknown error'}") from exc
        except _UNAVAILABLE_ERRORS as exc:
            raise StorageUnavailableError(f"S3 endpoint unavailable during {method}") from exc
        except BotoCoreError as exc:
            raise BlobStoreError(f"S3 {method} failed: {type(exc).__name__}") from exc

    async def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> None:
        await self._call(
            "put_object",
            Bucket=self._bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            Metadata=metadata or {},
        )

    async def get(self, key: str) -> bytes:
        response = await self._call("get_object", key, Bucket=self._bucket, Key=key)
        body = response["Body"]
        try:
            return await asyncio.to_thread(body.read)
        finally:
            close = getattr(body, "close", None)
            if callable(close):
                close()

    async def head(self, key: str) -> BlobInfo:
        response = await self._call("head_object", key, Bucket=self._bucket, Key=key)
        return BlobInfo(
            key=key,
            size=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType"),
            metadata=dict(response.get("Metadata") or {}),
        )

    async def delete(self, key: str) -> None:
        await self._call("delete_object", Bucket=self._bucket, Key=key)

    async def list(self, prefix: str) -> list[BlobInfo]:
        items: list[BlobInfo] = []
        token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"Bucket": self._bucket, "Prefix": prefix}
            if token:
                kwargs["ContinuationToken"] = token
            response = await self._call("list_objects_v2", **kwargs)
            for obj in response.get("Contents") or []:
                items.append(BlobInfo(key=obj["Key"], size=int(obj.get("Size", 0))))
            token = response.get("NextContinuationToken")
            if not response.get("IsTruncated") or not token:
                break
        return items

    async def sign_url(self, key: str, *, expires_in: int) -> str:
        client = self._get_client()
        try:
            return await asyncio.to_thread(
                client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError(f"S3 presign failed: {type(exc).__name__}") from exc

    async def ping(self) -> bool:
        try:
            await self._call("head_bucket", Bucket=self._bucket)
        except BlobStoreError as exc:
            logger.warning("blob_store_ping_failed backend=remote bucket=%s", self._bucket, exc_info=exc)
            return False
        return True
