"""S3-compatible access to the provider's flat-file bucket."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import boto3
from botocore.config import Config

from market_mirror.core.config import ProviderConfig
from market_mirror.core.models import ObjectPage, RemoteObject

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


@runtime_checkable
class ObjectStore(Protocol):
    """Paginated listing and streaming download of bucket objects."""

    async def list_objects(
        self, bucket: str, continuation_token: str | None = None
    ) -> ObjectPage: ...

    async def download(self, bucket: str, key: str, destination: Path) -> int: ...


class S3ObjectStore:
    """boto3-backed ObjectStore.

    boto3 is synchronous, so every call runs in a worker thread via
    ``asyncio.to_thread``. The provider serves path-style URLs from a custom
    endpoint; credentials are the access key id plus the API key as secret.
    """

    def __init__(
        self,
        config: ProviderConfig,
        access_key: str,
        secret_key: str,
        client: Any | None = None,
    ) -> None:
        if client is None:
            client = boto3.client(
                "s3",
                endpoint_url=config.flat_files_endpoint,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
            )
        self._client = client
        logger.info("S3 object store initialized for %s", config.flat_files_endpoint)

    async def list_objects(
        self, bucket: str, continuation_token: str | None = None
    ) -> ObjectPage:
        kwargs: dict[str, Any] = {"Bucket": bucket}
        if continuation_token:
            kwargs["ContinuationToken"] = continuation_token
        response = await asyncio.to_thread(self._client.list_objects_v2, **kwargs)
        objects = tuple(
            RemoteObject(
                key=obj["Key"],
                etag=obj.get("ETag", ""),
                size=obj.get("Size", 0),
                last_modified=obj.get("LastModified"),
            )
            for obj in response.get("Contents", [])
        )
        return ObjectPage(
            objects=objects,
            next_continuation_token=response.get("NextContinuationToken"),
            is_truncated=bool(response.get("IsTruncated", False)),
        )

    async def download(self, bucket: str, key: str, destination: Path) -> int:
        """Stream an object to ``destination``. Returns bytes written."""
        return await asyncio.to_thread(self._download_sync, bucket, key, destination)

    def _download_sync(self, bucket: str, key: str, destination: Path) -> int:
        response = self._client.get_object(Bucket=bucket, Key=key)
        body = response["Body"]
        written = 0
        try:
            with open(destination, "wb") as f:
                for chunk in body.iter_chunks(chunk_size=_CHUNK_SIZE):
                    f.write(chunk)
                    written += len(chunk)
        finally:
            body.close()
        logger.debug("Downloaded %s/%s to %s (%d bytes)", bucket, key, destination, written)
        return written
