"""
S3 snapshot store.

Keeps the snapshot in a single S3 object. Each write is one PutObject that
overwrites the key, which S3 applies atomically: readers see either the old
or the new object, never a partial one.

Object layout:
    s3://<bucket>/<snapshot_key>

Invariants:
    - Exactly one object per deployment, no history
    - A missing key is reported as SnapshotNotFoundError, not a failure

How to change safely:
    - Keep snapshot_key stable across deploys or restarts lose their state
    - Test against MinIO (S3_ENDPOINT) before changing request handling
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from .base import SnapshotNotFoundError, StoreError, WriteError

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


class S3SnapshotStore:
    """S3 implementation of SnapshotStore.

    The client is created lazily on first use and kept until close().

    Attributes:
        s3_config: S3Config with bucket, key and credentials

    Example:
        >>> store = S3SnapshotStore(config.s3)
        >>> await store.write(state)
        >>> await store.close()
    """

    def __init__(self, s3_config: Any) -> None:
        self.s3_config = s3_config
        self._session = None
        self._s3_ctx = None
        self._s3_client = None

    def describe(self) -> str:
        return f"s3://{self.s3_config.bucket}/{self.s3_config.snapshot_key}"

    async def _client(self) -> Any:
        if self._s3_client is None:
            self._session = get_session()

            client_kwargs = {
                "region_name": self.s3_config.region,
            }

            if self.s3_config.endpoint_url:
                client_kwargs["endpoint_url"] = self.s3_config.endpoint_url

            if self.s3_config.access_key_id:
                client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
                client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

            self._s3_ctx = self._session.create_client("s3", **client_kwargs)
            self._s3_client = await self._s3_ctx.__aenter__()
        return self._s3_client

    async def close(self) -> None:
        """Close the S3 client."""
        if self._s3_client is not None:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None

    async def exists(self) -> bool:
        client = await self._client()
        try:
            response = await client.head_object(
                Bucket=self.s3_config.bucket, Key=self.s3_config.snapshot_key
            )
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return False
            raise StoreError(f"Failed to stat {self.describe()}: {e}") from e
        return response.get("ContentLength", 0) > 0

    async def read(self) -> bytes:
        """Download the snapshot object.

        Raises:
            SnapshotNotFoundError: If the key is missing or the object is empty
            StoreError: For other S3 failures
        """
        client = await self._client()
        try:
            response = await client.get_object(
                Bucket=self.s3_config.bucket, Key=self.s3_config.snapshot_key
            )
            async with response["Body"] as stream:
                data = await stream.read()
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                raise SnapshotNotFoundError(f"No snapshot at {self.describe()}") from e
            raise StoreError(f"Failed to read {self.describe()}: {e}") from e
        except BotoCoreError as e:
            raise StoreError(f"Failed to read {self.describe()}: {e}") from e

        if not data:
            raise SnapshotNotFoundError(f"Snapshot object {self.describe()} is empty")
        return data

    async def write(self, data: bytes) -> None:
        """Overwrite the snapshot object.

        Raises:
            WriteError: If the upload fails
        """
        client = await self._client()
        try:
            await client.put_object(
                Bucket=self.s3_config.bucket,
                Key=self.s3_config.snapshot_key,
                Body=data,
                ContentType="application/octet-stream",
                Metadata={"sha256": hashlib.sha256(data).hexdigest()},
            )
        except (ClientError, BotoCoreError) as e:
            raise WriteError(f"Failed to upload {self.describe()}: {e}") from e

        logger.debug(
            "Uploaded snapshot object",
            extra={"bucket": self.s3_config.bucket, "key": self.s3_config.snapshot_key},
        )


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))
