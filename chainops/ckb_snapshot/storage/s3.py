"""
S3-compatible object store (AWS S3, Cloudflare R2, MinIO).

Large objects use multipart upload with parts of S3Config.part_size_bytes;
a failed multipart upload is aborted so no partial object becomes visible.
Streams are buffered one part at a time, so memory use is bounded by the
part size regardless of archive size.

Invariants:
    - An object is visible only after complete_multipart_upload / put_object
    - Failed multipart uploads are aborted
    - Keys are stored under S3Config.prefix

How to change safely:
    - Test against MinIO or R2 before changing the multipart logic
    - R2 requires equal part sizes except the last; keep parts fixed-size
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, AsyncIterable, AsyncIterator, Optional

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ..config import S3Config
from ..errors import StorageError
from .base import StoredObject, content_type_for

logger = logging.getLogger(__name__)


async def _file_parts(path: Path, part_size: int) -> AsyncIterator[bytes]:
    with open(path, "rb") as f:
        while True:
            data = f.read(part_size)
            if not data:
                return
            yield data


async def _rechunk(chunks: AsyncIterable[bytes], part_size: int) -> AsyncIterator[bytes]:
    buffer = bytearray()
    async for chunk in chunks:
        buffer.extend(chunk)
        while len(buffer) >= part_size:
            yield bytes(buffer[:part_size])
            del buffer[:part_size]
    if buffer:
        yield bytes(buffer)


class S3ObjectStore:
    """ObjectStore backed by an S3-compatible service via aiobotocore.

    Attributes:
        config: S3 configuration

    Example:
        >>> store = S3ObjectStore(config.s3)
        >>> await store.upload_file("/snapshots/x.tar.zst", "x.tar.zst")
        >>> await store.close()
    """

    def __init__(self, config: S3Config) -> None:
        self.config = config
        self._session = None
        self._s3_ctx = None
        self._s3_client = None

    def _full_key(self, key: str) -> str:
        prefix = self.config.prefix.strip("/")
        return f"{prefix}/{key}" if prefix else key

    def _relative_key(self, full_key: str) -> str:
        prefix = self.config.prefix.strip("/")
        if prefix and full_key.startswith(prefix + "/"):
            return full_key[len(prefix) + 1:]
        return full_key

    async def _client(self) -> Any:
        """Initialize the S3 client on first use."""
        if self._s3_client is None:
            self._session = get_session()

            client_kwargs = {
                "region_name": self.config.region,
            }

            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url

            if self.config.access_key_id:
                client_kwargs["aws_access_key_id"] = self.config.access_key_id
                client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

            self._s3_ctx = self._session.create_client("s3", **client_kwargs)
            self._s3_client = await self._s3_ctx.__aenter__()
        return self._s3_client

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_client:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None

    async def _multipart(
        self, key: str, parts: AsyncIterable[bytes], content_type: str
    ) -> StoredObject:
        """Upload parts as one object; the first short part falls back to put_object."""
        s3 = await self._client()
        full_key = self._full_key(key)
        iterator = parts.__aiter__()

        try:
            first = await iterator.__anext__()
        except StopAsyncIteration:
            first = b""

        if len(first) < self.config.part_size_bytes:
            # Single part: a plain PUT is enough, but the stream must be exhausted.
            rest = [chunk async for chunk in iterator]
            body = first + b"".join(rest)
            await s3.put_object(
                Bucket=self.config.bucket,
                Key=full_key,
                Body=body,
                ContentType=content_type,
            )
            return StoredObject(key=key, size_bytes=len(body))

        upload = await s3.create_multipart_upload(
            Bucket=self.config.bucket,
            Key=full_key,
            ContentType=content_type,
        )
        upload_id = upload["UploadId"]
        completed = []
        size = 0
        try:
            part_number = 1
            data = first
            while True:
                response = await s3.upload_part(
                    Bucket=self.config.bucket,
                    Key=full_key,
                    UploadId=upload_id,
                    PartNumber=part_number,
                    Body=data,
                )
                completed.append({"ETag": response["ETag"], "PartNumber": part_number})
                size += len(data)
                logger.debug(
                    "Uploaded part",
                    extra={"key": full_key, "part": part_number, "size_bytes": len(data)},
                )
                try:
                    data = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                part_number += 1

            await s3.complete_multipart_upload(
                Bucket=self.config.bucket,
                Key=full_key,
                UploadId=upload_id,
                MultipartUpload={"Parts": completed},
            )
        except BaseException:
            logger.warning("Aborting multipart upload", extra={"key": full_key})
            try:
                await s3.abort_multipart_upload(
                    Bucket=self.config.bucket,
                    Key=full_key,
                    UploadId=upload_id,
                )
            except (BotoCoreError, ClientError) as abort_error:
                logger.error(
                    f"Failed to abort multipart upload {upload_id}: {abort_error}",
                    extra={"key": full_key},
                )
            raise

        return StoredObject(key=key, size_bytes=size)

    async def upload_file(
        self, path: str | Path, key: str, content_type: Optional[str] = None
    ) -> StoredObject:
        path = Path(path)
        try:
            return await self._multipart(
                key,
                _file_parts(path, self.config.part_size_bytes),
                content_type or content_type_for(key),
            )
        except (BotoCoreError, ClientError, OSError) as e:
            raise StorageError(f"Failed to upload {path} to {self.describe(key)}: {e}", key=key)

    async def upload_bytes(
        self, key: str, data: bytes, content_type: Optional[str] = None
    ) -> StoredObject:
        s3 = await self._client()
        try:
            await s3.put_object(
                Bucket=self.config.bucket,
                Key=self._full_key(key),
                Body=data,
                ContentType=content_type or content_type_for(key),
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to upload {self.describe(key)}: {e}", key=key)
        return StoredObject(key=key, size_bytes=len(data))

    async def upload_stream(
        self, key: str, chunks: AsyncIterable[bytes], content_type: Optional[str] = None
    ) -> StoredObject:
        try:
            return await self._multipart(
                key,
                _rechunk(chunks, self.config.part_size_bytes),
                content_type or content_type_for(key),
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to stream to {self.describe(key)}: {e}", key=key)

    async def list(self, prefix: str = "") -> list[StoredObject]:
        s3 = await self._client()
        objects = []
        try:
            paginator = s3.get_paginator("list_objects_v2")
            async for page in paginator.paginate(
                Bucket=self.config.bucket, Prefix=self._full_key(prefix)
            ):
                for obj in page.get("Contents", []):
                    objects.append(
                        StoredObject(
                            key=self._relative_key(obj["Key"]),
                            size_bytes=obj["Size"],
                            last_modified=obj.get("LastModified"),
                        )
                    )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to list {self.describe(prefix)}: {e}", key=prefix)
        return objects

    async def exists(self, key: str) -> bool:
        s3 = await self._client()
        try:
            await s3.head_object(Bucket=self.config.bucket, Key=self._full_key(key))
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"Failed to stat {self.describe(key)}: {e}", key=key)
        except BotoCoreError as e:
            raise StorageError(f"Failed to stat {self.describe(key)}: {e}", key=key)
        return True

    async def read_bytes(self, key: str) -> bytes:
        s3 = await self._client()
        try:
            response = await s3.get_object(Bucket=self.config.bucket, Key=self._full_key(key))
            return await response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to read {self.describe(key)}: {e}", key=key)

    async def delete(self, key: str) -> bool:
        if not await self.exists(key):
            return False
        s3 = await self._client()
        try:
            await s3.delete_object(Bucket=self.config.bucket, Key=self._full_key(key))
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to delete {self.describe(key)}: {e}", key=key)
        return True

    def describe(self, key: str = "") -> str:
        return f"s3://{self.config.bucket}/{self._full_key(key)}"
