"""Async S3 object store operations.

This module wraps the handful of S3 calls vaultsync needs behind a small
typed API. Pagination, delete batching and multipart transfers are handled
here so callers never see them.

Uses the S3 client factory pattern: each operation opens a fresh client
context from the factory, which avoids connection pool exhaustion with
aiobotocore on long-running syncs.
"""

import inspect
import logging
from collections.abc import AsyncIterator
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from botocore.exceptions import BotoCoreError, ClientError

from vaultsync.core import (
    ListResult,
    NotFoundError,
    ObjectInfo,
    TransferError,
)
from vaultsync.utils import batch, paginate

logger = logging.getLogger(__name__)

KiB = 1024
MiB = 1024 * KiB
GiB = 1024 * MiB

# Part size for streamed uploads
DEFAULT_PART_SIZE = 16 * MiB
# Single CopyObject calls are limited to 5 GiB
MULTIPART_COPY_THRESHOLD = 5 * GiB
DEFAULT_COPY_PART_SIZE = 1 * GiB
# DeleteObjects accepts at most 1000 keys per request
DELETE_BATCH_SIZE = 1000
DOWNLOAD_CHUNK_SIZE = 1 * MiB

NOT_FOUND_CODES = ("NoSuchKey", "NotFound", "404")

PutSource = Union[bytes, bytearray, str, Any]


def is_not_found(error: ClientError) -> bool:
    """Check whether a botocore error means the object does not exist."""
    code = str(error.response.get("Error", {}).get("Code", ""))
    return code in NOT_FOUND_CODES


def copy_ranges(size: int, part_size: int) -> List[Tuple[int, int]]:
    """Split `[0, size)` into inclusive byte ranges of at most `part_size`."""
    assert part_size > 0, "Part size must be positive"
    return [
        (start, min(start + part_size, size) - 1) for start in range(0, size, part_size)
    ]


async def _read(source, size: int) -> bytes:
    """Read from a sync or async (e.g. aiofiles) file object."""
    data = source.read(size)
    if inspect.isawaitable(data):
        data = await data
    return data


async def iter_parts(source: PutSource, part_size: int) -> AsyncIterator[bytes]:
    """Re-chunk an upload source into parts of exactly `part_size` bytes.

    Only the last part may be smaller. Accepts bytes, str, binary file
    objects (sync or async) and async iterables of bytes.
    """
    if isinstance(source, str):
        source = source.encode("utf-8")
    if isinstance(source, (bytes, bytearray, memoryview)):
        view = bytes(source)
        for start in range(0, len(view), part_size):
            yield view[start : start + part_size]
        return
    if hasattr(source, "read"):
        while True:
            chunk = await _read(source, part_size)
            if not chunk:
                return
            yield chunk
    if hasattr(source, "__aiter__"):
        buffer = bytearray()
        async for chunk in source:
            buffer.extend(chunk)
            while len(buffer) >= part_size:
                yield bytes(buffer[:part_size])
                del buffer[:part_size]
        if buffer:
            yield bytes(buffer)
        return
    raise TypeError(f"Unsupported upload source: {type(source).__name__}")


async def _chain(first: Sequence[bytes], rest: AsyncIterator[bytes]):
    for item in first:
        yield item
    async for item in rest:
        yield item


class _Progress:
    """Report a monotonic percentage of acknowledged bytes."""

    def __init__(self, total: Optional[int], callback: Optional[Callable[[int], Any]]):
        self.total = total
        self.callback = callback
        self.sent = 0
        self.last = -1

    def advance(self, count: int):
        self.sent += count
        if not self.callback:
            return
        if self.total:
            percent = min(100, round(self.sent * 100 / self.total))
        else:
            percent = 0
        if percent > self.last:
            self.last = percent
            self.callback(percent)

    def finish(self):
        if self.callback and self.last < 100:
            self.last = 100
            self.callback(100)


class S3ObjectStore:
    """Typed operations over one S3 bucket.

    Usage:
        def s3_client_factory():
            return session.create_client("s3", ...)

        store = S3ObjectStore(s3_client_factory, "my-bucket")
        await store.put("notes/a.md", b"hello")
    """

    def __init__(
        self,
        s3_client_factory: Callable,
        bucket: str,
        part_size: int = DEFAULT_PART_SIZE,
        multipart_copy_threshold: int = MULTIPART_COPY_THRESHOLD,
        copy_part_size: int = DEFAULT_COPY_PART_SIZE,
        delete_batch_size: int = DELETE_BATCH_SIZE,
    ):
        """Initialize the object store.

        Args:
            s3_client_factory: Factory function that returns an async context manager
                               for an S3 client (e.g., lambda: session.create_client("s3", ...))
            bucket: S3 bucket name
            part_size: Part size for streamed uploads
            multipart_copy_threshold: Objects at or above this size are copied part by part
            copy_part_size: Byte range size for each part copy
            delete_batch_size: Maximum number of keys per DeleteObjects request
        """
        self._s3_client_factory = s3_client_factory
        self._bucket = bucket
        self._part_size = part_size
        self._multipart_copy_threshold = multipart_copy_threshold
        self._copy_part_size = copy_part_size
        self._delete_batch_size = delete_batch_size

    @property
    def bucket(self) -> str:
        return self._bucket

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, key: str) -> bytes:
        """Read a whole object into memory."""
        async with self._s3_client_factory() as s3_client:
            try:
                response = await s3_client.get_object(Bucket=self._bucket, Key=key)
                return await response["Body"].read()
            except ClientError as e:
                if is_not_found(e):
                    raise NotFoundError(f"Object not found: {key}") from e
                raise TransferError(f"Failed to get {key}: {e}") from e
            except BotoCoreError as e:
                raise TransferError(f"Failed to get {key}: {e}") from e

    async def iter_chunks(
        self, key: str, chunk_size: int = DOWNLOAD_CHUNK_SIZE
    ) -> AsyncIterator[bytes]:
        """Stream an object in chunks; the client stays open while iterating."""
        async with self._s3_client_factory() as s3_client:
            try:
                response = await s3_client.get_object(Bucket=self._bucket, Key=key)
                body = response["Body"]
                while True:
                    chunk = await body.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk
            except ClientError as e:
                if is_not_found(e):
                    raise NotFoundError(f"Object not found: {key}") from e
                raise TransferError(f"Failed to download {key}: {e}") from e
            except BotoCoreError as e:
                raise TransferError(f"Failed to download {key}: {e}") from e

    async def head(self, key: str) -> Optional[ObjectInfo]:
        """Return object metadata, or None if the object does not exist."""
        async with self._s3_client_factory() as s3_client:
            try:
                response = await s3_client.head_object(Bucket=self._bucket, Key=key)
            except ClientError as e:
                if is_not_found(e):
                    return None
                raise TransferError(f"Failed to stat {key}: {e}") from e
            except BotoCoreError as e:
                raise TransferError(f"Failed to stat {key}: {e}") from e
        return ObjectInfo(
            key=key,
            size=response.get("ContentLength", 0),
            last_modified=response.get("LastModified"),
            etag=response.get("ETag"),
        )

    async def exists(self, key: str) -> bool:
        return await self.head(key) is not None

    async def list(self, prefix: str = "", delimiter: Optional[str] = None) -> ListResult:
        """List every object under a prefix, following continuation tokens."""
        request = {"Bucket": self._bucket, "Prefix": prefix or ""}
        if delimiter:
            request["Delimiter"] = delimiter

        async with self._s3_client_factory() as s3_client:
            try:
                pages = await paginate(
                    request, lambda req: s3_client.list_objects_v2(**req)
                )
            except (ClientError, BotoCoreError) as e:
                raise TransferError(f"Failed to list {prefix!r}: {e}") from e

        result = ListResult()
        for page in pages:
            for item in page.get("Contents", []):
                result.objects.append(
                    ObjectInfo(
                        key=item["Key"],
                        size=item.get("Size", 0),
                        last_modified=item.get("LastModified"),
                        etag=item.get("ETag"),
                    )
                )
            for item in page.get("CommonPrefixes", []):
                if item.get("Prefix"):
                    result.prefixes.append(item["Prefix"])
        return result

    # =========================================================================
    # Writes
    # =========================================================================

    async def put(
        self,
        key: str,
        data: PutSource,
        size: Optional[int] = None,
        on_progress: Optional[Callable[[int], Any]] = None,
    ) -> None:
        """Upload an object.

        The source is read in parts of `part_size`. A source that fits in one
        part is sent with a single PutObject; anything larger goes through a
        sequential multipart upload.

        Args:
            key: Object key
            data: bytes, str, a binary file object or an async iterable of bytes
            size: Total size in bytes, used for progress reporting
            on_progress: Called with a percentage (0-100) as parts are acknowledged
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        if size is None and isinstance(data, (bytes, bytearray)):
            size = len(data)

        progress = _Progress(size, on_progress)
        parts = iter_parts(data, self._part_size)
        first = await anext(parts, None)
        second = await anext(parts, None) if first is not None else None

        if second is None:
            body = first or b""
            await self._put_object(key, body)
            progress.advance(len(body))
            progress.finish()
            return

        await self._multipart_upload(key, _chain([first, second], parts), progress)
        progress.finish()

    async def _put_object(self, key: str, body: bytes):
        async with self._s3_client_factory() as s3_client:
            try:
                await s3_client.put_object(Bucket=self._bucket, Key=key, Body=body)
            except (ClientError, BotoCoreError) as e:
                raise TransferError(f"Failed to upload {key}: {e}") from e
        logger.debug("PUT %s (%d bytes)", key, len(body))

    async def _multipart_upload(self, key: str, parts, progress: _Progress):
        async with self._s3_client_factory() as s3_client:
            try:
                mpu = await s3_client.create_multipart_upload(
                    Bucket=self._bucket, Key=key
                )
            except (ClientError, BotoCoreError) as e:
                raise TransferError(f"Failed to start upload of {key}: {e}") from e
            upload_id = mpu["UploadId"]

            completed = []
            try:
                part_number = 0
                async for chunk in parts:
                    part_number += 1
                    response = await s3_client.upload_part(
                        Bucket=self._bucket,
                        Key=key,
                        UploadId=upload_id,
                        PartNumber=part_number,
                        Body=chunk,
                    )
                    completed.append({"ETag": response["ETag"], "PartNumber": part_number})
                    progress.advance(len(chunk))
                await s3_client.complete_multipart_upload(
                    Bucket=self._bucket,
                    Key=key,
                    UploadId=upload_id,
                    MultipartUpload={"Parts": completed},
                )
            except Exception as e:
                await self._abort(s3_client, key, upload_id)
                if isinstance(e, (ClientError, BotoCoreError)):
                    raise TransferError(f"Failed to upload {key}: {e}") from e
                raise
        logger.debug("PUT %s in %d parts", key, len(completed))

    async def _abort(self, s3_client, key: str, upload_id: str):
        try:
            await s3_client.abort_multipart_upload(
                Bucket=self._bucket, Key=key, UploadId=upload_id
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning("Failed to abort multipart upload %s for %s: %s", upload_id, key, e)

    async def delete(self, keys: Union[str, Sequence[str]]) -> None:
        """Delete one or many objects, batching the request."""
        if isinstance(keys, str):
            keys = [keys]
        keys = [k for k in keys if k]
        if not keys:
            return

        async with self._s3_client_factory() as s3_client:

            async def _delete_chunk(chunk: List[str]):
                response = await s3_client.delete_objects(
                    Bucket=self._bucket,
                    Delete={"Objects": [{"Key": k} for k in chunk], "Quiet": True},
                )
                errors = response.get("Errors") or []
                if errors:
                    failed = ", ".join(err.get("Key", "?") for err in errors)
                    raise TransferError(f"Failed to delete: {failed}")

            try:
                await batch(keys, self._delete_batch_size, _delete_chunk)
            except (ClientError, BotoCoreError) as e:
                raise TransferError(f"Failed to delete objects: {e}") from e
        logger.debug("DELETE %d object(s)", len(keys))

    async def copy(self, src: str, dest: str, size: Optional[int] = None) -> None:
        """Server-side copy; objects at or above the threshold are copied in parts."""
        if size is None:
            info = await self.head(src)
            if info is None:
                raise NotFoundError(f"Object not found: {src}")
            size = info.size

        if size >= self._multipart_copy_threshold:
            await self._multipart_copy(src, dest, size)
            return

        async with self._s3_client_factory() as s3_client:
            try:
                await s3_client.copy_object(
                    Bucket=self._bucket,
                    Key=dest,
                    CopySource={"Bucket": self._bucket, "Key": src},
                )
            except ClientError as e:
                if is_not_found(e):
                    raise NotFoundError(f"Object not found: {src}") from e
                raise TransferError(f"Failed to copy {src} to {dest}: {e}") from e
            except BotoCoreError as e:
                raise TransferError(f"Failed to copy {src} to {dest}: {e}") from e
        logger.debug("COPY %s -> %s", src, dest)

    async def _multipart_copy(self, src: str, dest: str, size: int):
        async with self._s3_client_factory() as s3_client:
            try:
                mpu = await s3_client.create_multipart_upload(
                    Bucket=self._bucket, Key=dest
                )
            except (ClientError, BotoCoreError) as e:
                raise TransferError(f"Failed to start copy to {dest}: {e}") from e
            upload_id = mpu["UploadId"]

            try:
                parts = []
                ranges = copy_ranges(size, self._copy_part_size)
                for part_number, (start, end) in enumerate(ranges, start=1):
                    response = await s3_client.upload_part_copy(
                        Bucket=self._bucket,
                        Key=dest,
                        UploadId=upload_id,
                        PartNumber=part_number,
                        CopySource={"Bucket": self._bucket, "Key": src},
                        CopySourceRange=f"bytes={start}-{end}",
                    )
                    etag = response.get("CopyPartResult", {}).get("ETag")
                    if not etag:
                        raise TransferError(
                            f"Part {part_number} of copy {src} -> {dest} returned no ETag"
                        )
                    parts.append({"ETag": etag, "PartNumber": part_number})
                await s3_client.complete_multipart_upload(
                    Bucket=self._bucket,
                    Key=dest,
                    UploadId=upload_id,
                    MultipartUpload={"Parts": parts},
                )
            except (ClientError, BotoCoreError, TransferError) as e:
                await self._abort(s3_client, dest, upload_id)
                if isinstance(e, TransferError):
                    raise
                raise TransferError(f"Failed to copy {src} to {dest}: {e}") from e
        logger.debug("COPY %s -> %s in %d parts", src, dest, len(parts))


__all__ = [
    "S3ObjectStore",
    "copy_ranges",
    "iter_parts",
    "is_not_found",
    "DEFAULT_PART_SIZE",
    "MULTIPART_COPY_THRESHOLD",
    "DEFAULT_COPY_PART_SIZE",
    "DELETE_BATCH_SIZE",
]
