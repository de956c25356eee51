"""A hierarchical filesystem view over a flat S3 key space.

Paths are mapped to keys under an optional prefix. Directories have no
independent existence: they are implied by keys sharing a prefix, or by an
empty marker object whose key ends with "/".
"""

import logging
from collections.abc import AsyncIterator
from typing import Any, Callable, List, Optional

from vaultsync.core import DirEntry, FileStat, NotFoundError
from vaultsync.storage.s3 import S3ObjectStore

logger = logging.getLogger(__name__)


class S3FS:
    """Filesystem operations on top of an `S3ObjectStore`."""

    def __init__(self, store: S3ObjectStore, prefix: str = ""):
        self.store = store
        prefix = (prefix or "").strip("/")
        self.prefix = f"{prefix}/" if prefix else ""

    def key(self, path: str) -> str:
        """Map a path to an object key."""
        return self.prefix + path.strip("/")

    def dir_key(self, path: str) -> str:
        """Map a directory path to the key prefix of its children."""
        key = self.key(path)
        if not key or key.endswith("/"):
            return key
        return key + "/"

    async def read_file(self, path: str) -> bytes:
        return await self.store.get(self.key(path))

    def iter_file(self, path: str) -> AsyncIterator[bytes]:
        """Stream a file in chunks."""
        return self.store.iter_chunks(self.key(path))

    async def write_file(
        self,
        path: str,
        data: Any,
        size: Optional[int] = None,
        on_progress: Optional[Callable[[int], Any]] = None,
    ) -> None:
        await self.store.put(self.key(path), data, size=size, on_progress=on_progress)

    async def unlink(self, path: str) -> None:
        await self.store.delete(self.key(path))

    async def exists(self, path: str) -> bool:
        return await self.store.exists(self.key(path))

    async def readdir(self, path: str = "") -> List[DirEntry]:
        """List the direct children of a directory."""
        prefix = self.dir_key(path)
        result = await self.store.list(prefix, delimiter="/")

        entries = []
        for obj in result.objects:
            name = obj.key[len(prefix) :]
            # Skip the directory marker itself
            if not name or "/" in name:
                continue
            entries.append(
                DirEntry(name=name, size=obj.size, last_modified=obj.last_modified)
            )
        for common_prefix in result.prefixes:
            name = common_prefix[len(prefix) :].rstrip("/")
            if name:
                entries.append(DirEntry(name=name, is_directory=True))
        return entries

    async def stat(self, path: str) -> FileStat:
        """Stat a path; a path with children (or a marker) is a directory."""
        key = self.key(path)
        if key and not key.endswith("/"):
            info = await self.store.head(key)
            if info is not None:
                return FileStat(size=info.size, last_modified=info.last_modified)

        result = await self.store.list(self.dir_key(path), delimiter="/")
        if result.objects or result.prefixes:
            return FileStat(is_directory=True)
        raise NotFoundError(f"ENOENT: no such file or directory, stat '{path}'")

    async def mkdir(self, path: str) -> None:
        await self.store.put(self.dir_key(path), b"")

    async def rmdir(self, path: str) -> None:
        """Remove a directory and everything under it."""
        result = await self.store.list(self.dir_key(path))
        await self.store.delete([obj.key for obj in result.objects])

    async def copy_file(self, src: str, dest: str) -> None:
        await self.store.copy(self.key(src), self.key(dest))

    async def rename(self, src: str, dest: str) -> None:
        """Move a file; S3 has no rename, so this is copy then delete."""
        await self.copy_file(src, dest)
        await self.unlink(src)
        logger.debug("Renamed %s to %s", src, dest)
