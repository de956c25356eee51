"""Copy the `.git` directory between the local disk and S3.

Both directions are full-tree copies. Git storage is mostly immutable
content-addressed files, so there is no incremental diffing here.
"""

import logging
import os
from typing import Any, Callable, Optional

import aiofiles

from vaultsync.storage.fs import S3FS

logger = logging.getLogger(__name__)


class HistoryMirror:
    """Mirror directories of a local root to an `S3FS` and back."""

    def __init__(self, fs: S3FS, root: str):
        self.fs = fs
        self.root = root

    async def copy_tree_up(
        self, directory: str, on_file: Optional[Callable[[str], Any]] = None
    ) -> int:
        """Upload every regular file under `root/directory`.

        Returns the number of files uploaded.
        """
        local_dir = os.path.join(self.root, directory)
        count = 0
        for dirpath, dirnames, filenames in os.walk(local_dir):
            dirnames.sort()
            for filename in sorted(filenames):
                full_path = os.path.join(dirpath, filename)
                if not os.path.isfile(full_path) or os.path.islink(full_path):
                    continue
                rel_path = os.path.relpath(full_path, self.root).replace(os.sep, "/")
                size = os.path.getsize(full_path)
                async with aiofiles.open(full_path, "rb") as f:
                    await self.fs.write_file(rel_path, f, size=size)
                count += 1
                if on_file:
                    on_file(rel_path)
        logger.info("Uploaded %d file(s) from %s", count, directory)
        return count

    async def copy_tree_down(self, directory: str) -> int:
        """Download a remote directory into the same place under `root`."""
        return await self.copy_tree_to_path(directory, os.path.join(self.root, directory))

    async def copy_tree_to_path(self, remote_dir: str, local_dir: str) -> int:
        """Download a remote directory tree into `local_dir`.

        Returns the number of files written.
        """
        os.makedirs(local_dir, exist_ok=True)
        count = 0
        for entry in await self.fs.readdir(remote_dir):
            remote_path = f"{remote_dir.rstrip('/')}/{entry.name}"
            local_path = os.path.join(local_dir, entry.name)
            if entry.is_directory:
                count += await self.copy_tree_to_path(remote_path, local_path)
                continue
            async with aiofiles.open(local_path, "wb") as f:
                async for chunk in self.fs.iter_file(remote_path):
                    await f.write(chunk)
            count += 1
        logger.debug("Downloaded %d file(s) from %s", count, remote_dir)
        return count
