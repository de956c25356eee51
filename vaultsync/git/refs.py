"""Resolve the tip of the history mirrored on S3."""

import logging
from typing import Optional

from vaultsync.core import NotFoundError
from vaultsync.storage.fs import S3FS

logger = logging.getLogger(__name__)

SYMREF_PREFIX = "ref: "


async def read_ref(fs: S3FS, git_dir: str, ref: str) -> Optional[str]:
    """Read a loose ref, or look it up in packed-refs."""
    try:
        return (await fs.read_file(f"{git_dir}/{ref}")).decode("utf-8").strip()
    except NotFoundError:
        pass
    try:
        packed = (await fs.read_file(f"{git_dir}/packed-refs")).decode("utf-8")
    except NotFoundError:
        return None
    for line in packed.splitlines():
        if not line or line.startswith(("#", "^")):
            continue
        parts = line.split(" ", 1)
        if len(parts) == 2 and parts[1].strip() == ref:
            return parts[0]
    return None


async def get_remote_head(fs: S3FS, git_dir: str = ".git") -> Optional[str]:
    """Return the commit id the remote HEAD points at, or None.

    HEAD is either a commit id or a symbolic ref ("ref: refs/heads/main")
    that is dereferenced through the named branch. A missing HEAD or an
    unborn branch gives None.
    """
    try:
        head = (await fs.read_file(f"{git_dir}/HEAD")).decode("utf-8").strip()
    except NotFoundError:
        return None
    if head.startswith(SYMREF_PREFIX):
        ref = head[len(SYMREF_PREFIX) :].strip()
        oid = await read_ref(fs, git_dir, ref)
        logger.debug("Remote HEAD -> %s -> %s", ref, oid)
        return oid or None
    return head or None
