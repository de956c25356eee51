"""Large file offload for the vault, in the style of Git LFS.

Files matching the tracked patterns in `.gitattributes` are uploaded to S3
and replaced in the working tree by a small pointer file, so that binary
assets never enter the git history. Smudging reverses the substitution.

Pointer format (https://github.com/git-lfs/git-lfs/blob/main/docs/spec.md):

    version https://git-lfs.github.com/spec/v1
    oid sha256:<64 lowercase hex chars>
    size <bytes>

Objects are stored content-addressed at `lfs/<oid>`; uploads are staged
under `lfs/tmp/` while the hash is being computed.
"""

import glob
import hashlib
import logging
import os
import re
import tempfile
import time
import uuid
from typing import Any, Callable, Iterable, List, Optional, Union

import aiofiles

from vaultsync.core import PointerParseError, TransferError
from vaultsync.storage.s3 import DEFAULT_PART_SIZE, S3ObjectStore

logger = logging.getLogger(__name__)

LFS_VERSION = "https://git-lfs.github.com/spec/v1"
POINTER_PREFIX = f"version {LFS_VERSION}".encode("utf-8")

# Git LFS pointer files are at most 1024 bytes
LFS_POINTER_MAX_SIZE = 1024
# Bytes read when checking whether a file is a pointer
POINTER_PEEK_SIZE = 100

GITATTRIBUTES_FILE = ".gitattributes"
BINARY_MARKER = "binary"

DEFAULT_GITATTRIBUTES = """*.png binary
*.jpg binary
*.jpeg binary
*.gif binary
*.webp binary
*.bmp binary
*.mp4 binary
*.mov binary
*.webm binary
*.mp3 binary
*.wav binary
*.flac binary
*.pdf binary
*.zip binary
*.tar binary
*.gz binary
"""

_POINTER_PATTERN = re.compile(
    r"version " + re.escape(LFS_VERSION) + r"\noid sha256:([0-9a-f]{64})\nsize ([0-9]+)\n"
)


class LFSPointer:
    """Parsed LFS pointer file."""

    def __init__(self, oid: str, size: int):
        self.oid = oid
        self.size = size

    def __eq__(self, other):
        return (
            isinstance(other, LFSPointer)
            and self.oid == other.oid
            and self.size == other.size
        )

    def __repr__(self):
        return f"LFSPointer(oid={self.oid!r}, size={self.size})"

    @classmethod
    def parse_strict(cls, content: Union[bytes, str]) -> "LFSPointer":
        """Parse a pointer, raising PointerParseError on any deviation."""
        if isinstance(content, bytes):
            if len(content) > LFS_POINTER_MAX_SIZE:
                raise PointerParseError("Content is too large to be a pointer")
            try:
                content = content.decode("utf-8")
            except UnicodeDecodeError as e:
                raise PointerParseError("Pointer is not valid UTF-8") from e
        match = _POINTER_PATTERN.fullmatch(content)
        if not match:
            raise PointerParseError("Content is not an LFS pointer")
        return cls(oid=match.group(1), size=int(match.group(2)))

    @classmethod
    def parse(cls, content: Union[bytes, str]) -> Optional["LFSPointer"]:
        """Parse a pointer, returning None if content is not exactly one."""
        try:
            return cls.parse_strict(content)
        except PointerParseError:
            return None

    def format(self) -> str:
        return format_pointer(self.oid, self.size)


def parse_pointer(content: Union[bytes, str]) -> Optional[LFSPointer]:
    return LFSPointer.parse(content)


def format_pointer(oid: str, size: int) -> str:
    return f"version {LFS_VERSION}\noid sha256:{oid}\nsize {size}\n"


def get_lfs_patterns(root: str) -> List[str]:
    """Read the tracked patterns from the `.gitattributes` file at `root`.

    A pattern is the first token of every line containing the binary marker.
    Returns an empty list if the file is missing or unreadable.
    """
    try:
        with open(os.path.join(root, GITATTRIBUTES_FILE), encoding="utf-8") as f:
            content = f.read()
    except (OSError, UnicodeDecodeError):
        return []
    patterns = []
    for line in content.splitlines():
        if BINARY_MARKER not in line:
            continue
        tokens = line.split()
        if tokens:
            patterns.append(tokens[0])
    return patterns


def expand_patterns(root: str, patterns: Iterable[str]) -> List[str]:
    """Expand glob patterns into sorted, unique relative file paths.

    `*` does not cross directory separators; `**` matches recursively.
    """
    files = set()
    for pattern in patterns:
        for match in glob.glob(pattern, root_dir=root, recursive=True):
            if os.path.isfile(os.path.join(root, match)):
                files.add(match.replace(os.sep, "/"))
    return sorted(files)


class _HashingReader:
    """Stream a file in chunks, hashing and counting the bytes that pass."""

    def __init__(self, path: str, chunk_size: int):
        self.path = path
        self.chunk_size = chunk_size
        self.hasher = hashlib.sha256()
        self.size = 0

    async def __aiter__(self):
        async with aiofiles.open(self.path, "rb") as f:
            while True:
                chunk = await f.read(self.chunk_size)
                if not chunk:
                    break
                self.hasher.update(chunk)
                self.size += len(chunk)
                yield chunk


class LFSStore:
    """Offload and restore large files through S3.

    Usage:
        lfs = LFSStore(store, prefix="my-vault")
        await lfs.clean("/vault/image.png")   # file now holds a pointer
        await lfs.smudge("/vault/image.png")  # original content restored
    """

    def __init__(
        self,
        store: S3ObjectStore,
        prefix: str = "",
        chunk_size: int = DEFAULT_PART_SIZE,
    ):
        self.store = store
        prefix = (prefix or "").strip("/")
        self.prefix = f"{prefix}/" if prefix else ""
        self.chunk_size = chunk_size

    def object_key(self, oid: str) -> str:
        return f"{self.prefix}lfs/{oid}"

    def _temp_key(self) -> str:
        return f"{self.prefix}lfs/tmp/{int(time.time() * 1000)}-{uuid.uuid4().hex}"

    async def clean(
        self, path: str, on_progress: Optional[Callable[[int], Any]] = None
    ) -> LFSPointer:
        """Upload a file and replace it with a pointer.

        The file is read once: it is hashed while it streams to a temporary
        key, then copied server-side to its content-addressed key.
        """
        reader = _HashingReader(path, self.chunk_size)
        temp_key = self._temp_key()

        # The size on disk only drives progress; the pointer uses what was read
        await self.store.put(
            temp_key,
            reader,
            size=os.path.getsize(path),
            on_progress=on_progress,
        )
        pointer = LFSPointer(oid=reader.hasher.hexdigest(), size=reader.size)
        try:
            await self.store.copy(
                temp_key, self.object_key(pointer.oid), size=pointer.size
            )
        finally:
            await self.store.delete(temp_key)

        async with aiofiles.open(path, "w", encoding="utf-8", newline="") as f:
            await f.write(pointer.format())
        logger.debug("Cleaned %s -> %s (%d bytes)", path, pointer.oid, pointer.size)
        return pointer

    async def read_pointer(self, path: str) -> Optional[LFSPointer]:
        async with aiofiles.open(path, "rb") as f:
            content = await f.read(LFS_POINTER_MAX_SIZE + 1)
        return LFSPointer.parse(content)

    async def smudge(self, path: str) -> bool:
        """Replace a pointer file with the object it references.

        A file that is not a pointer is left untouched. Returns True if
        content was materialized.
        """
        pointer = await self.read_pointer(path)
        if pointer is None:
            return False

        key = self.object_key(pointer.oid)
        fd, temp_path = tempfile.mkstemp(
            dir=os.path.dirname(os.path.abspath(path)), prefix=".vaultsync-"
        )
        os.close(fd)
        try:
            hasher = hashlib.sha256()
            size = 0
            async with aiofiles.open(temp_path, "wb") as f:
                async for chunk in self.store.iter_chunks(key):
                    hasher.update(chunk)
                    size += len(chunk)
                    await f.write(chunk)
            if hasher.hexdigest() != pointer.oid or size != pointer.size:
                raise TransferError(
                    f"Downloaded object {pointer.oid} does not match its pointer "
                    f"(got {size} bytes with hash {hasher.hexdigest()})"
                )
            os.replace(temp_path, path)
        finally:
            if os.path.exists(temp_path):
                os.remove(temp_path)
        logger.debug("Smudged %s <- %s", path, pointer.oid)
        return True

    async def is_pointer(self, path: str) -> bool:
        """Check the leading bytes of a file for the pointer version line."""
        async with aiofiles.open(path, "rb") as f:
            head = await f.read(POINTER_PEEK_SIZE)
        return head.startswith(POINTER_PREFIX)

    async def clean_paths(
        self,
        root: str,
        files: Iterable[str],
        on_progress: Optional[Callable[[str, int], Any]] = None,
    ) -> List[str]:
        """Clean the given relative paths one by one, skipping pointers.

        Returns the paths that were offloaded.
        """
        cleaned = []
        for file in files:
            full_path = os.path.join(root, file)
            if await self.is_pointer(full_path):
                continue
            callback = None
            if on_progress:
                callback = lambda percent, file=file: on_progress(file, percent)
            await self.clean(full_path, callback)
            cleaned.append(file)
        return cleaned

    async def clean_files(
        self,
        root: str,
        patterns: Iterable[str],
        on_progress: Optional[Callable[[str, int], Any]] = None,
    ) -> List[str]:
        """Clean every file under `root` matching the patterns."""
        return await self.clean_paths(
            root, expand_patterns(root, patterns), on_progress
        )

    async def smudge_files(self, root: str, patterns: Iterable[str]) -> List[str]:
        """Smudge every file under `root` matching the patterns.

        Returns the paths that were materialized.
        """
        restored = []
        for file in expand_patterns(root, patterns):
            if await self.smudge(os.path.join(root, file)):
                restored.append(file)
        return restored
