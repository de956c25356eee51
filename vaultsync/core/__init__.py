"""Provide the vaultsync data model and error types."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class VaultSyncError(Exception):
    """Base exception for vaultsync errors."""

    pass


class ConfigurationError(VaultSyncError):
    """Raised when required connection parameters are missing."""

    pass


class NotFoundError(VaultSyncError):
    """Raised when an object or path does not exist."""

    pass


class TransferError(VaultSyncError):
    """Raised when an upload, download or copy fails."""

    pass


class ExternalToolError(VaultSyncError):
    """Raised when the history-graph engine exits with an error."""

    def __init__(self, command, returncode=None, stderr=""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        name = " ".join(self.command[:2]) if self.command else "command"
        super().__init__(f"{name} failed: {stderr.strip() or f'exit code {returncode}'}")


class PointerParseError(VaultSyncError):
    """Raised when a pointer record does not have the exact expected structure."""

    pass


class MergeConflictError(VaultSyncError):
    """Raised when a merge stops on conflicts and waits for user resolutions.

    The suspended workflow travels with the error so that the caller can
    resume or cancel it later.
    """

    def __init__(self, pending: "PendingMerge"):
        self.pending = pending
        paths = ", ".join(c.path for c in pending.conflicts)
        super().__init__(f"Merge conflicts in {len(pending.conflicts)} file(s): {paths}")


class Identity(BaseModel):
    """Author or committer of a commit."""

    name: str
    email: str
    timestamp: int
    timezone_offset: int = Field(
        0, description="Minutes west of UTC (positive for negative UTC offsets)"
    )


class Commit(BaseModel):
    """An immutable node of the history graph."""

    oid: str
    message: str
    tree: str
    parents: List[str] = []
    author: Identity
    committer: Identity


class WorkingTreeStatus(BaseModel):
    """Snapshot of the local working tree compared to the checked-out commit."""

    staged: List[str] = []
    modified: List[str] = []
    untracked: List[str] = []
    deleted: List[str] = []

    @property
    def is_clean(self) -> bool:
        return not (self.staged or self.modified or self.untracked or self.deleted)


class SyncState(str, Enum):
    """Represent the observable state of the vault."""

    disconnected = "disconnected"
    clean = "clean"
    changes = "changes"
    syncing = "syncing"
    error = "error"


class SyncStatus(BaseModel):
    """A status update emitted on every phase transition."""

    state: SyncState
    step: Optional[str] = None
    percent: Optional[int] = None
    message: Optional[str] = None


class Resolution(str, Enum):
    """How to settle a single conflicting path."""

    ours = "ours"  # keep local
    theirs = "theirs"  # keep remote
    both = "both"  # keep both bodies, markers stripped


class Conflict(BaseModel):
    """A path with overlapping concurrent changes."""

    path: str
    content: str


class PendingMerge(BaseModel):
    """A merge suspended on conflicts, waiting for resolutions."""

    pre_merge_head: str
    conflicts: List[Conflict]

    @property
    def paths(self) -> List[str]:
        return [c.path for c in self.conflicts]


class ObjectInfo(BaseModel):
    """Metadata of a stored object."""

    key: str
    size: int = 0
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None


class ListResult(BaseModel):
    """Concatenated result of a paginated listing."""

    objects: List[ObjectInfo] = []
    prefixes: List[str] = []


class DirEntry(BaseModel):
    """A child of a remote directory."""

    name: str
    size: int = 0
    last_modified: Optional[datetime] = None
    is_directory: bool = False


class FileStat(BaseModel):
    """Result of a remote stat call."""

    size: int = 0
    last_modified: Optional[datetime] = None
    is_directory: bool = False

    def is_file(self) -> bool:
        return not self.is_directory


ResolutionMap = Dict[str, Resolution]


__all__ = [
    "VaultSyncError",
    "ConfigurationError",
    "NotFoundError",
    "TransferError",
    "ExternalToolError",
    "PointerParseError",
    "MergeConflictError",
    "Identity",
    "Commit",
    "WorkingTreeStatus",
    "SyncState",
    "SyncStatus",
    "Resolution",
    "ResolutionMap",
    "Conflict",
    "PendingMerge",
    "ObjectInfo",
    "ListResult",
    "DirEntry",
    "FileStat",
]
