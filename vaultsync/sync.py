"""Synchronize a local vault with S3 through its git history.

The local `.git` directory is mirrored to S3 as plain files and large
binaries are offloaded to content-addressed objects. Pushing compares the
local and remote tips, merges first when the histories diverged, and then
mirrors the history up. Pulling stages the remote history in a temporary
directory, fetches from it and merges.

At most one operation runs at a time: a call made while another one is in
flight is ignored.
"""

import asyncio
import logging
import os
import shutil
import sys
import tempfile
from typing import Any, Callable, List, Optional, Tuple

from vaultsync.config import SyncConfig
from vaultsync.core import (
    Commit,
    Conflict,
    ExternalToolError,
    MergeConflictError,
    PendingMerge,
    ResolutionMap,
    SyncState,
    SyncStatus,
    WorkingTreeStatus,
)
from vaultsync.git.lfs import (
    DEFAULT_GITATTRIBUTES,
    GITATTRIBUTES_FILE,
    LFSStore,
    expand_patterns,
    get_lfs_patterns,
)
from vaultsync.git.merge import apply_resolutions, read_conflicts
from vaultsync.git.mirror import HistoryMirror
from vaultsync.git.refs import get_remote_head
from vaultsync.git.repo import GitRepo, HistoryGraph
from vaultsync.storage.fs import S3FS
from vaultsync.storage.s3 import S3ObjectStore
from vaultsync.utils import safe_call_callback

LOGLEVEL = os.environ.get("VAULTSYNC_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("vaultsync")
logger.setLevel(LOGLEVEL)

GIT_DIR = ".git"
GITIGNORE_FILE = ".gitignore"
MERGE_HEAD_FILE = "MERGE_HEAD"
DEFAULT_NAME = "vaultsync"
DEFAULT_EMAIL = "vaultsync@local"

INITIAL_COMMIT_MESSAGE = "initial commit"
MERGE_MESSAGE = "merge remote"
RESOLVE_MESSAGE = "resolve merge conflicts"
FALLBACK_COMMIT_MESSAGE = "vault sync"
UP_TO_DATE = "Up to date"


def ensure_git_layout(git_dir: str):
    """Recreate the directories git requires; empty ones are not mirrored."""
    for name in ("objects", "refs", "refs/heads"):
        os.makedirs(os.path.join(git_dir, name), exist_ok=True)


async def _deliver_after(previous, pending):
    """Await `pending` once `previous` finished, keeping progress updates in order."""
    if previous is not None:
        await asyncio.wait([previous])
    await pending


def generate_commit_message(status: WorkingTreeStatus) -> str:
    """Summarize the working tree changes, e.g. "add 2 file(s), delete 1 file(s)"."""
    parts = []
    if status.untracked:
        parts.append(f"add {len(status.untracked)} file(s)")
    if status.modified:
        parts.append(f"update {len(status.modified)} file(s)")
    if status.deleted:
        parts.append(f"delete {len(status.deleted)} file(s)")
    return ", ".join(parts) if parts else FALLBACK_COMMIT_MESSAGE


class VaultSync:
    """Push, pull and restore a vault against an S3 bucket.

    Usage:
        sync = VaultSync(config, on_status=print)
        await sync.connect()
        await sync.push()

    Args:
        config: Connection and vault settings
        on_status: Receives a `SyncStatus` on every phase transition (sync or async)
        decide: Receives the conflicts of a push merge and returns a mapping of
            path to `Resolution`, or None to cancel the merge (sync or async).
            Without it, `push` raises `MergeConflictError`.
        confirm: Asked before `restore` discards local changes (sync or async)
        s3_client_factory: Overrides the client factory built from `config`
        repo: Overrides the git repository of the vault directory
    """

    def __init__(
        self,
        config: SyncConfig,
        on_status: Optional[Callable[[SyncStatus], Any]] = None,
        decide: Optional[Callable[[List[Conflict]], Any]] = None,
        confirm: Optional[Callable[[str], Any]] = None,
        s3_client_factory: Optional[Callable] = None,
        repo: Optional[HistoryGraph] = None,
    ):
        self.config = config
        self.root = os.path.abspath(config.vault_dir)
        self.repo = repo or GitRepo(self.root)
        self.on_status = on_status
        self.decide = decide
        self.confirm = confirm
        self.status = SyncStatus(state=SyncState.disconnected)

        self._s3_client_factory = s3_client_factory
        self._lock = asyncio.Lock()
        self._background: List[asyncio.Future] = []
        self.store: Optional[S3ObjectStore] = None
        self.fs: Optional[S3FS] = None
        self.lfs: Optional[LFSStore] = None
        self.mirror: Optional[HistoryMirror] = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # =========================================================================
    # Status reporting
    # =========================================================================

    def _set_status(self, state: SyncState, step=None, percent=None, message=None):
        self.status = SyncStatus(state=state, step=step, percent=percent, message=message)
        if step:
            logger.info("%s: %s", state.value, step)
        return self.status

    async def _emit(self, state: SyncState, step=None, percent=None, message=None):
        status = self._set_status(state, step, percent, message)
        await safe_call_callback(self.on_status, status)
        return status

    def _emit_nowait(self, state: SyncState, step=None, percent=None):
        """Report progress from a synchronous transfer callback."""
        status = self._set_status(state, step, percent)
        if not self.on_status:
            return
        result = self.on_status(status)
        if asyncio.iscoroutine(result):
            previous = self._background[-1] if self._background else None
            self._background.append(
                asyncio.ensure_future(_deliver_after(previous, result))
            )

    async def _drain_progress(self):
        """Wait for the progress callbacks scheduled by `_emit_nowait`."""
        tasks, self._background = self._background, []
        if tasks:
            await asyncio.gather(*tasks)

    # =========================================================================
    # Plumbing
    # =========================================================================

    def _connect_remote(self):
        """Create the S3 helpers; raises ConfigurationError before any network call."""
        self.config.check()
        if self.store is not None:
            return
        factory = self._s3_client_factory or self.config.create_client_factory()
        self.store = S3ObjectStore(
            factory, self.config.bucket, part_size=self.config.part_size
        )
        self.fs = S3FS(self.store, self.config.prefix)
        self.lfs = LFSStore(self.store, self.config.prefix, chunk_size=self.config.part_size)
        self.mirror = HistoryMirror(self.fs, self.root)

    async def _exclusive(self, name: str, operation, *args):
        """Run one operation under the busy guard and report its failure."""
        if self._lock.locked():
            logger.debug("Ignoring %s: another operation is in progress", name)
            return None
        async with self._lock:
            try:
                return await operation(*args)
            except MergeConflictError as e:
                await self._emit(
                    SyncState.changes,
                    step=f"Merge conflicts: {len(e.pending.conflicts)} file(s)",
                    message=str(e),
                )
                raise
            except Exception as e:
                logger.error("%s failed: %s", name.capitalize(), e, exc_info=True)
                await self._emit(
                    SyncState.error, step=f"{name.capitalize()} failed", message=str(e)
                )
                raise

    async def _configure_repo(self):
        if not await self.repo.get_config("user.name"):
            await self.repo.set_config("user.name", DEFAULT_NAME)
        if not await self.repo.get_config("user.email"):
            await self.repo.set_config("user.email", DEFAULT_EMAIL)
        # Offloading is done by vaultsync; keep git from running LFS filters
        await self.repo.set_config("filter.lfs.clean", "cat")
        await self.repo.set_config("filter.lfs.smudge", "cat")
        await self.repo.set_config("filter.lfs.required", "false")

    def _ensure_gitattributes(self) -> bool:
        path = os.path.join(self.root, GITATTRIBUTES_FILE)
        if os.path.exists(path):
            return False
        with open(path, "w", encoding="utf-8") as f:
            f.write(DEFAULT_GITATTRIBUTES)
        return True

    def _write_gitignore(self):
        path = os.path.join(self.root, GITIGNORE_FILE)
        if os.path.exists(path):
            return
        with open(path, "w", encoding="utf-8") as f:
            f.write("".join(f"{pattern}\n" for pattern in self.config.ignore))

    def _patterns(self) -> List[str]:
        return get_lfs_patterns(self.root)

    async def _smudge(self):
        await self._emit(SyncState.syncing, step="Restoring large files...")
        restored = await self.lfs.smudge_files(self.root, self._patterns())
        if restored:
            logger.info("Restored %d large file(s)", len(restored))

    async def _offload(self, files: List[str]):
        def on_progress(file, percent):
            self._emit_nowait(
                SyncState.syncing, step=f"Uploading {file} ({percent}%)", percent=percent
            )

        for file in files:
            await self._emit(SyncState.syncing, step=f"Uploading {file} (0%)", percent=0)
            await self.lfs.clean_paths(self.root, [file], on_progress)
            await self._drain_progress()

    async def _ensure_no_pending_merge(self):
        """Refuse to stage, commit or publish while a suspended merge is unresolved."""
        if not self.repo.exists():
            return
        merging = os.path.exists(os.path.join(self.root, GIT_DIR, MERGE_HEAD_FILE))
        if not merging and not await self.repo.list_conflicts():
            return
        conflicts = await read_conflicts(self.repo, self.root)
        pre_merge_head = await self.repo.resolve("HEAD")
        raise MergeConflictError(
            PendingMerge(pre_merge_head=pre_merge_head or "", conflicts=conflicts)
        )

    async def _commit_all(self, message: str) -> Optional[str]:
        await self._emit(SyncState.syncing, step="Committing...")
        await self.repo.add_all()
        if not await self.repo.has_staged_changes():
            logger.info("Nothing to commit")
            return None
        return await self.repo.commit(message)

    async def _mirror_up(self):
        await self._emit(SyncState.syncing, step="Pushing history...")
        await self.mirror.copy_tree_up(GIT_DIR)

    async def _fetch_and_merge(self, pre_merge_head: Optional[str]) -> Optional[PendingMerge]:
        """Merge the remote history into the current branch.

        Returns a PendingMerge if the merge stopped on conflicts.
        """
        await self._emit(SyncState.syncing, step="Fetching remote...")
        staging = tempfile.mkdtemp(prefix="vaultsync-remote-")
        try:
            staging_git_dir = os.path.join(staging, GIT_DIR)
            await self.mirror.copy_tree_to_path(GIT_DIR, staging_git_dir)
            ensure_git_layout(staging_git_dir)
            await self.repo.fetch(staging, self.config.branch)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        await self._emit(SyncState.syncing, step="Merging...")
        if await self.repo.merge("FETCH_HEAD", MERGE_MESSAGE):
            await self._smudge()
            return None
        conflicts = await read_conflicts(self.repo, self.root)
        return PendingMerge(pre_merge_head=pre_merge_head or "", conflicts=conflicts)

    # =========================================================================
    # Status and views
    # =========================================================================

    async def refresh_status(self) -> SyncStatus:
        """Recompute the vault state from the working tree."""
        if not self.config.is_configured() or not self.repo.exists():
            return await self._emit(SyncState.disconnected)
        try:
            status = await self.repo.status()
        except ExternalToolError as e:
            logger.error("Failed to read status: %s", e)
            return await self._emit(SyncState.error, message=str(e))
        if status.is_clean:
            return await self._emit(SyncState.clean)
        return await self._emit(SyncState.changes)

    async def log(self, count: int = 10) -> List[Commit]:
        return await self.repo.log(count)

    async def diff(self) -> Tuple[str, WorkingTreeStatus]:
        """Return the unstaged diff with the working tree status."""
        return await self.repo.diff(), await self.repo.status()

    # =========================================================================
    # Connect
    # =========================================================================

    async def connect(self) -> Optional[SyncStatus]:
        """Attach the vault directory to the remote.

        - local history exists: already connected, the repository is configured
        - only the remote exists: the history is downloaded and checked out
        - neither exists: a new repository is initialized and pushed
        """
        return await self._exclusive("connect", self._connect)

    async def _connect(self) -> SyncStatus:
        self._connect_remote()
        os.makedirs(self.root, exist_ok=True)

        if self.repo.exists():
            self._ensure_gitattributes()
            await self._configure_repo()
            logger.info("Using existing repository in %s", self.root)
            return await self.refresh_status()

        await self._emit(SyncState.syncing, step="Connecting...")
        if await self.fs.exists(f"{GIT_DIR}/HEAD"):
            await self._emit(SyncState.syncing, step="Downloading history...")
            await self.mirror.copy_tree_down(GIT_DIR)
            ensure_git_layout(os.path.join(self.root, GIT_DIR))
            await self._configure_repo()
            await self.repo.reset_hard("HEAD")
            await self._smudge()
        else:
            await self._emit(SyncState.syncing, step="Initializing vault...")
            await self.repo.init(self.config.branch)
            self._write_gitignore()
            self._ensure_gitattributes()
            await self._configure_repo()
            await self.repo.add(GITIGNORE_FILE)
            await self.repo.add(GITATTRIBUTES_FILE)
            await self.repo.commit(INITIAL_COMMIT_MESSAGE)
            await self._mirror_up()
        return await self.refresh_status()

    # =========================================================================
    # Commit
    # =========================================================================

    async def commit(self, message: Optional[str] = None) -> Optional[str]:
        """Offload every tracked file that is not a pointer yet, stage all and commit."""
        return await self._exclusive("commit", self._commit, message)

    async def _commit(self, message: Optional[str]) -> Optional[str]:
        self._connect_remote()
        await self._ensure_no_pending_merge()
        status = await self.repo.status()
        if status.is_clean:
            await self._emit(SyncState.clean, step="Nothing to commit")
            return None
        await self._offload(expand_patterns(self.root, self._patterns()))
        oid = await self._commit_all(message or generate_commit_message(status))
        await self.refresh_status()
        return oid

    # =========================================================================
    # Push
    # =========================================================================

    async def push(self) -> Optional[SyncStatus]:
        """Commit local changes and publish the history.

        If the remote moved on since the last sync, the remote history is
        merged first. Merge conflicts are handed to `decide`; without it a
        `MergeConflictError` carrying the suspended merge is raised, to be
        passed to `resume_push` or `cancel_merge`.
        """
        return await self._exclusive("push", self._push)

    async def _push(self) -> SyncStatus:
        self._connect_remote()
        await self._ensure_no_pending_merge()
        status = await self.repo.status()
        local_head = await self.repo.resolve("HEAD")
        remote_head = await get_remote_head(self.fs)

        if status.is_clean and local_head == remote_head:
            return await self._emit(SyncState.clean, step=UP_TO_DATE)

        if not status.is_clean:
            await self._emit(SyncState.syncing, step="Syncing...")
            changed = set(status.untracked + status.modified + status.staged)
            candidates = [
                f for f in expand_patterns(self.root, self._patterns()) if f in changed
            ]
            await self._offload(candidates)
            await self._commit_all(generate_commit_message(status))
            local_head = await self.repo.resolve("HEAD")
            if local_head == remote_head:
                await self.refresh_status()
                return await self._emit(SyncState.clean, step=UP_TO_DATE)

        if remote_head and (
            local_head is None or not await self.repo.is_ancestor(remote_head, local_head)
        ):
            # Diverged
            pending = await self._fetch_and_merge(local_head)
            if pending is not None:
                if self.decide is None:
                    raise MergeConflictError(pending)
                resolutions = await safe_call_callback(self.decide, pending.conflicts)
                if resolutions is None:
                    await self._cancel_merge(pending)
                    return self.status
                return await self._resume_push(pending, resolutions)

        await self._mirror_up()
        await self.refresh_status()
        return await self._emit(self.status.state, step="Pushed")

    async def resume_push(
        self, pending: PendingMerge, resolutions: ResolutionMap
    ) -> Optional[SyncStatus]:
        """Apply conflict resolutions, commit the merge and finish the push."""
        return await self._exclusive("push", self._resume_push, pending, resolutions)

    async def _resume_push(
        self, pending: PendingMerge, resolutions: ResolutionMap
    ) -> SyncStatus:
        self._connect_remote()
        await self._emit(SyncState.syncing, step="Resolving conflicts...")
        await apply_resolutions(self.repo, self.root, pending.conflicts, resolutions)
        await self.repo.commit(RESOLVE_MESSAGE)
        await self._smudge()
        await self._mirror_up()
        await self.refresh_status()
        return await self._emit(self.status.state, step="Pushed")

    async def cancel_merge(self, pending: PendingMerge) -> Optional[SyncStatus]:
        """Abort a suspended merge and return to the pre-merge commit."""
        return await self._exclusive("cancel", self._cancel_merge, pending)

    async def _cancel_merge(self, pending: PendingMerge) -> SyncStatus:
        self._connect_remote()
        await self._emit(SyncState.syncing, step="Cancelling merge...")
        try:
            await self.repo.merge_abort()
        except ExternalToolError as e:
            logger.debug("No merge to abort: %s", e)
        if pending.pre_merge_head:
            await self.repo.reset_hard(pending.pre_merge_head)
        await self._smudge()
        await self.refresh_status()
        return await self._emit(self.status.state, step="Merge cancelled")

    # =========================================================================
    # Pull
    # =========================================================================

    async def pull(self) -> Optional[SyncStatus]:
        """Merge the remote history into the local branch.

        Conflicts are not resolved here: the merge is aborted and the pull
        fails with the list of conflicting paths.
        """
        return await self._exclusive("pull", self._pull)

    async def _pull(self) -> SyncStatus:
        self._connect_remote()
        await self._ensure_no_pending_merge()
        local_head = await self.repo.resolve("HEAD")
        remote_head = await get_remote_head(self.fs)
        if remote_head is None or local_head == remote_head:
            return await self._emit(self.status.state, step=UP_TO_DATE)

        pending = await self._fetch_and_merge(local_head)
        if pending is not None:
            await self.repo.merge_abort()
            raise ExternalToolError(
                ["git", "merge", "FETCH_HEAD"],
                1,
                f"Merge conflicts in: {', '.join(pending.paths)}",
            )
        await self.refresh_status()
        return await self._emit(self.status.state, step="Pulled")

    # =========================================================================
    # Restore
    # =========================================================================

    async def restore(self, confirmed: bool = False) -> Optional[bool]:
        """Discard every uncommitted change and restore large files.

        This cannot be undone, so it only runs when `confirmed` is True or
        the `confirm` callback agrees. Returns True if the vault was restored.
        """
        return await self._exclusive("restore", self._restore, confirmed)

    async def _restore(self, confirmed: bool) -> bool:
        self._connect_remote()
        if not confirmed and self.confirm is not None:
            confirmed = bool(
                await safe_call_callback(
                    self.confirm, "Discard all local changes? This cannot be undone."
                )
            )
        if not confirmed:
            logger.info("Restore not confirmed")
            return False

        await self._emit(SyncState.syncing, step="Restoring...")
        if await self.repo.resolve("HEAD") is not None:
            await self.repo.reset_hard("HEAD")
        await self.repo.clean()
        await self._smudge()
        await self.refresh_status()
        return True
