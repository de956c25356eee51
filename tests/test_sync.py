"""Test the sync orchestrator end to end against an in-memory bucket."""

import asyncio

import pytest

from vaultsync.core import (
    ConfigurationError,
    ExternalToolError,
    MergeConflictError,
    Resolution,
    SyncState,
    WorkingTreeStatus,
)
from vaultsync.git.lfs import parse_pointer
from vaultsync.git.refs import get_remote_head
from vaultsync.sync import UP_TO_DATE, VaultSync, generate_commit_message

from . import BUCKET, PNG_BYTES, make_config, read_file, requires_git, write_file
from .fake_s3 import create_s3_client_factory

# All test coroutines will be treated as marked.
pytestmark = pytest.mark.asyncio

MARKERS = ("<<<<<<<", "=======", ">>>>>>>")


def make_sync(root, fake, **kwargs):
    statuses = []
    sync = VaultSync(
        make_config(root),
        on_status=statuses.append,
        s3_client_factory=create_s3_client_factory(fake),
        **kwargs,
    )
    sync.statuses = statuses
    return sync


async def connected_pair(tmp_path, fake, **kwargs):
    """Two vaults sharing a remote that holds one committed note."""
    a = make_sync(tmp_path / "a", fake)
    await a.connect()
    write_file(tmp_path / "a", "note.md", "base\n")
    await a.push()

    b = make_sync(tmp_path / "b", fake, **kwargs)
    await b.connect()
    return a, b


async def diverge(tmp_path, a, b):
    write_file(tmp_path / "a", "note.md", "from a\n")
    await a.push()
    write_file(tmp_path / "b", "note.md", "from b\n")


async def test_generate_commit_message():
    status = WorkingTreeStatus(untracked=["a"], modified=["b", "c"], deleted=["d"])
    assert generate_commit_message(status) == (
        "add 1 file(s), update 2 file(s), delete 1 file(s)"
    )
    assert generate_commit_message(WorkingTreeStatus(staged=["x"])) == "vault sync"


class TestGuards:
    async def test_missing_settings_fail_before_network(self, tmp_path, fake_s3):
        sync = VaultSync(
            make_config(tmp_path, bucket=None),
            s3_client_factory=create_s3_client_factory(fake_s3),
        )
        with pytest.raises(ConfigurationError):
            await sync.push()
        assert fake_s3.calls == []
        assert sync.status.state == SyncState.error
        assert not sync.busy

    async def test_busy_operations_are_ignored(self, tmp_path, fake_s3):
        sync = make_sync(tmp_path, fake_s3)
        await sync._lock.acquire()
        try:
            assert await sync.push() is None
            assert await sync.pull() is None
            assert await sync.restore(confirmed=True) is None
        finally:
            sync._lock.release()
        assert fake_s3.calls == []

    async def test_disconnected_without_repository(self, tmp_path, fake_s3):
        sync = make_sync(tmp_path, fake_s3)
        status = await sync.refresh_status()
        assert status.state == SyncState.disconnected


@requires_git
class TestScenarios:
    async def test_fresh_connect_then_push_is_up_to_date(self, tmp_path, fake_s3):
        root = tmp_path / "vault"
        sync = make_sync(root, fake_s3)
        await sync.connect()

        assert (root / ".git").is_dir()
        assert read_file(root, ".gitignore") == ".DS_Store\n.obsidian/**\n.trash/**\n"
        assert "*.png binary" in read_file(root, ".gitattributes")
        local_head = await sync.repo.resolve("HEAD")
        assert await get_remote_head(sync.fs) == local_head
        assert sync.status.state == SyncState.clean

        uploads = fake_s3.count("put_object")
        status = await sync.push()
        assert status.step == UP_TO_DATE
        assert fake_s3.count("put_object") == uploads

    async def test_push_offloads_and_fresh_connect_restores(self, tmp_path, fake_s3):
        a = make_sync(tmp_path / "a", fake_s3)
        await a.connect()
        write_file(tmp_path / "a", "a.png", PNG_BYTES)
        write_file(tmp_path / "a", "note.md", "hello\n")

        await a.push()

        pointer = parse_pointer(read_file(tmp_path / "a", "a.png"))
        assert pointer is not None
        assert pointer.size == len(PNG_BYTES)
        assert len(pointer.oid) == 64
        assert fake_s3.buckets[BUCKET][f"vault/lfs/{pointer.oid}"] == PNG_BYTES
        assert await get_remote_head(a.fs) == await a.repo.resolve("HEAD")
        assert any((s.step or "").startswith("Uploading a.png") for s in a.statuses)
        commit = (await a.repo.log(1))[0]
        assert commit.message == "add 2 file(s)"

        b = make_sync(tmp_path / "b", fake_s3)
        await b.connect()
        assert read_file(tmp_path / "b", "a.png", binary=True) == PNG_BYTES
        assert read_file(tmp_path / "b", "note.md") == "hello\n"
        assert await b.repo.resolve("HEAD") == await a.repo.resolve("HEAD")

    async def test_divergent_push_surfaces_conflict(self, tmp_path, fake_s3):
        a, b = await connected_pair(tmp_path, fake_s3)
        await diverge(tmp_path, a, b)

        with pytest.raises(MergeConflictError) as exc_info:
            await b.push()
        pending = exc_info.value.pending
        assert pending.paths == ["note.md"]
        assert b.status.state == SyncState.changes
        assert not b.busy

        await b.resume_push(pending, {"note.md": Resolution.both})

        content = read_file(tmp_path / "b", "note.md")
        assert "from a" in content
        assert "from b" in content
        assert not any(line.startswith(MARKERS) for line in content.splitlines())
        head = await b.repo.resolve("HEAD")
        assert await get_remote_head(b.fs) == head
        assert (await b.repo.log(1))[0].message == "resolve merge conflicts"

    async def test_fast_forward_does_not_merge(self, tmp_path, fake_s3):
        a, b = await connected_pair(tmp_path, fake_s3)

        async def no_merge(*args):
            raise AssertionError("merge must not run on a fast-forward")

        b.repo.merge = no_merge
        write_file(tmp_path / "b", "other.md", "new\n")
        await b.push()
        assert await get_remote_head(b.fs) == await b.repo.resolve("HEAD")

    async def test_cancel_restores_pre_merge_state(self, tmp_path, fake_s3):
        a, b = await connected_pair(tmp_path, fake_s3)
        await diverge(tmp_path, a, b)

        with pytest.raises(MergeConflictError) as exc_info:
            await b.push()
        pending = exc_info.value.pending

        await b.cancel_merge(pending)

        assert await b.repo.resolve("HEAD") == pending.pre_merge_head
        assert read_file(tmp_path / "b", "note.md") == "from b\n"
        assert await b.repo.list_conflicts() == []
        assert (await b.repo.status()).is_clean
        # The remote still holds the other side
        assert await get_remote_head(b.fs) == await a.repo.resolve("HEAD")

    async def test_decide_callback_resolves_inline(self, tmp_path, fake_s3):
        async def decide(conflicts):
            return {c.path: Resolution.theirs for c in conflicts}

        a, b = await connected_pair(tmp_path, fake_s3, decide=decide)
        await diverge(tmp_path, a, b)

        await b.push()

        assert read_file(tmp_path / "b", "note.md") == "from a\n"
        assert await get_remote_head(b.fs) == await b.repo.resolve("HEAD")

    async def test_decide_returning_none_cancels(self, tmp_path, fake_s3):
        a, b = await connected_pair(tmp_path, fake_s3, decide=lambda conflicts: None)
        await diverge(tmp_path, a, b)

        await b.push()

        assert read_file(tmp_path / "b", "note.md") == "from b\n"
        assert await get_remote_head(b.fs) == await a.repo.resolve("HEAD")

    async def test_pull(self, tmp_path, fake_s3):
        a, b = await connected_pair(tmp_path, fake_s3)
        write_file(tmp_path / "a", "note.md", "from a\n")
        write_file(tmp_path / "a", "b.png", PNG_BYTES)
        await a.push()

        await b.pull()

        assert read_file(tmp_path / "b", "note.md") == "from a\n"
        assert read_file(tmp_path / "b", "b.png", binary=True) == PNG_BYTES
        status = await b.pull()
        assert status.step == UP_TO_DATE

    async def test_pull_conflict_aborts_merge(self, tmp_path, fake_s3):
        a, b = await connected_pair(tmp_path, fake_s3)
        await diverge(tmp_path, a, b)
        assert await b.commit("local edit")
        head = await b.repo.resolve("HEAD")

        with pytest.raises(ExternalToolError) as exc_info:
            await b.pull()

        assert "note.md" in str(exc_info.value)
        assert await b.repo.resolve("HEAD") == head
        assert await b.repo.list_conflicts() == []
        assert read_file(tmp_path / "b", "note.md") == "from b\n"
        assert b.status.state == SyncState.error

    async def test_restore_requires_confirmation(self, tmp_path, fake_s3):
        root = tmp_path / "vault"
        sync = make_sync(root, fake_s3)
        await sync.connect()
        write_file(root, "note.md", "committed\n")
        write_file(root, "a.png", PNG_BYTES)
        await sync.push()

        write_file(root, "note.md", "scratch\n")
        write_file(root, "junk/tmp.md", "junk\n")
        assert await sync.restore() is False
        assert read_file(root, "note.md") == "scratch\n"

        sync.confirm = lambda message: True
        assert await sync.restore() is True
        assert read_file(root, "note.md") == "committed\n"
        assert not (root / "junk").exists()
        assert read_file(root, "a.png", binary=True) == PNG_BYTES

    async def test_commit_offloads_and_logs(self, tmp_path, fake_s3):
        root = tmp_path / "vault"
        sync = make_sync(root, fake_s3)
        await sync.connect()
        assert await sync.commit() is None

        write_file(root, "a.png", PNG_BYTES)
        oid = await sync.commit("add image")
        assert oid == await sync.repo.resolve("HEAD")
        assert parse_pointer(read_file(root, "a.png")) is not None
        assert [c.message for c in await sync.log(2)] == ["add image", "initial commit"]

        write_file(root, "note.md", "draft\n")
        text, status = await sync.diff()
        assert status.untracked == ["note.md"]
        assert text == ""

    async def test_suspended_merge_blocks_other_operations(self, tmp_path, fake_s3):
        a, b = await connected_pair(tmp_path, fake_s3)
        await diverge(tmp_path, a, b)
        with pytest.raises(MergeConflictError) as exc_info:
            await b.push()
        pre_merge_head = exc_info.value.pending.pre_merge_head
        remote_head = await a.repo.resolve("HEAD")
        uploads = fake_s3.count("put_object")

        with pytest.raises(MergeConflictError) as exc_info:
            await b.push()
        pending = exc_info.value.pending
        assert pending.paths == ["note.md"]
        assert pending.pre_merge_head == pre_merge_head
        with pytest.raises(MergeConflictError):
            await b.pull()
        with pytest.raises(MergeConflictError):
            await b.commit("too early")

        # Nothing was staged, committed or mirrored
        assert fake_s3.count("put_object") == uploads
        assert await get_remote_head(b.fs) == remote_head
        assert await b.repo.resolve("HEAD") == pre_merge_head
        assert await b.repo.list_conflicts() == ["note.md"]

        await b.resume_push(pending, {"note.md": Resolution.ours})
        assert read_file(tmp_path / "b", "note.md") == "from b\n"
        assert await get_remote_head(b.fs) == await b.repo.resolve("HEAD")

    async def test_async_progress_is_delivered_in_order(self, tmp_path, fake_s3):
        steps = []

        async def on_status(status):
            await asyncio.sleep(0)
            steps.append(status.step)

        root = tmp_path / "vault"
        sync = VaultSync(
            make_config(root),
            on_status=on_status,
            s3_client_factory=create_s3_client_factory(fake_s3),
        )
        await sync.connect()
        write_file(root, "a.png", PNG_BYTES)

        await sync.push()

        assert sync._background == []
        upload_steps = [s for s in steps if s and s.startswith("Uploading a.png")]
        assert upload_steps == ["Uploading a.png (0%)", "Uploading a.png (100%)"]
        assert steps.index("Uploading a.png (100%)") < steps.index("Committing...")
