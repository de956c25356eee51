"""Test the filesystem view over S3."""

import pytest

from vaultsync.core import NotFoundError
from vaultsync.git.refs import get_remote_head, read_ref
from vaultsync.storage.fs import S3FS

from . import BUCKET

# All test coroutines will be treated as marked.
pytestmark = pytest.mark.asyncio

OID_A = "a" * 40
OID_B = "b" * 40


async def test_key_mapping(object_store):
    fs = S3FS(object_store, "/my-vault/")
    assert fs.prefix == "my-vault/"
    assert fs.key("/notes/a.md/") == "my-vault/notes/a.md"
    assert fs.dir_key("notes") == "my-vault/notes/"
    assert fs.dir_key("") == "my-vault/"

    bare = S3FS(object_store)
    assert bare.key("a.md") == "a.md"
    assert bare.dir_key("") == ""


class TestS3FS:
    async def test_write_read_unlink(self, fake_s3, s3fs):
        await s3fs.write_file("notes/a.md", b"hello")
        assert fake_s3.buckets[BUCKET]["vault/notes/a.md"] == b"hello"
        assert await s3fs.read_file("/notes/a.md") == b"hello"
        assert await s3fs.exists("notes/a.md")

        await s3fs.unlink("notes/a.md")
        assert not await s3fs.exists("notes/a.md")

    async def test_iter_file(self, s3fs):
        await s3fs.write_file("a.bin", b"x" * 10)
        data = b"".join([chunk async for chunk in s3fs.iter_file("a.bin")])
        assert data == b"x" * 10

    async def test_readdir(self, s3fs):
        await s3fs.write_file("root.md", b"1")
        await s3fs.write_file("notes/a.md", b"22")
        await s3fs.write_file("notes/deep/b.md", b"333")
        await s3fs.mkdir("empty")

        entries = {e.name: e for e in await s3fs.readdir("")}
        assert set(entries) == {"root.md", "notes", "empty"}
        assert entries["root.md"].size == 1
        assert not entries["root.md"].is_directory
        assert entries["notes"].is_directory

        children = {e.name: e for e in await s3fs.readdir("notes")}
        assert set(children) == {"a.md", "deep"}
        assert children["deep"].is_directory

        # The directory marker is not listed as a child of its own directory
        assert await s3fs.readdir("empty") == []

    async def test_stat(self, s3fs):
        await s3fs.write_file("notes/a.md", b"22")
        await s3fs.mkdir("empty")

        stat = await s3fs.stat("notes/a.md")
        assert stat.is_file()
        assert stat.size == 2

        assert (await s3fs.stat("notes")).is_directory
        assert (await s3fs.stat("empty")).is_directory

        with pytest.raises(NotFoundError):
            await s3fs.stat("missing")

    async def test_mkdir_writes_marker(self, fake_s3, s3fs):
        await s3fs.mkdir("attachments")
        assert fake_s3.buckets[BUCKET]["vault/attachments/"] == b""

    async def test_rename(self, fake_s3, s3fs):
        await s3fs.write_file("old.md", b"content")
        await s3fs.rename("old.md", "new.md")
        assert "vault/old.md" not in fake_s3.buckets[BUCKET]
        assert await s3fs.read_file("new.md") == b"content"

    async def test_rmdir(self, fake_s3, s3fs):
        await s3fs.write_file("dir/a.md", b"1")
        await s3fs.write_file("dir/sub/b.md", b"2")
        await s3fs.write_file("dir2/c.md", b"3")

        await s3fs.rmdir("dir")

        assert sorted(fake_s3.buckets[BUCKET]) == ["vault/dir2/c.md"]


class TestRemoteHead:
    async def test_missing_head(self, s3fs):
        assert await get_remote_head(s3fs) is None

    async def test_symbolic_head_with_loose_ref(self, s3fs):
        await s3fs.write_file(".git/HEAD", b"ref: refs/heads/main\n")
        await s3fs.write_file(".git/refs/heads/main", OID_A.encode() + b"\n")
        assert await get_remote_head(s3fs) == OID_A

    async def test_packed_refs(self, s3fs):
        await s3fs.write_file(".git/HEAD", b"ref: refs/heads/main\n")
        await s3fs.write_file(
            ".git/packed-refs",
            (
                "# pack-refs with: peeled fully-peeled sorted\n"
                f"{OID_B} refs/heads/feature\n"
                f"{OID_A} refs/heads/main\n"
                f"^{OID_B}\n"
            ).encode(),
        )
        assert await read_ref(s3fs, ".git", "refs/heads/main") == OID_A
        assert await get_remote_head(s3fs) == OID_A

    async def test_loose_ref_wins_over_packed_refs(self, s3fs):
        await s3fs.write_file(".git/HEAD", b"ref: refs/heads/main\n")
        await s3fs.write_file(".git/refs/heads/main", OID_B.encode() + b"\n")
        await s3fs.write_file(".git/packed-refs", f"{OID_A} refs/heads/main\n".encode())
        assert await get_remote_head(s3fs) == OID_B

    async def test_unborn_branch(self, s3fs):
        await s3fs.write_file(".git/HEAD", b"ref: refs/heads/main\n")
        assert await get_remote_head(s3fs) is None

    async def test_detached_head(self, s3fs):
        await s3fs.write_file(".git/HEAD", OID_B.encode() + b"\n")
        assert await get_remote_head(s3fs) == OID_B
