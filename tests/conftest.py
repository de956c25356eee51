"""Provide common pytest fixtures."""

import pytest
import pytest_asyncio

from vaultsync.storage.fs import S3FS
from vaultsync.storage.s3 import S3ObjectStore

from . import BUCKET
from .fake_s3 import FakeS3Client, create_s3_client_factory


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def s3_client_factory(fake_s3):
    return create_s3_client_factory(fake_s3)


@pytest_asyncio.fixture
async def object_store(s3_client_factory):
    return S3ObjectStore(s3_client_factory, BUCKET)


@pytest_asyncio.fixture
async def s3fs(object_store):
    return S3FS(object_store, "vault")


@pytest.fixture(autouse=True)
def isolated_git_config(tmp_path_factory, monkeypatch):
    """Keep the user's git configuration out of the tests."""
    home = tmp_path_factory.mktemp("home")
    global_config = home / ".gitconfig"
    global_config.write_text("")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(global_config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")

