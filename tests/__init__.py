"""Test the vaultsync module."""

import os
import shutil

import pytest

BUCKET = "vault-bucket"
REGION = "us-east-1"
ACCESS_KEY_ID = "test-access-key"
SECRET_ACCESS_KEY = "test-secret-key"

# A small PNG header followed by arbitrary bytes
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + bytes(range(256)) * 4

requires_git = pytest.mark.skipif(
    shutil.which("git") is None, reason="git is not installed"
)


def write_file(root, path, content):
    """Write a file below `root`, creating parent directories."""
    full_path = os.path.join(str(root), path)
    os.makedirs(os.path.dirname(full_path), exist_ok=True)
    mode = "wb" if isinstance(content, bytes) else "w"
    with open(full_path, mode) as f:
        f.write(content)
    return full_path


def read_file(root, path, binary=False):
    with open(os.path.join(str(root), path), "rb" if binary else "r") as f:
        return f.read()


def make_config(vault_dir, **kwargs):
    """Return a complete SyncConfig for the vault at `vault_dir`."""
    from vaultsync.config import SyncConfig

    values = {
        "access_key_id": ACCESS_KEY_ID,
        "secret_access_key": SECRET_ACCESS_KEY,
        "region_name": REGION,
        "bucket": BUCKET,
        "prefix": "vault",
        "vault_dir": str(vault_dir),
    }
    values.update(kwargs)
    return SyncConfig(**values)
