"""Object storage for vaultsync."""

from vaultsync.storage.fs import S3FS
from vaultsync.storage.s3 import S3ObjectStore

__all__ = ["S3ObjectStore", "S3FS"]
