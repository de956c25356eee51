"""Git history and large file handling for vaultsync.

Key components:
- GitRepo: local repository driven through the `git` command line
- HistoryMirror: copies the `.git` directory to and from S3
- LFSStore: offloads large files to S3 behind pointer files
- get_remote_head: resolves the tip of the mirrored history
"""

from vaultsync.git.lfs import LFSPointer, LFSStore
from vaultsync.git.mirror import HistoryMirror
from vaultsync.git.refs import get_remote_head
from vaultsync.git.repo import GitRepo, HistoryGraph

__all__ = [
    "GitRepo",
    "HistoryGraph",
    "HistoryMirror",
    "LFSPointer",
    "LFSStore",
    "get_remote_head",
]
