"""Local Git repository access through the `git` command line.

The history graph itself (object database, refs, merges, checkout) is
delegated to an installed `git` binary. `HistoryGraph` describes the
capabilities the sync engine relies on; `GitRepo` implements them with
asyncio subprocesses, never through a shell.
"""

import asyncio
import logging
import os
import re
from typing import Dict, List, Optional, Protocol, Tuple

from vaultsync.core import Commit, ExternalToolError, Identity, WorkingTreeStatus

logger = logging.getLogger(__name__)

GIT_BINARY = os.environ.get("VAULTSYNC_GIT", "git")

# Fields of `git log`, separated by NUL, records terminated by RS
LOG_FORMAT = "%x00".join(
    ["%H", "%T", "%P", "%an", "%ae", "%at", "%ai", "%cn", "%ce", "%ct", "%ci", "%B"]
) + "%x1e"

_TZ_PATTERN = re.compile(r"([+-])(\d{2})(\d{2})$")


def parse_timezone_offset(date: str) -> int:
    """Parse the offset of an ISO-like git date into minutes west of UTC.

    "2024-01-15 10:30:00 -0700" gives 420, "+0100" gives -60.
    """
    match = _TZ_PATTERN.search(date.strip())
    if not match:
        return 0
    minutes = int(match.group(2)) * 60 + int(match.group(3))
    return minutes if match.group(1) == "-" else -minutes


def parse_status(output: str) -> WorkingTreeStatus:
    """Parse `git status --porcelain -z` output into disjoint path sets."""
    status = WorkingTreeStatus()
    entries = output.split("\0")
    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if len(entry) < 4:
            continue
        index, worktree, path = entry[0], entry[1], entry[3:]
        if index in "RC":
            # Renames and copies carry the source path as the next entry
            i += 1

        if index == "?" and worktree == "?":
            status.untracked.append(path)
        elif index == "!":
            continue
        elif "U" in (index, worktree) or (index == worktree and index in "AD"):
            # Unmerged
            status.modified.append(path)
        elif index == "D" or worktree == "D":
            status.deleted.append(path)
        elif worktree in "MT":
            status.modified.append(path)
        elif index in "AMRCT":
            status.staged.append(path)
    return status


def parse_log(output: str) -> List[Commit]:
    commits = []
    for record in output.split("\x1e"):
        record = record.lstrip("\n")
        if not record:
            continue
        fields = record.split("\0")
        if len(fields) < 12:
            continue
        (
            oid,
            tree,
            parents,
            author_name,
            author_email,
            author_ts,
            author_date,
            committer_name,
            committer_email,
            committer_ts,
            committer_date,
            message,
        ) = fields[:12]
        commits.append(
            Commit(
                oid=oid,
                tree=tree,
                parents=parents.split(),
                message=message.strip(),
                author=Identity(
                    name=author_name,
                    email=author_email,
                    timestamp=int(author_ts or 0),
                    timezone_offset=parse_timezone_offset(author_date),
                ),
                committer=Identity(
                    name=committer_name,
                    email=committer_email,
                    timestamp=int(committer_ts or 0),
                    timezone_offset=parse_timezone_offset(committer_date),
                ),
            )
        )
    return commits


class HistoryGraph(Protocol):
    """Capabilities of the history-graph engine used by the sync engine."""

    def exists(self) -> bool:
        """Return True if local history is present."""
        ...

    async def init(self, branch: str = "main") -> None:
        ...

    async def add(self, path: str) -> None:
        ...

    async def add_all(self) -> None:
        ...

    async def remove(self, path: str) -> None:
        ...

    async def commit(self, message: str) -> str:
        """Commit the index and return the new commit id."""
        ...

    async def status(self) -> WorkingTreeStatus:
        ...

    async def has_staged_changes(self) -> bool:
        ...

    async def diff(self, path: Optional[str] = None) -> str:
        ...

    async def diff_staged(self, path: Optional[str] = None) -> str:
        ...

    async def log(self, count: int = 10) -> List[Commit]:
        """Return up to `count` commits, newest first."""
        ...

    async def fetch(self, remote: str, branch: Optional[str] = None) -> None:
        ...

    async def push(self, remote: str, branch: str) -> None:
        ...

    async def pull(self, remote: str, branch: str) -> None:
        ...

    async def add_remote(self, name: str, url: str) -> None:
        ...

    async def remove_remote(self, name: str) -> None:
        ...

    async def list_remotes(self) -> List[Dict[str, str]]:
        ...

    async def get_config(self, key: str) -> Optional[str]:
        ...

    async def set_config(self, key: str, value: str) -> None:
        ...

    async def current_branch(self) -> str:
        ...

    async def checkout(self, ref: str) -> None:
        ...

    async def create_branch(self, name: str) -> None:
        ...

    async def reset(self, path: str) -> None:
        """Discard the unstaged change to one path."""
        ...

    async def reset_hard(self, ref: str = "HEAD") -> None:
        ...

    async def clean(self) -> None:
        """Remove untracked files and directories."""
        ...

    async def rev_parse(self, ref: str = "HEAD") -> str:
        ...

    async def resolve(self, ref: str = "HEAD") -> Optional[str]:
        """Like `rev_parse` but returns None for unknown or unborn refs."""
        ...

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        ...

    async def restore(self, pathspec: str = ".") -> None:
        ...

    async def merge(self, ref: str, message: str) -> bool:
        """Merge `ref`; return False if the merge stopped on conflicts."""
        ...

    async def merge_abort(self) -> None:
        ...

    async def checkout_ours(self, path: str) -> None:
        ...

    async def checkout_theirs(self, path: str) -> None:
        ...

    async def list_conflicts(self) -> List[str]:
        ...


class GitRepo:
    """A working copy driven through the `git` binary.

    Usage:
        repo = GitRepo("/path/to/vault")
        if not repo.exists():
            await repo.init("main")
        await repo.add_all()
        oid = await repo.commit("update notes")
    """

    def __init__(self, cwd: str, binary: str = GIT_BINARY):
        self.cwd = cwd
        self.binary = binary
        self._env = {
            **os.environ,
            "GIT_TERMINAL_PROMPT": "0",
            "GIT_EDITOR": "true",
            # Stable, parseable error messages
            "LC_ALL": "C",
        }

    @property
    def git_dir(self) -> str:
        return os.path.join(self.cwd, ".git")

    def exists(self) -> bool:
        return os.path.isdir(self.git_dir)

    async def _run(self, *args: str, check: bool = True) -> Tuple[int, str, str]:
        """Run a git command and return (returncode, stdout, stderr)."""
        command = [self.binary, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=self._env,
            )
        except OSError as e:
            raise ExternalToolError(command, None, str(e)) from e

        stdout, stderr = await process.communicate()
        stdout_text = stdout.decode("utf-8", errors="replace") if stdout else ""
        stderr_text = stderr.decode("utf-8", errors="replace") if stderr else ""
        logger.debug("git %s -> %s", " ".join(args), process.returncode)

        if check and process.returncode != 0:
            raise ExternalToolError(
                command, process.returncode, stderr_text or stdout_text
            )
        return process.returncode, stdout_text, stderr_text

    async def git(self, *args: str) -> str:
        """Run a git command and return its stdout without trailing whitespace."""
        _, stdout, _ = await self._run(*args)
        return stdout.rstrip()

    async def init(self, branch: str = "main") -> None:
        os.makedirs(self.cwd, exist_ok=True)
        await self.git("init", "--quiet", f"--initial-branch={branch}")

    async def add(self, path: str) -> None:
        await self.git("add", "--", path)

    async def add_all(self) -> None:
        await self.git("add", "-A")

    async def remove(self, path: str) -> None:
        await self.git("rm", "--quiet", "--", path)

    async def commit(self, message: str) -> str:
        await self.git("commit", "--quiet", "-m", message)
        return await self.rev_parse("HEAD")

    async def status(self) -> WorkingTreeStatus:
        _, stdout, _ = await self._run("status", "--porcelain", "-z", "-uall")
        return parse_status(stdout)

    async def has_staged_changes(self) -> bool:
        returncode, _, stderr = await self._run(
            "diff", "--cached", "--quiet", check=False
        )
        if returncode > 1:
            raise ExternalToolError(
                [self.binary, "diff", "--cached"], returncode, stderr
            )
        return returncode == 1

    async def diff(self, path: Optional[str] = None) -> str:
        args = ["diff"]
        if path:
            args += ["--", path]
        return await self.git(*args)

    async def diff_staged(self, path: Optional[str] = None) -> str:
        args = ["diff", "--staged"]
        if path:
            args += ["--", path]
        return await self.git(*args)

    async def log(self, count: int = 10) -> List[Commit]:
        if await self.resolve("HEAD") is None:
            return []
        _, stdout, _ = await self._run("log", f"-{count}", f"--format={LOG_FORMAT}")
        return parse_log(stdout)

    async def fetch(self, remote: str, branch: Optional[str] = None) -> None:
        args = ["fetch", "--quiet", remote]
        if branch:
            args.append(branch)
        await self.git(*args)

    async def push(self, remote: str, branch: str) -> None:
        await self.git("push", remote, branch)

    async def pull(self, remote: str, branch: str) -> None:
        await self.git("pull", "--no-edit", remote, branch)

    async def add_remote(self, name: str, url: str) -> None:
        await self.git("remote", "add", name, url)

    async def remove_remote(self, name: str) -> None:
        await self.git("remote", "remove", name)

    async def list_remotes(self) -> List[Dict[str, str]]:
        remotes = []
        seen = set()
        for line in (await self.git("remote", "-v")).splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] not in seen:
                seen.add(parts[0])
                remotes.append({"name": parts[0], "url": parts[1]})
        return remotes

    async def get_config(self, key: str) -> Optional[str]:
        returncode, stdout, _ = await self._run("config", "--get", key, check=False)
        if returncode != 0:
            return None
        return stdout.rstrip("\n")

    async def set_config(self, key: str, value: str) -> None:
        await self.git("config", key, value)

    async def current_branch(self) -> str:
        # Works on an unborn branch, unlike `rev-parse --abbrev-ref`
        return await self.git("symbolic-ref", "--short", "HEAD")

    async def checkout(self, ref: str) -> None:
        await self.git("checkout", "--quiet", ref)

    async def create_branch(self, name: str) -> None:
        await self.git("checkout", "--quiet", "-b", name)

    async def reset(self, path: str) -> None:
        await self.git("checkout", "--", path)

    async def reset_hard(self, ref: str = "HEAD") -> None:
        await self.git("reset", "--quiet", "--hard", ref)

    async def clean(self) -> None:
        await self.git("clean", "-fdq")

    async def rev_parse(self, ref: str = "HEAD") -> str:
        return await self.git("rev-parse", ref)

    async def resolve(self, ref: str = "HEAD") -> Optional[str]:
        returncode, stdout, _ = await self._run(
            "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False
        )
        if returncode != 0:
            return None
        return stdout.strip() or None

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """Check whether `ancestor` is reachable from `descendant`.

        A commit that is not in the local object database is not an ancestor.
        """
        if await self.resolve(ancestor) is None:
            return False
        returncode, _, stderr = await self._run(
            "merge-base", "--is-ancestor", ancestor, descendant, check=False
        )
        if returncode == 0:
            return True
        if returncode == 1:
            return False
        raise ExternalToolError(
            [self.binary, "merge-base", "--is-ancestor"], returncode, stderr
        )

    async def restore(self, pathspec: str = ".") -> None:
        await self.git("restore", "--", pathspec)

    async def merge(self, ref: str, message: str) -> bool:
        returncode, stdout, stderr = await self._run(
            "merge",
            "--no-edit",
            "--allow-unrelated-histories",
            "-m",
            message,
            ref,
            check=False,
        )
        if returncode == 0:
            return True
        if await self.list_conflicts():
            return False
        raise ExternalToolError(
            [self.binary, "merge", ref], returncode, stderr or stdout
        )

    async def merge_abort(self) -> None:
        await self.git("merge", "--abort")

    async def checkout_ours(self, path: str) -> None:
        await self.git("checkout", "--ours", "--", path)

    async def checkout_theirs(self, path: str) -> None:
        await self.git("checkout", "--theirs", "--", path)

    async def list_conflicts(self) -> List[str]:
        _, stdout, _ = await self._run("diff", "--name-only", "--diff-filter=U", "-z")
        return sorted({p for p in stdout.split("\0") if p})
