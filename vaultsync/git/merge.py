"""Merge conflict resolution for the working tree.

After a merge stops on conflicts, every unmerged path is read with its
conflict markers and handed to the user. Each path is then settled by
keeping the local side, the remote side, or both bodies with the markers
removed.
"""

import logging
import os
import re
from typing import List, Mapping, Optional, Tuple

import aiofiles

from vaultsync.core import (
    Conflict,
    ExternalToolError,
    Resolution,
    VaultSyncError,
)
from vaultsync.git.repo import HistoryGraph
from vaultsync.utils import safe_join

logger = logging.getLogger(__name__)

_START = re.compile(r"<{7}(?: .*)?")
_BASE = re.compile(r"\|{7}(?: .*)?")
_SEPARATOR = "=" * 7
_END = re.compile(r">{7}(?: .*)?")


def _text(line: str) -> str:
    return line.rstrip("\r\n")


def _match_region(lines: List[str], start: int) -> Optional[Tuple[List[str], List[str], int]]:
    """Match a conflict region opened at `lines[start]`.

    Returns (ours, theirs, end_index), or None if the region is not a
    complete start/separator/end triple.
    """
    base = None
    separator = None
    for i in range(start + 1, len(lines)):
        text = _text(lines[i])
        if _START.fullmatch(text):
            return None
        if separator is None:
            if base is None and _BASE.fullmatch(text):
                base = i
            elif text == _SEPARATOR:
                separator = i
        elif _END.fullmatch(text):
            ours_end = base if base is not None else separator
            return lines[start + 1 : ours_end], lines[separator + 1 : i], i
    return None


def strip_conflict_markers(content: str) -> str:
    """Keep both sides of every conflict region, dropping the marker lines.

    Only complete regions (start, separator and end markers in order) are
    rewritten. Marker-like lines outside such a region are kept as they
    are. The common-ancestor section of diff3-style conflicts is dropped.
    """
    lines = content.splitlines(keepends=True)
    result = []
    i = 0
    while i < len(lines):
        if _START.fullmatch(_text(lines[i])):
            region = _match_region(lines, i)
            if region is not None:
                ours, theirs, end = region
                result.extend(ours)
                result.extend(theirs)
                i = end + 1
                continue
        result.append(lines[i])
        i += 1
    return "".join(result)


async def read_conflicts(repo: HistoryGraph, root: str) -> List[Conflict]:
    """List unmerged paths with their current (marker-annotated) content."""
    conflicts = []
    for path in await repo.list_conflicts():
        full_path = safe_join(root, path)
        content = ""
        if os.path.isfile(full_path):
            async with aiofiles.open(
                full_path, "r", encoding="utf-8", errors="replace", newline=""
            ) as f:
                content = await f.read()
        conflicts.append(Conflict(path=path, content=content))
    return conflicts


async def _checkout_side(repo: HistoryGraph, path: str, resolution: Resolution):
    try:
        if resolution == Resolution.ours:
            await repo.checkout_ours(path)
        else:
            await repo.checkout_theirs(path)
    except ExternalToolError as e:
        # The chosen side deleted the file
        if "does not have" not in e.stderr:
            raise
        await repo.remove(path)
        return False
    return True


async def apply_resolutions(
    repo: HistoryGraph,
    root: str,
    conflicts: List[Conflict],
    resolutions: Mapping[str, Resolution],
) -> None:
    """Apply one resolution per conflicting path and stage the result."""
    missing = [c.path for c in conflicts if c.path not in resolutions]
    if missing:
        raise VaultSyncError(f"No resolution for: {', '.join(missing)}")

    for conflict in conflicts:
        resolution = Resolution(resolutions[conflict.path])
        full_path = safe_join(root, conflict.path)
        if resolution == Resolution.both:
            if os.path.isfile(full_path):
                async with aiofiles.open(
                    full_path, "r", encoding="utf-8", errors="replace", newline=""
                ) as f:
                    content = await f.read()
                async with aiofiles.open(full_path, "w", encoding="utf-8", newline="") as f:
                    await f.write(strip_conflict_markers(content))
                await repo.add(conflict.path)
            else:
                await repo.remove(conflict.path)
        elif await _checkout_side(repo, conflict.path, resolution):
            await repo.add(conflict.path)
        logger.info("Resolved %s with %s", conflict.path, resolution.value)
