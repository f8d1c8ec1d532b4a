# ~/Projects/Gitty/gitty/repo_probe.py
# Read-only git state probe that feeds repository context to inference.

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

DIRTY_FILES_MAX = 20
COUNT_RE = re.compile(r"\d+", re.ASCII)

GIT_ENV = {
    "GIT_PAGER": "cat",
    "LC_ALL": "C",
    "GIT_OPTIONAL_LOCKS": "0",
    "GIT_TERMINAL_PROMPT": "0",
}

# (args, cwd, timeout_s) -> stdout, or None when the query failed
GitRunner = Callable[[List[str], Optional[str], float], Awaitable[Optional[str]]]


@dataclass(frozen=True)
class AheadBehind:
    ahead: int
    behind: int


@dataclass(frozen=True)
class RepoSnapshot:
    """Repository state captured at one instant. Never mutated, never cached."""

    in_repo: bool
    timestamp: str
    branch: Optional[str] = None
    upstream: Optional[str] = None
    ahead_behind: Optional[AheadBehind] = None
    dirty: bool = False
    dirty_files: Tuple[str, ...] = ()
    staged_files: Tuple[str, ...] = ()
    unstaged_files: Tuple[str, ...] = ()
    untracked_files: Tuple[str, ...] = ()

    @classmethod
    def empty(cls, timestamp: Optional[str] = None) -> "RepoSnapshot":
        return cls(in_repo=False, timestamp=timestamp or now_iso())

    def to_dict(self) -> Dict[str, Any]:
        """camelCase wire form, as handed to UI layers."""
        return {
            "inRepo": self.in_repo,
            "branch": self.branch,
            "upstream": self.upstream,
            "aheadBehind": (
                {"ahead": self.ahead_behind.ahead, "behind": self.ahead_behind.behind}
                if self.ahead_behind else None
            ),
            "dirty": self.dirty,
            "dirtyFiles": list(self.dirty_files),
            "stagedFiles": list(self.staged_files),
            "unstagedFiles": list(self.unstaged_files),
            "untrackedFiles": list(self.untracked_files),
            "timestamp": self.timestamp,
        }


@dataclass
class StatusEntries:
    """Porcelain status split by class; `files` is the merged, uncapped list."""

    files: List[str] = field(default_factory=list)
    staged: List[str] = field(default_factory=list)
    unstaged: List[str] = field(default_factory=list)
    untracked: List[str] = field(default_factory=list)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def parse_porcelain_status(text: str) -> StatusEntries:
    """Parse `git status --porcelain` (v1) output.

    Each line is ``XY path``: X is the index column, Y the work-tree column.
    ``??`` marks an untracked file. A file modified in both columns lands in
    both the staged and unstaged lists.
    """
    entries = StatusEntries()
    seen = set()
    for line in text.splitlines():
        if len(line) < 4 or not line.strip():
            continue
        x, y = line[0], line[1]
        path = line[3:]
        # Renames and copies collapse to the source path
        if " -> " in path:
            path = path.split(" -> ", 1)[0]
        path = path.strip()
        if not path:
            continue

        if x == "?" and y == "?":
            entries.untracked.append(path)
        else:
            if x not in " ?!":
                entries.staged.append(path)
            if y not in " ?!":
                entries.unstaged.append(path)

        if path not in seen:
            seen.add(path)
            entries.files.append(path)
    return entries


def parse_ahead_behind(text: str) -> Optional[AheadBehind]:
    """Parse `rev-list --left-right --count upstream...HEAD`.

    Left is commits only on upstream (behind), right is commits only on HEAD
    (ahead).
    """
    parts = (text or "").split()
    if len(parts) != 2 or not all(COUNT_RE.fullmatch(p) for p in parts):
        return None
    behind, ahead = int(parts[0]), int(parts[1])
    return AheadBehind(ahead=ahead, behind=behind)


async def run_git_query(args: List[str], cwd: Optional[str], timeout_s: float) -> Optional[str]:
    """Run one read-only git query; any failure comes back as None."""
    env = dict(os.environ)
    env.update(GIT_ENV)
    try:
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError:
        return None

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return None

    if proc.returncode != 0:
        return None
    return stdout.decode("utf-8", errors="replace")


class RepositoryProbe:
    """Five isolated git sub-probes; snapshot() never raises."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger,
                 runner: Optional[GitRunner] = None):
        self.cfg = cfg.get("probe", {})
        self.logger = logger
        self.timeout_s = float(self.cfg.get("timeout_s", 2.0))
        self.max_files = int(self.cfg.get("max_dirty_files", DIRTY_FILES_MAX))
        self._runner = runner or run_git_query

    async def _git(self, args: List[str], cwd: Optional[str], strip: bool = True) -> Optional[str]:
        try:
            out = await self._runner(args, cwd, self.timeout_s)
        except Exception as e:
            self.logger.debug("probe_query_failed %s", json.dumps({"args": args, "error": str(e)}))
            return None
        if out is None:
            self.logger.debug("probe_query_empty %s", json.dumps({"args": args}))
            return None
        return out.strip() if strip else out

    async def snapshot(self, cwd: Optional[str] = None) -> RepoSnapshot:
        timestamp = now_iso()

        inside = await self._git(["rev-parse", "--is-inside-work-tree"], cwd)
        if inside != "true":
            self.logger.info("probe_done %s", json.dumps({"in_repo": False, "cwd": cwd}))
            return RepoSnapshot.empty(timestamp)

        abbrev = await self._git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
        branch = None if not abbrev or abbrev == "HEAD" else abbrev

        # Not stripped as a whole: the leading space of " M file" is significant
        status_raw = await self._git(["status", "--porcelain"], cwd, strip=False)
        entries = parse_porcelain_status(status_raw or "")

        upstream = await self._git(
            ["rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}"], cwd
        ) or None

        ahead_behind = None
        if upstream:
            counts = await self._git(
                ["rev-list", "--left-right", "--count", f"{upstream}...HEAD"], cwd
            )
            ahead_behind = parse_ahead_behind(counts or "")

        snap = RepoSnapshot(
            in_repo=True,
            timestamp=timestamp,
            branch=branch,
            upstream=upstream,
            ahead_behind=ahead_behind,
            dirty=len(entries.files) > 0,
            dirty_files=tuple(entries.files[:self.max_files]),
            staged_files=tuple(entries.staged),
            unstaged_files=tuple(entries.unstaged),
            untracked_files=tuple(entries.untracked),
        )

        self.logger.info("probe_done %s", json.dumps({
            "in_repo": True,
            "branch": branch,
            "upstream": upstream,
            "ahead_behind": snap.to_dict()["aheadBehind"],
            "dirty_files": len(entries.files),
        }))
        return snap

