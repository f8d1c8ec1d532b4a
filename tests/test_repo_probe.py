"""Tests for the read-only repository probe."""

from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess

import pytest

from gitty.repo_probe import (
    AheadBehind,
    RepoSnapshot,
    RepositoryProbe,
    parse_ahead_behind,
    parse_porcelain_status,
)

INSIDE = ("rev-parse", "--is-inside-work-tree")
BRANCH = ("rev-parse", "--abbrev-ref", "HEAD")
STATUS = ("status", "--porcelain")
UPSTREAM = ("rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}")


def counts_for(upstream):
    return ("rev-list", "--left-right", "--count", f"{upstream}...HEAD")


def make_runner(responses):
    calls = []

    async def runner(args, cwd, timeout_s):
        calls.append((tuple(args), cwd, timeout_s))
        value = responses.get(tuple(args))
        if isinstance(value, Exception):
            raise value
        return value

    runner.calls = calls
    return runner


@pytest.fixture()
def logger():
    return logging.getLogger("test_probe")


@pytest.fixture()
def cfg():
    return {"probe": {"timeout_s": 2.5, "max_dirty_files": 20}}


def snapshot(cfg, logger, responses, cwd="/repo"):
    runner = make_runner(responses)
    probe = RepositoryProbe(cfg, logger, runner=runner)
    return asyncio.run(probe.snapshot(cwd)), runner


class TestParsePorcelain:
    def test_classifies_entries(self):
        text = " M a.txt\nM  b.txt\nMM c.txt\n?? d.txt\nR  old.txt -> new.txt\n"
        entries = parse_porcelain_status(text)
        assert entries.staged == ["b.txt", "c.txt", "old.txt"]
        assert entries.unstaged == ["a.txt", "c.txt"]
        assert entries.untracked == ["d.txt"]
        assert entries.files == ["a.txt", "b.txt", "c.txt", "d.txt", "old.txt"]

    def test_skips_short_and_blank_lines(self):
        entries = parse_porcelain_status("\n M\n   \n M ok.py\n")
        assert entries.files == ["ok.py"]

    def test_path_with_spaces(self):
        entries = parse_porcelain_status(" M docs/my notes.md\n")
        assert entries.unstaged == ["docs/my notes.md"]

    def test_empty(self):
        entries = parse_porcelain_status("")
        assert entries.files == []


class TestParseAheadBehind:
    def test_left_is_behind_right_is_ahead(self):
        assert parse_ahead_behind("3\t5") == AheadBehind(ahead=5, behind=3)

    def test_trailing_newline(self):
        assert parse_ahead_behind("0\t2\n") == AheadBehind(ahead=2, behind=0)

    @pytest.mark.parametrize("text", ["", "3", "3 5 7", "a\tb", "-1\t2", "\u00b2\t1", "\uff13\t5"])
    def test_malformed(self, text):
        assert parse_ahead_behind(text) is None


class TestSnapshot:
    def test_full_snapshot(self, cfg, logger):
        snap, runner = snapshot(cfg, logger, {
            INSIDE: "true\n",
            BRANCH: "main\n",
            STATUS: " M a.txt\n?? b.txt\n",
            UPSTREAM: "origin/main\n",
            counts_for("origin/main"): "3\t5\n",
        })
        assert snap.in_repo is True
        assert snap.branch == "main"
        assert snap.upstream == "origin/main"
        assert snap.ahead_behind == AheadBehind(ahead=5, behind=3)
        assert snap.dirty is True
        assert snap.dirty_files == ("a.txt", "b.txt")
        assert snap.unstaged_files == ("a.txt",)
        assert snap.untracked_files == ("b.txt",)
        assert all(call[1] == "/repo" and call[2] == 2.5 for call in runner.calls)

    def test_not_in_repo_is_empty_shape(self, cfg, logger):
        snap, runner = snapshot(cfg, logger, {
            INSIDE: None,
            BRANCH: "main\n",
            STATUS: " M a.txt\n",
        })
        assert snap == RepoSnapshot.empty(snap.timestamp)
        assert snap.to_dict() == {
            "inRepo": False,
            "branch": None,
            "upstream": None,
            "aheadBehind": None,
            "dirty": False,
            "dirtyFiles": [],
            "stagedFiles": [],
            "unstagedFiles": [],
            "untrackedFiles": [],
            "timestamp": snap.timestamp,
        }
        assert [c[0] for c in runner.calls] == [INSIDE]

    def test_runner_exception_is_recovered(self, cfg, logger):
        snap, _ = snapshot(cfg, logger, {INSIDE: RuntimeError("git exploded")})
        assert snap.in_repo is False

    def test_dirty_files_capped_at_20(self, cfg, logger):
        status = "".join(f"?? f{i:02d}.txt\n" for i in range(25))
        snap, _ = snapshot(cfg, logger, {INSIDE: "true", BRANCH: "main", STATUS: status})
        assert len(snap.dirty_files) == 20
        assert snap.dirty is True
        assert snap.dirty_files[0] == "f00.txt"
        assert len(snap.untracked_files) == 25

    def test_clean_tree(self, cfg, logger):
        snap, _ = snapshot(cfg, logger, {INSIDE: "true", BRANCH: "main", STATUS: ""})
        assert snap.dirty is False
        assert snap.dirty_files == ()

    def test_detached_head(self, cfg, logger):
        snap, _ = snapshot(cfg, logger, {INSIDE: "true", BRANCH: "HEAD", STATUS: ""})
        assert snap.in_repo is True
        assert snap.branch is None

    def test_no_upstream_means_no_ahead_behind(self, cfg, logger):
        snap, runner = snapshot(cfg, logger, {INSIDE: "true", BRANCH: "main", STATUS: "", UPSTREAM: None})
        assert snap.upstream is None
        assert snap.ahead_behind is None
        assert not any(c[0][0] == "rev-list" for c in runner.calls)

    def test_failed_count_query(self, cfg, logger):
        snap, _ = snapshot(cfg, logger, {
            INSIDE: "true", BRANCH: "main", STATUS: "", UPSTREAM: "origin/main",
            counts_for("origin/main"): None,
        })
        assert snap.upstream == "origin/main"
        assert snap.ahead_behind is None

    def test_status_failure_defaults_to_clean(self, cfg, logger):
        snap, _ = snapshot(cfg, logger, {INSIDE: "true", BRANCH: "main", STATUS: TimeoutError()})
        assert snap.in_repo is True
        assert snap.dirty is False


@pytest.mark.skipif(shutil.which("git") is None, reason="git not on PATH")
class TestRealRepository:
    def git(self, cwd, *args):
        subprocess.run(
            ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
            cwd=cwd, check=True, capture_output=True,
        )

    def test_real_repo(self, tmp_path, cfg, logger, monkeypatch):
        monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
        repo = tmp_path / "repo"
        repo.mkdir()
        self.git(repo, "init", "-q")
        self.git(repo, "symbolic-ref", "HEAD", "refs/heads/trunk")
        (repo / "a.txt").write_text("one\n")
        self.git(repo, "add", "a.txt")
        self.git(repo, "commit", "-q", "-m", "init")
        (repo / "a.txt").write_text("two\n")
        (repo / "new.txt").write_text("x\n")

        snap = asyncio.run(RepositoryProbe(cfg, logger).snapshot(str(repo)))
        assert snap.in_repo is True
        assert snap.branch == "trunk"
        assert snap.upstream is None
        assert snap.unstaged_files == ("a.txt",)
        assert snap.untracked_files == ("new.txt",)
        assert snap.dirty is True

    def test_plain_directory(self, tmp_path, cfg, logger, monkeypatch):
        monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
        plain = tmp_path / "plain"
        plain.mkdir()
        snap = asyncio.run(RepositoryProbe(cfg, logger).snapshot(str(plain)))
        assert snap.in_repo is False
