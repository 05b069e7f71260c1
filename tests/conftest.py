"""Shared fixtures: throwaway git repositories with a predictable identity."""

from __future__ import annotations

import shlex
import stat
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest
from git import Repo

from splitrepo.history import FILTER_SCRIPT
from splitrepo.plan import Plan


@pytest.fixture(autouse=True)
def git_identity(monkeypatch, tmp_path_factory):
    gitconfig = tmp_path_factory.mktemp("home") / ".gitconfig"
    gitconfig.write_text("", encoding="utf-8")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(gitconfig))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for key, value in {
        "GIT_AUTHOR_NAME": "Split Tester",
        "GIT_AUTHOR_EMAIL": "tester@example.com",
        "GIT_COMMITTER_NAME": "Split Tester",
        "GIT_COMMITTER_EMAIL": "tester@example.com",
    }.items():
        monkeypatch.setenv(key, value)


def write_files(root: Path, files: Dict[str, str]) -> None:
    for rel, content in files.items():
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


def make_repo(
    root: Path,
    commits: Sequence[Dict[str, str]],
    branch: Optional[str] = None,
) -> Repo:
    """Create a repository at ``root`` with one commit per mapping in ``commits``."""
    root.mkdir(parents=True, exist_ok=True)
    repo = Repo.init(root)
    if branch:
        repo.git.symbolic_ref("HEAD", f"refs/heads/{branch}")
    for number, files in enumerate(commits, start=1):
        write_files(root, files)
        repo.git.add("-A")
        repo.git.commit("-m", f"commit {number}")
    return repo


def tracked_paths(repo: Repo, rev: str = "HEAD") -> List[str]:
    return repo.git.ls_tree("-r", "--name-only", rev).splitlines()


def history_paths(repo: Repo, rev: str = "HEAD") -> List[List[str]]:
    return [tracked_paths(repo, commit.hexsha) for commit in repo.iter_commits(rev)]


def staged_paths(repo: Repo) -> List[str]:
    return repo.git.diff("--cached", "--name-only").splitlines()


class RecordingFilter:
    """History filter stand-in that logs its calls.

    Paths outside the requested prefixes are dropped from every commit with
    plain ``git filter-branch``, which is enough for small test histories.
    """

    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def filter(self, repo_dir: Path, prefixes: Sequence[str]) -> None:
        self.calls.append((repo_dir, tuple(prefixes)))
        if "." in prefixes:
            return
        repo = Repo(repo_dir)
        every = {
            line
            for line in repo.git.log("--all", "--name-only", "--pretty=format:").splitlines()
            if line
        }
        drop = sorted(
            p for p in every if not any(p == k or p.startswith(k + "/") for k in prefixes)
        )
        if not drop:
            return
        script = "git rm -q --cached --ignore-unmatch -- " + " ".join(shlex.quote(p) for p in drop)
        repo.git.filter_branch(
            "-f", "--prune-empty", "--index-filter", script, "HEAD",
            env={"FILTER_BRANCH_SQUELCH_WARNING": "1"},
        )


@pytest.fixture
def recording_filter() -> RecordingFilter:
    return RecordingFilter()


def plan_pairs(plan: Plan) -> List[tuple]:
    return [(pair.source, pair.dest) for pair in plan.groups]


def install_script(directory: Path, body: str = "exit 0\n") -> Path:
    """Write an executable ``filter_git_history.sh`` into ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    script = directory / FILTER_SCRIPT
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


CHANGE_ID_HOOK = """#!/bin/sh
grep -q '^Change-Id:' "$1" && exit 0
printf '\\nChange-Id: I%s\\n' "$(git hash-object "$1")" >> "$1"
"""


def install_change_id_hook(repo_root: Path) -> Path:
    """Install a commit-msg hook that stamps a Change-Id like Gerrit's does."""
    hook = repo_root / ".git" / "hooks" / "commit-msg"
    hook.parent.mkdir(parents=True, exist_ok=True)
    hook.write_text(CHANGE_ID_HOOK, encoding="utf-8")
    hook.chmod(hook.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return hook


def change_ids(message: str, trailer: str = "Change-Id:") -> List[str]:
    return [line[len(trailer):].strip() for line in message.splitlines() if line.startswith(trailer)]
