"""
Thin helpers over GitPython for the commands the pipeline needs.

Every repository mutation goes through git's command surface
(``repo.git.<command>``); nothing here touches the object store directly.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Iterable, List, Optional

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

__all__ = [
    "open_repo",
    "init_repo",
    "find_repo",
    "has_commits",
    "current_branch",
    "ensure_branch",
    "has_staged_changes",
    "commit",
    "head_change_id",
    "append_to_head_message",
    "ensure_commit_hook",
    "remove_paths",
]

log = logging.getLogger(__name__)

CHANGE_ID_TRAILER = "Change-Id:"
COMMIT_MSG_HOOK = Path("hooks") / "commit-msg"


def open_repo(path: Path) -> Repo:
    return Repo(path)


def init_repo(path: Path) -> Repo:
    path.mkdir(parents=True, exist_ok=True)
    log.debug("git init %s", path)
    return Repo.init(path)


def find_repo(path: Path) -> Optional[Repo]:
    """Return the repository containing ``path``, or ``None``."""
    try:
        return Repo(path, search_parent_directories=True)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return None


def has_commits(repo: Repo) -> bool:
    return repo.head.is_valid()


def current_branch(repo: Repo) -> str:
    """Name of the checked out branch; empty when HEAD is detached."""
    try:
        return repo.active_branch.name
    except TypeError:
        return ""


def ensure_branch(repo: Repo, branch: str) -> None:
    """Switch to ``branch``, creating it from the current HEAD if needed."""
    if current_branch(repo) == branch:
        return
    if has_commits(repo) and branch in [head.name for head in repo.heads]:
        repo.git.checkout(branch)
    else:
        repo.git.checkout("-b", branch)


def has_staged_changes(repo: Repo) -> bool:
    return bool(repo.git.diff("--name-only", "--cached").strip())


def commit(repo: Repo, message: str, *extra: str) -> None:
    """Commit the index with a sign-off."""
    repo.git.commit("-s", "-m", message, *extra)


def head_change_id(repo: Repo) -> str:
    """Return the first ``Change-Id`` trailer of the HEAD commit, if any.

    A merge commit message may list the Change-Ids of its parents after
    its own; the first one belongs to the merge.
    """
    for line in repo.head.commit.message.splitlines():
        if line.startswith(CHANGE_ID_TRAILER):
            return line[len(CHANGE_ID_TRAILER):].strip()
    return ""


def append_to_head_message(repo: Repo, text: str) -> None:
    message = repo.head.commit.message.rstrip()
    repo.git.commit("--amend", "-m", f"{message}\n{text}")


def ensure_commit_hook(repo_dir: Path, donor_dir: Optional[Path] = None) -> bool:
    """Make sure ``repo_dir`` has a commit-msg hook that stamps Change-Ids.

    ``git review -s`` installs the Gerrit hook.  When that fails in
    ``repo_dir`` the hook is copied from ``donor_dir`` instead.  Returns
    whether a hook is in place afterwards.
    """
    repo = open_repo(repo_dir)
    hook = Path(repo.git_dir) / COMMIT_MSG_HOOK
    if hook.is_file():
        return True
    try:
        repo.git.review("-s")
    except GitCommandError as exc:
        log.debug("git review -s failed in %s: %s", repo_dir, exc)
    if hook.is_file():
        return True
    if donor_dir is None:
        return False

    donor = open_repo(donor_dir)
    donor_hook = Path(donor.git_dir) / COMMIT_MSG_HOOK
    if not donor_hook.is_file():
        try:
            donor.git.review("-s")
        except GitCommandError as exc:
            log.debug("git review -s failed in %s: %s", donor_dir, exc)
    if not donor_hook.is_file():
        return False
    hook.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(donor_hook, hook)
    return True


def remove_paths(repo: Repo, paths: Iterable[str]) -> List[str]:
    """``git rm -rf`` every path that is still present; return those removed."""
    root = Path(repo.working_tree_dir)
    removed = []
    for path in paths:
        if (root / path).exists():
            repo.git.rm("-rf", path)
            removed.append(path)
    return removed
