"""
History filtering adapter.

The history-preserving extraction itself is done by an external tool.  This
module defines the :class:`HistoryFilter` interface the pipeline talks to,
the default implementation that shells out to oslo.tools'
``filter_git_history.sh``, and the scratch-copy staging that keeps the
destructive filter away from the real source repository.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Protocol, Sequence, runtime_checkable

from . import gitops
from .errors import ToolNotFoundError

__all__ = [
    "HistoryFilter",
    "OsloHistoryFilter",
    "resolve_filter_tool",
    "scratch_dir_for",
    "stage_scratch_copy",
    "FILTER_SCRIPT",
]

log = logging.getLogger(__name__)

FILTER_SCRIPT = "filter_git_history.sh"
OSLO_TOOLS_REPO = "https://opendev.org/openstack/oslo.tools.git"
SCRATCH_SUFFIX = ".old_repo"


@runtime_checkable
class HistoryFilter(Protocol):
    """Rewrites a repository in place, keeping only history under ``prefixes``."""

    def filter(self, repo_dir: Path, prefixes: Sequence[str]) -> None:
        ...


def resolve_filter_tool(oslo_tools: Optional[str]) -> Path:
    """Locate ``filter_git_history.sh``.

    ``oslo_tools`` (normally ``$OSLO_TOOLS``) is checked first, then the
    search path.

    Raises
    ------
    ToolNotFoundError
        If the script is in neither place.
    """
    if oslo_tools:
        candidate = Path(oslo_tools) / FILTER_SCRIPT
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return candidate
    found = shutil.which(FILTER_SCRIPT)
    if found:
        return Path(found)
    raise ToolNotFoundError(
        f"{FILTER_SCRIPT} is not found.  You need to get it and set OSLO_TOOLS to the directory\n"
        f"$ git clone {OSLO_TOOLS_REPO} oslo.tools\n"
        f"$ export OSLO_TOOLS=$(pwd)/oslo.tools"
    )


class OsloHistoryFilter:
    """:class:`HistoryFilter` backed by oslo.tools' shell script."""

    def __init__(self, script: Path) -> None:
        self.script = script

    @classmethod
    def from_environment(cls, oslo_tools: Optional[str]) -> "OsloHistoryFilter":
        return cls(resolve_filter_tool(oslo_tools))

    def filter(self, repo_dir: Path, prefixes: Sequence[str]) -> None:
        # The script takes anchored patterns, one per kept path
        command = [str(self.script)] + [f"^{prefix}" for prefix in prefixes]
        log.debug("running %s in %s", command, repo_dir)
        subprocess.run(command, cwd=repo_dir, check=True)


def scratch_dir_for(dest_root: Path, source_label: str) -> Path:
    return dest_root / f"{source_label}{SCRATCH_SUFFIX}"


def _drop_filter_backups(repo_dir: Path) -> None:
    repo = gitops.open_repo(repo_dir)
    refs = repo.git.for_each_ref("--format=%(refname)", "refs/original/").split()
    for ref in refs:
        repo.git.update_ref("-d", ref)
    shutil.rmtree(Path(repo.git_dir) / "refs" / "original", ignore_errors=True)


def stage_scratch_copy(
    source_root: Path,
    scratch_dir: Path,
    prefixes: Sequence[str],
    branch: str,
    history_filter: HistoryFilter,
) -> bool:
    """Copy ``source_root`` to ``scratch_dir`` and filter it down to ``prefixes``.

    Nothing happens when ``scratch_dir`` already exists, so an interrupted
    run can be resumed without filtering twice.  Returns whether filtering
    was performed.
    """
    if scratch_dir.exists():
        log.info("reusing existing scratch copy %s", scratch_dir)
        return False
    scratch_dir.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(source_root, scratch_dir, symlinks=False)
    _drop_filter_backups(scratch_dir)
    gitops.open_repo(scratch_dir).git.checkout("-B", branch)
    history_filter.filter(scratch_dir, prefixes)
    return True
