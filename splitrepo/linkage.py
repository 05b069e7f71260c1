"""Cross-repository commit linkage.

A single logical move produces commits in several repositories.  Each one
is recorded here under its :class:`~splitrepo.plan.RepoPair` and a stage
name, so that a later commit can declare ``Depends-On:`` the earlier one.
"""

from __future__ import annotations

import logging
from typing import List, Tuple

from git import Repo

from . import gitops
from .plan import RepoPair

log = logging.getLogger(__name__)

MERGE = "merge"
FROM_CONFIG = "from_config"
TO_CONFIG = "to_config"
REMOVE = "rm"

DEPENDS_ON_TRAILER = "Depends-On:"


class ChangeLinkage:
    """Append-only log of ``(pair, stage) -> Change-Id`` entries."""

    def __init__(self) -> None:
        self._entries: List[Tuple[RepoPair, str, str]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, pair: RepoPair, stage: str, change_id: str) -> None:
        log.debug("change id %r for %s (%s)", change_id, pair, stage)
        self._entries.append((pair, stage, change_id))

    def capture(self, repo: Repo, pair: RepoPair, stage: str) -> str:
        """Record the Change-Id of ``repo``'s HEAD commit."""
        change_id = gitops.head_change_id(repo)
        self.record(pair, stage, change_id)
        return change_id

    def lookup(self, pair: RepoPair, stage: str) -> str:
        """Most recent Change-Id for ``pair`` and ``stage``; empty if unknown."""
        for entry_pair, entry_stage, change_id in reversed(self._entries):
            if entry_pair == pair and entry_stage == stage:
                return change_id
        return ""

    def depend_on(self, repo: Repo, pair: RepoPair, stage: str) -> bool:
        """Amend HEAD with a ``Depends-On`` trailer when a linked id is known."""
        change_id = self.lookup(pair, stage)
        if not change_id:
            return False
        gitops.append_to_head_message(repo, f"{DEPENDS_ON_TRAILER} {change_id}")
        return True
