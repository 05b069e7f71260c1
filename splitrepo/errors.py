"""Exceptions raised by the split-repo pipeline.

Everything the pipeline raises on purpose derives from :class:`SplitRepoError`
so the command-line layer can report it with a single ``except`` clause.
"""

from __future__ import annotations

from typing import Sequence


class SplitRepoError(Exception):
    """Base class for all split-repo failures."""


class MapFileError(SplitRepoError):
    """The map file is malformed or describes no moves.

    ``problems`` holds one human readable entry per offending line so that
    every bad row can be reported at once.
    """

    def __init__(self, message: str, problems: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.problems = list(problems)


class ToolNotFoundError(SplitRepoError):
    """The external history filtering tool cannot be located."""


class PreconditionError(SplitRepoError):
    """A repository or path named in the map does not exist."""


class ConsistencyError(SplitRepoError):
    """An intermediate artifact expected from an earlier step is missing."""
