"""
Relocate subdirectories between git repositories while keeping their history.

The tool reads a map file of ``source_repo|source_path|dest_repo|dest_path``
rows and, for every row, extracts the history of ``source_path``, merges it
into ``dest_repo`` (creating the repository when needed), renames the
content to ``dest_path`` in every historical commit, patches build metadata
that refers to the moved component, and finally removes ``source_path``
from the source repository.

Example::

    # Move two components out of stx-integ into a new repository
    cat repo.map
    stx/stx-integ|base/centos-release-config|stx/stx-config-files|centos-release-config
    stx/stx-integ|base/dhcp-config|stx/stx-config-files|dhcp-config

    split-repo -M repo.map

The CLI is built on top of :mod:`click`; see ``splitrepo.cli``.  The stages
themselves live in ``splitrepo.pipeline``.
"""

__all__ = [
    "Plan",
    "Settings",
    "parse_map_file",
    "validate_plan",
    "run",
]

from .pipeline import Settings, run  # noqa: F401
from .plan import Plan, parse_map_file, validate_plan  # noqa: F401
