"""
Command‑line interface for the split-repo tool.

A single command reads a map file and relocates the listed subdirectories,
with their history, into their destination repositories::

    split-repo -M new-repo.map -n master -m work

Each map line has four ``|`` separated fields: the source repository, the
path inside it to move, the destination repository (created when missing)
and the path inside the destination.  For example::

    stx/stx-integ|base/dhcp-config|stx/stx-config-files|dhcp-config

History filtering uses ``filter_git_history.sh`` from oslo.tools, found
through ``$OSLO_TOOLS`` or the search path.
"""

from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path
from typing import IO, Any, Optional

import click
from git.exc import GitCommandError

from .errors import MapFileError, SplitRepoError
from .pipeline import (
    DEFAULT_DISTRO,
    DEFAULT_MAP_FILE,
    DEFAULT_MODIFIED_BRANCH,
    DEFAULT_NEW_BRANCH,
    Settings,
    run,
)


class SplitRepoCLIError(click.ClickException):
    """Reports failures as ``ERROR: ...`` on stderr and exits with status 1."""

    def show(self, file: Optional[IO[Any]] = None) -> None:
        for line in self.format_message().splitlines():
            click.echo(f"ERROR: {line}", file=file, err=True)


def _describe(exc: Exception) -> str:
    if isinstance(exc, MapFileError):
        return "\n".join([str(exc)] + exc.problems)
    return str(exc)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="split-repo")
@click.option(
    "-M", "--map-file", "map_file", type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_MAP_FILE, show_default=True, help="Path to map file.",
)
@click.option(
    "-n", "--new-repo-branch", "new_branch", default=DEFAULT_NEW_BRANCH, show_default=True,
    help="Branch to create for new repos.",
)
@click.option(
    "-m", "--modified-repo-branch", "modified_branch", default=DEFAULT_MODIFIED_BRANCH,
    show_default=True, help="Branch to create for modified repos.",
)
@click.option(
    "--oslo-tools", "oslo_tools", envvar="OSLO_TOOLS", type=click.Path(file_okay=False),
    default=None, help="Directory of an oslo.tools checkout holding filter_git_history.sh.",
)
@click.option(
    "--workspace", "workspace", type=click.Path(file_okay=False, path_type=Path),
    default=None, help="Directory repository paths are relative to (defaults to current working directory).",
)
@click.option(
    "--distro", default=DEFAULT_DISTRO, show_default=True,
    help="Distribution directory and prefix used by the build metadata.",
)
@click.option("-v", "--verbose", is_flag=True, help="Log every step and git command.")
def cli(
    map_file: Path,
    new_branch: str,
    modified_branch: str,
    oslo_tools: Optional[str],
    workspace: Optional[Path],
    distro: str,
    verbose: bool,
) -> None:
    """Move subdirectories between git repositories, keeping their history.

    Moved content is merged into the destination with its history, renamed
    in every commit to its new path, build metadata is updated on both
    sides, and the moved paths are finally removed from the source.
    """
    configure_logging(verbose)
    root = workspace or Path.cwd()
    if not root.is_dir():
        raise click.UsageError(f"Workspace {root!s} does not exist or is not a directory")
    settings = Settings(
        map_file=map_file,
        new_branch=new_branch,
        modified_branch=modified_branch,
        workspace=root,
        distro=distro,
        oslo_tools=oslo_tools,
    )
    try:
        run(settings)
    except (SplitRepoError, GitCommandError, subprocess.CalledProcessError, OSError) as exc:
        raise SplitRepoCLIError(_describe(exc)) from exc


def main(argv: Optional[list] = None) -> None:
    """Entrypoint for console_scripts and ``python -m splitrepo``."""
    cli.main(args=argv, prog_name="split-repo")


if __name__ == "__main__":  # pragma: no cover
    main(sys.argv[1:])
