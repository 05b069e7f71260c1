"""
Map file parsing and validation.

A map file lists one move per line as four pipe separated fields::

    source_repo|source_path|dest_repo|dest_path

Lines whose first field begins with ``#`` are comments.  Repository paths
are interpreted relative to the workspace root; ``source_path`` and
``dest_path`` are relative to their repository, with ``.`` naming the
repository root itself.

:func:`parse_map_file` turns the file into an immutable :class:`Plan` that
every later pipeline stage reads from.  :func:`validate_plan` checks the
plan against the file system before anything is modified.
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from .errors import MapFileError, PreconditionError
from .rewrite import ROOT, RewriteRule, rules_for_move

__all__ = [
    "MoveRequest",
    "RepoPair",
    "PathMapping",
    "FilterGroup",
    "Plan",
    "parse_map_file",
    "parse_map_lines",
    "validate_plan",
]

log = logging.getLogger(__name__)

FIELD_COUNT = 4


@dataclass(frozen=True)
class RepoPair:
    """Composite key identifying one source/destination repository pair."""

    source: str
    dest: str

    def __str__(self) -> str:
        return f"{self.source} -> {self.dest}"


@dataclass(frozen=True)
class MoveRequest:
    source_repo: str
    source_path: str
    dest_repo: str
    dest_path: str
    line: int = 0

    @property
    def pair(self) -> RepoPair:
        return RepoPair(self.source_repo, self.dest_repo)


@dataclass(frozen=True)
class PathMapping:
    source_path: str
    dest_path: str

    @property
    def from_name(self) -> str:
        return posixpath.basename(self.source_path)

    @property
    def to_name(self) -> str:
        return posixpath.basename(self.dest_path)

    @property
    def renamed(self) -> bool:
        return self.from_name != self.to_name


@dataclass(frozen=True)
class FilterGroup:
    """Everything extracted from one source repository for one destination."""

    pair: RepoPair
    source_paths: Tuple[str, ...]
    mappings: Tuple[PathMapping, ...] = ()


@dataclass(frozen=True)
class Plan:
    """The complete, validated-on-demand description of a run."""

    workspace: Path
    requests: Tuple[MoveRequest, ...]
    groups: Dict[RepoPair, FilterGroup] = field(default_factory=dict)
    sources_by_dest: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    requests_by_dest: Dict[str, Tuple[MoveRequest, ...]] = field(default_factory=dict)
    rewrite_rules: Dict[str, Tuple[RewriteRule, ...]] = field(default_factory=dict)

    def repo_path(self, repo: str) -> Path:
        """Return the on-disk location of a repository named in the map."""
        return (self.workspace / repo).resolve()

    def all_mappings(self) -> Iterable[Tuple[RepoPair, PathMapping]]:
        for pair, group in self.groups.items():
            for mapping in group.mappings:
                yield pair, mapping


def _normalise(value: str) -> str:
    return posixpath.normpath(value.strip())


def _split_line(text: str, lineno: int) -> Tuple[List[str], str]:
    fields = text.split("|")
    if len(fields) != FIELD_COUNT:
        return [], f"line {lineno}: expected {FIELD_COUNT} fields, found {len(fields)}"
    stripped = [f.strip() for f in fields]
    if not all(stripped):
        return [], f"line {lineno}: empty field"
    return stripped, ""


def parse_map_lines(
    lines: Iterable[str], workspace: Path, distro: str, source_name: str = "map file"
) -> Plan:
    """Build a :class:`Plan` from map file lines.

    Malformed lines do not stop parsing; every problem is collected and
    reported together through a single :class:`MapFileError`.
    """
    requests: List[MoveRequest] = []
    problems: List[str] = []
    for lineno, raw in enumerate(lines, start=1):
        text = raw.rstrip("\r\n")
        if text.lstrip().startswith("#"):
            log.debug("skip comment at line %d", lineno)
            continue
        if not text.strip():
            log.debug("skip blank line %d", lineno)
            continue
        fields, problem = _split_line(text, lineno)
        if problem:
            problems.append(problem)
            continue
        src_repo, src_path, dest_repo, dest_path = (_normalise(f) for f in fields)
        requests.append(MoveRequest(src_repo, src_path, dest_repo, dest_path, lineno))

    if problems:
        raise MapFileError(f"malformed lines in '{source_name}'", problems)
    if not requests:
        raise MapFileError(f"no moves found in '{source_name}'")
    return build_plan(requests, workspace, distro)


def parse_map_file(map_file: Path, workspace: Path, distro: str) -> Plan:
    with open(map_file, encoding="utf-8") as fh:
        return parse_map_lines(fh, workspace, distro, source_name=str(map_file))


def build_plan(requests: Iterable[MoveRequest], workspace: Path, distro: str) -> Plan:
    requests = tuple(requests)
    workspace = workspace.resolve()
    paths: Dict[RepoPair, List[str]] = {}
    mappings: Dict[RepoPair, List[PathMapping]] = {}
    sources: Dict[str, List[str]] = {}
    by_dest: Dict[str, List[MoveRequest]] = {}
    rules: Dict[str, List[RewriteRule]] = {}

    for request in requests:
        pair = request.pair
        if pair not in paths:
            paths[pair] = []
            mappings[pair] = []
            sources.setdefault(request.dest_repo, []).append(request.source_repo)
        if request.source_path not in paths[pair]:
            paths[pair].append(request.source_path)
        by_dest.setdefault(request.dest_repo, []).append(request)

        if request.source_path != ROOT and request.dest_path != ROOT:
            mapping = PathMapping(request.source_path, request.dest_path)
            if mapping not in mappings[pair]:
                mappings[pair].append(mapping)

        dest_rules = rules.setdefault(request.dest_repo, [])
        for rule in rules_for_move(
            (workspace / request.source_repo).resolve(),
            request.source_path,
            request.dest_path,
            distro,
        ):
            if rule not in dest_rules:
                dest_rules.append(rule)

    return Plan(
        workspace=workspace,
        requests=requests,
        groups={
            pair: FilterGroup(pair, tuple(paths[pair]), tuple(mappings[pair]))
            for pair in paths
        },
        sources_by_dest={dest: tuple(srcs) for dest, srcs in sources.items()},
        requests_by_dest={dest: tuple(reqs) for dest, reqs in by_dest.items()},
        rewrite_rules={dest: tuple(r) for dest, r in rules.items() if r},
    )


def validate_plan(plan: Plan) -> None:
    """Check that every source exists before the pipeline touches anything.

    Raises
    ------
    PreconditionError
        If a source repository or source path is missing, or an existing
        destination is not a git working tree.
    """
    for pair, group in plan.groups.items():
        source_root = plan.repo_path(pair.source)
        if not source_root.is_dir():
            raise PreconditionError(f"directory not found, src_repo='{pair.source}'")
        for source_path in group.source_paths:
            target = source_root / source_path
            if not (target.is_dir() or target.is_file()):
                raise PreconditionError(
                    f"path not found, src_path='{source_path}' within src_repo='{pair.source}'"
                )
        dest_root = plan.repo_path(pair.dest)
        if dest_root.exists() and not (dest_root / ".git").exists():
            raise PreconditionError(
                f"destination '{pair.dest}' exists but is not a git repository"
            )
