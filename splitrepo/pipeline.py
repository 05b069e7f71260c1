"""
The split-repo pipeline.

Stages run strictly in order, each one consuming the immutable
:class:`~splitrepo.plan.Plan` and the mutable per-run :class:`RunContext`:

1. :func:`provision` – create missing destination repositories and put
   pre-existing ones on the modified-repo branch.
2. :func:`filter_sources` – stage a filtered scratch copy of each source
   inside its destination.
3. :func:`merge_sources` – merge every scratch history into its destination.
4. :func:`rewrite_paths` – rename moved paths throughout the destination's
   history.
5. :func:`fix_metadata` – patch build metadata and commit it on both sides.
6. :func:`remove_sources` – delete moved paths from the source repositories.

Running the stages out of order would reference branches, remotes or
scratch copies that do not exist yet.
"""

from __future__ import annotations

import json
import logging
import os
import posixpath
import shlex
import shutil
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import click

from . import gitops
from .errors import ConsistencyError
from .fixers import STAGING_FIXERS, FixupContext, collect_package_names, fix_dependent_specs
from .history import HistoryFilter, OsloHistoryFilter, scratch_dir_for, stage_scratch_copy
from .linkage import FROM_CONFIG, MERGE, REMOVE, TO_CONFIG, ChangeLinkage
from .plan import FilterGroup, Plan, RepoPair, parse_map_file, validate_plan
from .rewrite import RewriteEngine

__all__ = [
    "Settings",
    "RepoState",
    "RunContext",
    "run",
    "provision",
    "filter_sources",
    "merge_sources",
    "rewrite_paths",
    "fix_metadata",
    "remove_sources",
]

log = logging.getLogger(__name__)

DEFAULT_MAP_FILE = "repo.map"
DEFAULT_NEW_BRANCH = "master"
DEFAULT_MODIFIED_BRANCH = "work"
DEFAULT_DISTRO = "centos"


@dataclass(frozen=True)
class Settings:
    map_file: Path = Path(DEFAULT_MAP_FILE)
    new_branch: str = DEFAULT_NEW_BRANCH
    modified_branch: str = DEFAULT_MODIFIED_BRANCH
    workspace: Path = field(default_factory=Path.cwd)
    distro: str = DEFAULT_DISTRO
    oslo_tools: Optional[str] = None


@dataclass
class RepoState:
    is_virgin: bool = False
    is_new: bool = False


@dataclass
class RunContext:
    settings: Settings
    plan: Plan
    history_filter: HistoryFilter
    scratch_root: Path
    states: Dict[str, RepoState] = field(default_factory=dict)
    linkage: ChangeLinkage = field(default_factory=ChangeLinkage)

    def state(self, repo: str) -> RepoState:
        return self.states.setdefault(repo, RepoState())

    def source_label(self, repo: str) -> str:
        """Name used for a source's scratch directory and temporary remote."""
        path = self.plan.repo_path(repo)
        try:
            label = path.relative_to(self.plan.workspace).as_posix()
        except ValueError:
            label = path.name
        return label if label != "." else path.name

    def scratch_dir(self, pair: RepoPair) -> Path:
        return scratch_dir_for(self.plan.repo_path(pair.dest), self.source_label(pair.source))

    def fixup_context(self, group: FilterGroup) -> FixupContext:
        return FixupContext(
            plan=self.plan,
            group=group,
            distro=self.settings.distro,
            linkage=self.linkage,
            modified_branch=self.settings.modified_branch,
        )


def provision(ctx: RunContext) -> None:
    """Record repository states and create destinations that do not exist yet."""
    for pair in ctx.plan.groups:
        ctx.state(pair.source)
        if pair.dest not in ctx.states:
            missing = not ctx.plan.repo_path(pair.dest).exists()
            ctx.states[pair.dest] = RepoState(is_virgin=missing, is_new=missing)

    for pair in ctx.plan.groups:
        if pair.source == pair.dest:
            continue
        dest_root = ctx.plan.repo_path(pair.dest)
        if not dest_root.exists():
            click.echo(f"Creating destination repo '{pair.dest}'")
            gitops.init_repo(dest_root)
        elif not ctx.state(pair.dest).is_new:
            repo = gitops.open_repo(dest_root)
            if gitops.has_commits(repo):
                gitops.ensure_branch(repo, ctx.settings.modified_branch)


def filter_sources(ctx: RunContext) -> None:
    """Stage one filtered scratch copy per source/destination pair."""
    for pair, group in ctx.plan.groups.items():
        if pair.source == pair.dest:
            continue
        click.echo(f"Processing moves from '{pair.source}' to '{pair.dest}'")
        stage_scratch_copy(
            ctx.plan.repo_path(pair.source),
            ctx.scratch_dir(pair),
            group.source_paths,
            ctx.settings.modified_branch,
            ctx.history_filter,
        )


def _merge_one(ctx: RunContext, pair: RepoPair) -> None:
    dest_root = ctx.plan.repo_path(pair.dest)
    scratch = ctx.scratch_dir(pair)
    if not scratch.is_dir():
        raise ConsistencyError(f"merge_repo: missing directory '{scratch}'")

    repo = gitops.open_repo(dest_root)
    remote_name = "tmp-" + ctx.source_label(pair.source).replace("/", "-")
    if remote_name in [remote.name for remote in repo.remotes]:
        repo.delete_remote(remote_name)
    remote = repo.create_remote(remote_name, str(scratch))
    remote.fetch()
    gitops.ensure_commit_hook(dest_root, ctx.plan.repo_path(pair.source))

    args = ["-m", f"Merge select content originating from repo '{pair.source}'"]
    state = ctx.state(pair.dest)
    if state.is_virgin:
        args += ["-s", "ours"]
        state.is_virgin = False
    args += ["--allow-unrelated-histories", f"{remote_name}/{ctx.settings.modified_branch}"]
    repo.git.merge(*args)
    # Amend so the commit-msg hook stamps the merge with a Change-Id
    repo.git.commit("--amend", "--no-edit", "-s")
    ctx.linkage.capture(repo, pair, MERGE)

    repo.delete_remote(remote_name)
    shutil.rmtree(scratch)


def merge_sources(ctx: RunContext) -> None:
    """Merge each destination's filtered sources, in first-seen order."""
    for dest, sources in ctx.plan.sources_by_dest.items():
        for source in sources:
            if source == dest:
                continue
            _merge_one(ctx, RepoPair(source, dest))


def build_index_filter(rules_file: Path) -> str:
    """Shell snippet for ``git filter-branch --index-filter``."""
    rename = f"{shlex.quote(sys.executable)} -m splitrepo.index_filter {shlex.quote(str(rules_file))}"
    return (
        f"git ls-files -s -z | {rename} | "
        'GIT_INDEX_FILE="$GIT_INDEX_FILE.new" git update-index -z --index-info && '
        'mv "$GIT_INDEX_FILE.new" "$GIT_INDEX_FILE" || true'
    )


def _filter_env() -> Dict[str, str]:
    package_parent = str(Path(__file__).resolve().parent.parent)
    pythonpath = os.environ.get("PYTHONPATH")
    return {
        "FILTER_BRANCH_SQUELCH_WARNING": "1",
        "PYTHONPATH": os.pathsep.join(p for p in (package_parent, pythonpath) if p),
    }


def rewrite_paths(ctx: RunContext) -> None:
    """Rename moved paths in every commit reachable from each destination's HEAD."""
    for index, (dest, rules) in enumerate(ctx.plan.rewrite_rules.items()):
        engine = RewriteEngine(rules)
        if not engine:
            continue
        dest_root = ctx.plan.repo_path(dest)
        if not dest_root.is_dir():
            raise ConsistencyError(f"directory not found, dest_repo='{dest}'")
        repo = gitops.open_repo(dest_root)
        if not gitops.has_commits(repo):
            log.warning("nothing to rewrite in '%s', it has no commits", dest)
            continue

        click.echo(f"Processing renames within '{dest}'")
        rules_file = ctx.scratch_root / f"rewrite-{index}.json"
        rules_file.write_text(json.dumps(engine.to_json_payload()), encoding="utf-8")
        repo.git.filter_branch(
            "-f", "--index-filter", build_index_filter(rules_file), "HEAD", env=_filter_env()
        )

        if ctx.state(dest).is_new and gitops.current_branch(repo) != ctx.settings.new_branch:
            repo.git.branch("-m", ctx.settings.new_branch)


def _switch_branches(ctx: RunContext, pair: RepoPair) -> None:
    gitops.ensure_branch(
        gitops.open_repo(ctx.plan.repo_path(pair.source)), ctx.settings.modified_branch
    )
    dest_branch = (
        ctx.settings.new_branch if ctx.state(pair.dest).is_new else ctx.settings.modified_branch
    )
    gitops.ensure_branch(gitops.open_repo(ctx.plan.repo_path(pair.dest)), dest_branch)


def _commit_config(ctx: RunContext, group: FilterGroup) -> None:
    pair = group.pair
    source_root = ctx.plan.repo_path(pair.source)
    dest_root = ctx.plan.repo_path(pair.dest)
    src_paths = " ".join(m.source_path for m in group.mappings)
    dest_paths = " ".join(m.dest_path for m in group.mappings)

    source = gitops.open_repo(source_root)
    if gitops.has_staged_changes(source):
        gitops.ensure_commit_hook(source_root)
        gitops.commit(
            source,
            f"Config file changes to remove '{src_paths}' after relocation to '{pair.dest}'",
        )
        ctx.linkage.capture(source, pair, FROM_CONFIG)

    dest = gitops.open_repo(dest_root)
    if gitops.has_staged_changes(dest):
        gitops.ensure_commit_hook(dest_root, source_root)
        gitops.commit(
            dest,
            f"Config file changes to add '{dest_paths}' after relocation from '{pair.source}'",
        )
        ctx.linkage.depend_on(dest, pair, MERGE)
        ctx.linkage.capture(dest, pair, TO_CONFIG)


def fix_metadata(ctx: RunContext) -> None:
    """Patch build metadata for every pair that moved named paths."""
    for pair, group in ctx.plan.groups.items():
        if not group.mappings:
            continue
        _switch_branches(ctx, pair)
        fixup = ctx.fixup_context(group)
        # Sub-package names have to be read before fix_spec renames them
        names = collect_package_names(fixup)
        for fixer in STAGING_FIXERS:
            touched = fixer(fixup)
            if touched:
                log.info("%s updated %s", fixer.__name__, ", ".join(map(str, touched)))
        _commit_config(ctx, group)
        fix_dependent_specs(fixup, donor=ctx.plan.repo_path(pair.source), known_names=names)


def remove_sources(ctx: RunContext) -> None:
    """Delete moved paths from their source repositories and commit."""
    for pair, group in ctx.plan.groups.items():
        source_root = ctx.plan.repo_path(pair.source)
        if not any((source_root / p).exists() for p in group.source_paths):
            continue
        repo = gitops.open_repo(source_root)
        gitops.ensure_branch(repo, ctx.settings.modified_branch)
        gitops.remove_paths(repo, group.source_paths)
        gitops.ensure_commit_hook(source_root, ctx.plan.repo_path(pair.dest))
        dest_name = posixpath.basename(pair.dest)
        gitops.commit(
            repo,
            f"Subdirectories '{' '.join(group.source_paths)}' relocated to repo '{dest_name}'",
        )
        ctx.linkage.depend_on(repo, pair, FROM_CONFIG)
        ctx.linkage.capture(repo, pair, REMOVE)


def new_repositories(ctx: RunContext) -> List[str]:
    return [repo for repo, state in ctx.states.items() if state.is_new]


def run(settings: Settings, history_filter: Optional[HistoryFilter] = None) -> List[str]:
    """Execute the whole pipeline and return the destinations it created.

    The history filter is resolved first so that a missing tool is reported
    before the map file is even read.
    """
    if history_filter is None:
        history_filter = OsloHistoryFilter.from_environment(settings.oslo_tools)

    plan = parse_map_file(settings.map_file, settings.workspace, settings.distro)
    validate_plan(plan)

    with tempfile.TemporaryDirectory(prefix="split-repo-") as scratch_root:
        ctx = RunContext(
            settings=settings,
            plan=plan,
            history_filter=history_filter,
            scratch_root=Path(scratch_root),
        )
        provision(ctx)
        filter_sources(ctx)
        merge_sources(ctx)
        rewrite_paths(ctx)
        fix_metadata(ctx)
        remove_sources(ctx)

    created = new_repositories(ctx)
    if created:
        click.echo("")
        click.echo(f"New repos created at: {' '.join(created)}")
    return created
