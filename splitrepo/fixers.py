"""
Metadata fix-ups applied after content has been relocated.

Build metadata refers to components by directory path and by package name.
When a component moves, or its directory is renamed on the way, these
references have to follow it.  Each fixer here handles one narrowly
recognised file pattern and is a silent no-op when its files are absent,
since not every component carries every kind of metadata.

The list fixers (package directory lists, wheel lists, image package lists)
move entries out of the source repository's top-level list files into the
same-named files of the destination repository.  The rename fixers
(``PKG-INFO``, ``.spec``, ``build_srpm.data``) rewrite a component's own
descriptors and do nothing when the component keeps its basename.

All fixers stage their edits.  :func:`fix_dependent_specs` is the exception:
it edits spec files in unrelated repositories and commits there directly.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from git import Repo

from . import gitops
from .linkage import TO_CONFIG, ChangeLinkage
from .plan import FilterGroup, PathMapping, Plan

__all__ = [
    "FixupContext",
    "NameRule",
    "fix_pkg_dirs",
    "fix_wheels_inc",
    "fix_image_inc",
    "fix_pkg_info",
    "fix_spec",
    "fix_build_srpm_data",
    "fix_dependent_specs",
    "collect_package_names",
    "package_names",
    "target_package_list",
    "STAGING_FIXERS",
]

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class FixupContext:
    plan: Plan
    group: FilterGroup
    distro: str
    linkage: ChangeLinkage
    modified_branch: str

    @property
    def source_root(self) -> Path:
        return self.plan.repo_path(self.group.pair.source)

    @property
    def dest_root(self) -> Path:
        return self.plan.repo_path(self.group.pair.dest)

    def component_dir(self, mapping: PathMapping) -> Path:
        return self.dest_root / mapping.dest_path / self.distro


@dataclass(frozen=True)
class NameRule:
    """Replace a package name found between ``prefix`` and ``suffix`` patterns.

    Like a ``sed`` substitution without the ``g`` flag, a rule changes at
    most one occurrence per line.
    """

    prefix: str
    suffix: str = ""

    def compile(self, name: str) -> "re.Pattern[str]":
        return re.compile(f"({self.prefix}){re.escape(name)}({self.suffix})")


def _substitute_lines(text: str, rules: Sequence[NameRule], old: str, new: str) -> str:
    patterns = [rule.compile(old) for rule in rules]

    def replace(match: "re.Match[str]") -> str:
        return match.group(1) + new + match.group(2)

    out = []
    for line in text.splitlines(keepends=True):
        body = line.rstrip("\r\n")
        ending = line[len(body):]
        for pattern in patterns:
            body = pattern.sub(replace, body, count=1)
        out.append(body + ending)
    return "".join(out)


def _rewrite_file(path: Path, rules: Sequence[NameRule], old: str, new: str) -> bool:
    text = path.read_text(encoding="utf-8")
    updated = _substitute_lines(text, rules, old, new)
    if updated == text:
        return False
    path.write_text(updated, encoding="utf-8")
    return True


def _stage(repo_root: Path, path: Path) -> None:
    repo = gitops.open_repo(repo_root)
    repo.git.add(os.path.relpath(path, repo_root))


def _read_lines(path: Path) -> List[str]:
    if not path.is_file():
        return []
    return path.read_text(encoding="utf-8").splitlines()


def _write_lines(path: Path, lines: Iterable[str]) -> None:
    lines = list(lines)
    path.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")


def _transfer_entry(
    ctx: FixupContext,
    src_cfg: Path,
    old: str,
    new: str,
    with_header: bool = False,
) -> bool:
    """Move lines equal to ``old`` from ``src_cfg`` to the destination's copy as ``new``.

    With ``with_header`` a ``# <old>`` comment line travels along as a
    blank line followed by ``# <new>``.
    """
    lines = _read_lines(src_cfg)
    if old not in lines:
        return False
    header = f"# {old}"
    dest_cfg = ctx.dest_root / src_cfg.name

    if dest_cfg.resolve() == src_cfg.resolve():
        renamed = []
        for line in lines:
            if line == old:
                line = new
            elif with_header and line == header:
                line = f"# {new}"
            renamed.append(line)
        _write_lines(src_cfg, renamed)
        _stage(ctx.source_root, src_cfg)
        return True

    moved: List[str] = []
    if with_header:
        for _ in range(lines.count(header)):
            moved.extend(["", f"# {new}"])
    moved.extend(new for _ in range(lines.count(old)))
    _write_lines(dest_cfg, _read_lines(dest_cfg) + moved)
    _stage(ctx.dest_root, dest_cfg)

    kept = [line for line in lines if line != old and not (with_header and line == header)]
    _write_lines(src_cfg, kept)
    _stage(ctx.source_root, src_cfg)
    log.debug("moved %r from %s to %s as %r", old, src_cfg, dest_cfg, new)
    return True


def _source_configs(ctx: FixupContext, *patterns: str) -> List[Path]:
    found: List[Path] = []
    for pattern in patterns:
        for path in sorted(ctx.source_root.glob(pattern)):
            if path.is_file() and path not in found:
                found.append(path)
    return found


def _component_specs(ctx: FixupContext, mapping: PathMapping) -> List[Path]:
    directory = ctx.component_dir(mapping)
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.glob("*.spec") if p.is_file())


def target_package_list(target: str, spec_text: str) -> List[str]:
    """Sub-package names a spec declares that start with ``target``.

    Both ``%package -n %{name}-foo`` and ``%package -n <target>-foo`` count.
    """
    names: List[str] = []
    for marker in ("%package -n %{name}", f"%package -n {target}"):
        for line in spec_text.splitlines():
            if not line.startswith(marker):
                continue
            suffix = line[len(marker):]
            if suffix and not suffix[0].isspace():
                name = target + suffix.split()[0]
            else:
                name = target
            if name not in names:
                names.append(name)
    return names


def fix_pkg_dirs(ctx: FixupContext) -> List[Path]:
    """Move package directory entries (``<distro>_pkg_dirs*``)."""
    touched = []
    for src_cfg in _source_configs(ctx, f"{ctx.distro}_pkg_dirs*"):
        for mapping in ctx.group.mappings:
            if _transfer_entry(ctx, src_cfg, mapping.source_path, mapping.dest_path):
                touched.append(src_cfg)
    return touched


def fix_wheels_inc(ctx: FixupContext) -> List[Path]:
    """Move ``<name>-wheels`` entries in ``<distro>_*_wheels.inc``."""
    touched = []
    for src_cfg in _source_configs(ctx, f"{ctx.distro}_*_wheels.inc"):
        for mapping in ctx.group.mappings:
            if _transfer_entry(
                ctx, src_cfg, f"{mapping.from_name}-wheels", f"{mapping.to_name}-wheels"
            ):
                touched.append(src_cfg)
    return touched


def fix_image_inc(ctx: FixupContext) -> List[Path]:
    """Move package entries in ISO and guest image package lists.

    Besides the component itself, every sub-package declared by the
    component's spec files is moved, renamed by prefix.
    """
    touched = []
    patterns = (f"{ctx.distro}_iso_image.inc", f"{ctx.distro}_guest_image*.inc")
    for src_cfg in _source_configs(ctx, *patterns):
        for mapping in ctx.group.mappings:
            src_pkg, dest_pkg = mapping.from_name, mapping.to_name
            if _transfer_entry(ctx, src_cfg, src_pkg, dest_pkg, with_header=True):
                touched.append(src_cfg)
            for spec in _component_specs(ctx, mapping):
                extras = target_package_list(src_pkg, spec.read_text(encoding="utf-8"))
                for extra in extras:
                    renamed = dest_pkg + extra[len(src_pkg):]
                    if _transfer_entry(ctx, src_cfg, extra, renamed):
                        touched.append(src_cfg)
    return touched


PKG_INFO_RULES = (NameRule("^Name: ", "$"),)

SPEC_RULES = (
    NameRule("^Name: ", "$"),
    NameRule("^Summary: "),
    NameRule("^%[a-z]* -n "),
)

BUILD_SRPM_DATA_RULES = (
    NameRule('^SRC_DIR="'),
    NameRule(r'^SRC_DIR="\$PKG_BASE/'),
    NameRule("^SRC_DIR="),
    NameRule(r"^SRC_DIR=\$PKG_BASE/"),
    NameRule('^TAR_NAME="', '"'),
    NameRule("^TAR_NAME="),
    NameRule('^COPY_LIST="'),
    NameRule(r'^COPY_LIST="\$PKG_BASE/'),
    NameRule(r" \$PKG_BASE/"),
)

REQUIRES_RULES = (
    NameRule("^BuildRequires:[ ]*", "$"),
    NameRule("^Requires:[ ]*", "$"),
)


def _rename_in_component(
    ctx: FixupContext,
    locate: Callable[[FixupContext, PathMapping], Iterable[Path]],
    rules: Sequence[NameRule],
) -> List[Path]:
    touched = []
    for mapping in ctx.group.mappings:
        if not mapping.renamed:
            continue
        for path in locate(ctx, mapping):
            if not path.is_file():
                continue
            if mapping.from_name not in path.read_text(encoding="utf-8"):
                continue
            if _rewrite_file(path, rules, mapping.from_name, mapping.to_name):
                _stage(ctx.dest_root, path)
                touched.append(path)
    return touched


def fix_pkg_info(ctx: FixupContext) -> List[Path]:
    """Rename the ``Name:`` field of a component's ``PKG-INFO``."""
    return _rename_in_component(
        ctx, lambda c, m: [c.dest_root / m.dest_path / "PKG-INFO"], PKG_INFO_RULES
    )


def fix_spec(ctx: FixupContext) -> List[Path]:
    """Rename ``Name:``, ``Summary:`` and ``-n`` section aliases in spec files."""
    return _rename_in_component(ctx, _component_specs, SPEC_RULES)


def fix_build_srpm_data(ctx: FixupContext) -> List[Path]:
    """Rename source directory, tarball and copy-list entries in build_srpm.data."""
    return _rename_in_component(
        ctx, lambda c, m: [c.component_dir(m) / "build_srpm.data"], BUILD_SRPM_DATA_RULES
    )


STAGING_FIXERS: Tuple[Callable[[FixupContext], List[Path]], ...] = (
    fix_pkg_dirs,
    fix_wheels_inc,
    fix_image_inc,
    fix_pkg_info,
    fix_spec,
    fix_build_srpm_data,
)


def _iter_specs(root: Path) -> Iterable[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d != ".git"]
        for filename in filenames:
            if filename.endswith(".spec"):
                yield Path(dirpath) / filename


def _is_under(path: Path, directory: Path) -> bool:
    return directory == path or directory in path.parents


def _relocated_originals(plan: Plan) -> List[Path]:
    return [
        plan.repo_path(pair.source) / mapping.source_path
        for pair, mapping in plan.all_mappings()
    ]


def package_names(ctx: FixupContext, mapping: PathMapping) -> List[str]:
    """The component's package name followed by the sub-packages its specs declare.

    Must be read before :func:`fix_spec` renames ``%package -n`` lines.
    """
    names = [mapping.from_name]
    for own_spec in _component_specs(ctx, mapping):
        for extra in target_package_list(mapping.from_name, own_spec.read_text(encoding="utf-8")):
            if extra not in names:
                names.append(extra)
    return names


def collect_package_names(ctx: FixupContext) -> Dict[PathMapping, List[str]]:
    return {m: package_names(ctx, m) for m in ctx.group.mappings if m.renamed}


def fix_dependent_specs(
    ctx: FixupContext,
    donor: Optional[Path] = None,
    known_names: Optional[Mapping[PathMapping, List[str]]] = None,
) -> List[Path]:
    """Rewrite ``Requires``/``BuildRequires`` on renamed packages across the workspace.

    ``known_names`` holds the result of :func:`collect_package_names` taken
    before the staging fixers ran; without it the component's specs are
    read as they are now.

    Each affected spec is committed in its own repository on the modified
    branch, with a ``Depends-On`` pointing at the destination's config
    commit for this move.
    """
    donor = donor or ctx.source_root
    originals = _relocated_originals(ctx.plan)
    touched = []
    for mapping in ctx.group.mappings:
        if not mapping.renamed:
            continue
        own_dir = ctx.component_dir(mapping)
        if known_names and mapping in known_names:
            names = known_names[mapping]
        else:
            names = package_names(ctx, mapping)

        for spec in _iter_specs(ctx.plan.workspace):
            spec = spec.resolve()
            if _is_under(spec, own_dir.resolve()):
                log.debug("skip own spec %s", spec)
                continue
            if any(_is_under(spec, original) for original in originals):
                log.debug("skip relocated spec %s", spec)
                continue
            if _commit_dependent_spec(ctx, spec, names, mapping, donor):
                touched.append(spec)
    return touched


def _commit_dependent_spec(
    ctx: FixupContext,
    spec: Path,
    names: Sequence[str],
    mapping: PathMapping,
    donor: Path,
) -> bool:
    text = spec.read_text(encoding="utf-8")
    updated = text
    for name in names:
        if not re.search(f"Requires:[ ]*{re.escape(name)}", updated):
            continue
        renamed = mapping.to_name + name[len(mapping.from_name):]
        updated = _substitute_lines(updated, REQUIRES_RULES, name, renamed)
    if updated == text:
        return False

    repo: Optional[Repo] = gitops.find_repo(spec.parent)
    if repo is None:
        log.warning("spec %s is not inside a git repository; left unchanged", spec)
        return False
    repo_root = Path(repo.working_tree_dir)
    gitops.ensure_branch(repo, ctx.modified_branch)
    spec.write_text(updated, encoding="utf-8")
    repo.git.add(os.path.relpath(spec, repo_root))
    gitops.ensure_commit_hook(repo_root, donor)
    gitops.commit(
        repo,
        f"Fix spec's Requires due to rename of package '{mapping.from_name}' "
        f"to '{mapping.to_name}'",
    )
    ctx.linkage.depend_on(repo, ctx.group.pair, TO_CONFIG)
    return True
