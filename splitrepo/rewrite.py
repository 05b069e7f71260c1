"""
Typed path rewrite rules and the engine that evaluates them.

Every file recorded in a destination repository's history is renamed by
running its path through an ordered list of rules.  Rules are applied in
sequence, each at most once, and each rule sees the path produced by the
rules before it.  That ordering is what makes the "self-named" follow-up
rules work: the first rule moves ``foo/foo/x`` to ``bar/foo/x`` and the
follow-up rule then moves ``bar/foo/`` to ``bar/bar/``.

Four rule kinds exist:

* :class:`ReplacePrefix` – ``old/…`` becomes ``new/…``.
* :class:`StripPrefix` – ``old/…`` becomes ``…`` (moving into the root).
* :class:`InsertPrefix` – ``…`` becomes ``new/…`` (moving the root).
* :class:`RenameFile` – one exact path becomes another.

Rules serialise to plain dictionaries so they can be handed to
:mod:`splitrepo.index_filter`, which runs inside ``git filter-branch``.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Type

__all__ = [
    "RewriteRule",
    "ReplacePrefix",
    "StripPrefix",
    "InsertPrefix",
    "RenameFile",
    "RewriteEngine",
    "rules_for_move",
    "rule_from_dict",
    "ROOT",
]

ROOT = "."


def _dir_prefix(path: str) -> str:
    return path.rstrip("/") + "/"


@dataclass(frozen=True)
class RewriteRule:
    """Base class; subclasses implement :meth:`apply`."""

    kind = ""

    def apply(self, path: str) -> Optional[str]:
        """Return the rewritten path, or ``None`` when the rule does not match."""
        raise NotImplementedError

    def to_dict(self) -> Dict[str, str]:
        data = {"kind": self.kind}
        data.update(self.__dict__)
        return data


@dataclass(frozen=True)
class ReplacePrefix(RewriteRule):
    old: str
    new: str

    kind = "replace"

    def apply(self, path: str) -> Optional[str]:
        old = _dir_prefix(self.old)
        if path.startswith(old):
            return _dir_prefix(self.new) + path[len(old):]
        # A moved path may be a single file rather than a directory
        if path == self.old.rstrip("/"):
            return self.new.rstrip("/")
        return None


@dataclass(frozen=True)
class StripPrefix(RewriteRule):
    old: str

    kind = "strip"

    def apply(self, path: str) -> Optional[str]:
        old = _dir_prefix(self.old)
        if path.startswith(old):
            return path[len(old):]
        if path == self.old.rstrip("/"):
            return posixpath.basename(path)
        return None


@dataclass(frozen=True)
class InsertPrefix(RewriteRule):
    new: str

    kind = "insert"

    def apply(self, path: str) -> Optional[str]:
        return _dir_prefix(self.new) + path


@dataclass(frozen=True)
class RenameFile(RewriteRule):
    old: str
    new: str

    kind = "rename"

    def apply(self, path: str) -> Optional[str]:
        if path == self.old:
            return self.new
        return None


_RULE_TYPES: Dict[str, Type[RewriteRule]] = {
    cls.kind: cls for cls in (ReplacePrefix, StripPrefix, InsertPrefix, RenameFile)
}


def rule_from_dict(data: Dict[str, str]) -> RewriteRule:
    """Rebuild a rule from the output of :meth:`RewriteRule.to_dict`."""
    fields = dict(data)
    kind = fields.pop("kind", None)
    try:
        cls = _RULE_TYPES[kind]
    except KeyError:
        raise ValueError(f"Unknown rewrite rule kind {kind!r}") from None
    return cls(**fields)


class RewriteEngine:
    """Apply an ordered rule list to repository-relative paths."""

    def __init__(self, rules: Iterable[RewriteRule]) -> None:
        self.rules: List[RewriteRule] = list(rules)

    def __bool__(self) -> bool:
        return bool(self.rules)

    def rewrite(self, path: str) -> str:
        for rule in self.rules:
            result = rule.apply(path)
            if result is not None:
                path = result
        return path

    def to_json_payload(self) -> List[Dict[str, str]]:
        return [rule.to_dict() for rule in self.rules]

    @classmethod
    def from_json_payload(cls, payload: Sequence[Dict[str, str]]) -> "RewriteEngine":
        return cls(rule_from_dict(item) for item in payload)


def rules_for_move(
    source_root: Path, source_path: str, dest_path: str, distro: str
) -> List[RewriteRule]:
    """Return the rules that relocate ``source_path`` to ``dest_path``.

    ``source_root`` is the on-disk source repository.  It is consulted for
    the self-named layout conventions, where a component keeps its build
    descriptors in a directory (or spec file) named after the component:

    * ``foo/foo/``
    * ``foo/<distro>/foo/``
    * ``foo/<distro>/foo.spec``

    When such a path exists, a follow-up rule renames it after the
    component's new basename.  The follow-up rules match the path *after*
    the primary rule has already run.

    Moving the repository root into itself produces no rules.
    """
    if source_path == ROOT:
        if dest_path == ROOT:
            return []
        return [InsertPrefix(dest_path)]
    if dest_path == ROOT:
        return [StripPrefix(source_path)]

    rules: List[RewriteRule] = [ReplacePrefix(source_path, dest_path)]
    old_name = posixpath.basename(source_path.rstrip("/"))
    new_name = posixpath.basename(dest_path.rstrip("/"))
    if old_name == new_name:
        return rules

    source_dir = source_root / source_path
    if (source_dir / old_name).is_dir():
        rules.append(
            ReplacePrefix(
                posixpath.join(dest_path, old_name),
                posixpath.join(dest_path, new_name),
            )
        )
    if (source_dir / distro / old_name).is_dir():
        rules.append(
            ReplacePrefix(
                posixpath.join(dest_path, distro, old_name),
                posixpath.join(dest_path, distro, new_name),
            )
        )
    if (source_dir / distro / f"{old_name}.spec").is_file():
        rules.append(
            RenameFile(
                posixpath.join(dest_path, distro, f"{old_name}.spec"),
                posixpath.join(dest_path, distro, f"{new_name}.spec"),
            )
        )
    return rules
