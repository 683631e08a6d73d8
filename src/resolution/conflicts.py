"""Conflict records produced when resolution runs out of candidates."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

from semantic_version import Version

from .graph import Constraint

_MAX_LISTED_VERSIONS = 6


def format_versions(versions: Sequence[Version]) -> str:
    """Compact rendering of a version list for reports."""
    if not versions:
        return "no versions"
    if len(versions) <= _MAX_LISTED_VERSIONS:
        return ", ".join(str(v) for v in versions)
    return f"{versions[0]} to {versions[-1]} ({len(versions)} versions)"


def minimal_core(published: Sequence[Version], constraints: Sequence[Constraint]) -> List[Constraint]:
    """Drop constraints that are not needed to empty ``published``.

    Greedy deletion: a constraint is removed when the remaining ones still
    leave no version. The result keeps the original order.
    """
    kept = list(constraints)
    for constraint in list(constraints):
        trial = [c for c in kept if c is not constraint]
        remaining = list(published)
        for other in trial:
            remaining = other.range.filter(remaining)
        if not remaining:
            kept = trial
    return kept


@dataclass
class Conflict:
    """The package whose candidate set became empty and why.

    ``constraints`` is the minimal set of ranges that together exclude every
    published version; ``chain`` lists the decisions in force when the
    conflict was found.
    """
    uuid: str
    name: str
    published: List[Version]
    constraints: List[Constraint]
    chain: List[Tuple[str, Version]] = field(default_factory=list)

    @property
    def ranges(self) -> List[str]:
        return [str(c.range) for c in self.constraints]

    @property
    def sources(self) -> List[str]:
        return [c.label for c in self.constraints]

    def describe(self) -> str:
        """Multi-line, human readable explanation."""
        lines = [f"Unsatisfiable requirements detected for package {self.name} [{self.uuid[:8]}]:"]
        lines.append(f" {self.name} [{self.uuid[:8]}] log:")
        lines.append(f" ├─possible versions are: {format_versions(self.published)}")
        remaining = list(self.published)
        for constraint in self.constraints:
            remaining = constraint.range.filter(remaining)
            lines.append(
                f" ├─restricted to versions {constraint.range} by {constraint.label}, "
                f"leaving {format_versions(remaining)}"
            )
        lines.append(" └─no versions left")
        if self.chain:
            lines.append("while trying: " + " -> ".join(f"{name}@{version}" for name, version in self.chain))
        return "\n".join(lines)
