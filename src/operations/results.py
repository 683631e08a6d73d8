"""Typed results returned by orchestrator commands."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from environment.manifest import Manifest, ManifestEntry
from errors import DepEnvError
from versioning.models import Tracking


class ChangeKind(Enum):
    ADDED = "+"
    REMOVED = "-"
    UPGRADED = "↑"
    DOWNGRADED = "↓"
    CHANGED = "~"


def entry_label(entry: ManifestEntry) -> str:
    """Version, path or repo revision, whichever identifies the entry."""
    if entry.tracking == Tracking.PATH:
        return f"[{entry.path}]"
    if entry.tracking == Tracking.REPO:
        return f"{entry.version or ''}#{entry.repo_rev or 'HEAD'} ({entry.repo_url})".lstrip()
    return f"v{entry.version}"


@dataclass
class PackageChange:
    """Difference of one package between two manifests."""
    name: str
    uuid: str
    kind: ChangeKind
    old: Optional[ManifestEntry] = None
    new: Optional[ManifestEntry] = None

    def describe(self) -> str:
        if self.kind == ChangeKind.ADDED:
            return f"{self.kind.value} {self.name} {entry_label(self.new)}"
        if self.kind == ChangeKind.REMOVED:
            return f"{self.kind.value} {self.name} {entry_label(self.old)}"
        return f"{self.kind.value} {self.name} {entry_label(self.old)} ⇒ {entry_label(self.new)}"


def diff_manifests(old: Manifest, new: Manifest) -> List[PackageChange]:
    """Changes from ``old`` to ``new`` ordered by name then identifier."""
    changes: List[PackageChange] = []
    for uuid in set(old.entries) | set(new.entries):
        before = old.get(uuid)
        after = new.get(uuid)
        if before is None:
            changes.append(PackageChange(after.name, uuid, ChangeKind.ADDED, new=after))
        elif after is None:
            changes.append(PackageChange(before.name, uuid, ChangeKind.REMOVED, old=before))
        elif not before.same_content(after) or before.pinned != after.pinned:
            kind = ChangeKind.CHANGED
            old_version, new_version = before.parsed_version, after.parsed_version
            if before.tracking == after.tracking == Tracking.REGISTRY and old_version and new_version:
                if new_version > old_version:
                    kind = ChangeKind.UPGRADED
                elif new_version < old_version:
                    kind = ChangeKind.DOWNGRADED
            changes.append(PackageChange(after.name, uuid, kind, old=before, new=after))
    changes.sort(key=lambda c: (c.name, c.uuid))
    return changes


@dataclass
class StatusLine:
    """One row of a status report."""
    name: str
    uuid: str
    label: str
    pinned: bool = False
    installed: bool = True
    direct: bool = True

    def render(self) -> str:
        marks = ""
        if self.pinned:
            marks += " ⚲"
        if not self.installed:
            marks += " (not installed)"
        return f"[{self.uuid[:8]}] {self.name} {self.label}{marks}"


@dataclass
class CommandResult:
    """Outcome of one command.

    ``errors`` aggregates every expected failure; ``ok`` is False as soon as
    one is recorded. ``data`` holds command specific payloads such as the
    ``installed`` mapping or the activated path.
    """
    command: str
    ok: bool = True
    changes: List[PackageChange] = field(default_factory=list)
    errors: List[DepEnvError] = field(default_factory=list)
    manifest: Optional[Manifest] = None
    report: List[StatusLine] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)

    def add_error(self, error: DepEnvError) -> None:
        self.errors.append(error)
        self.ok = False

    def summary(self) -> List[str]:
        """Printable lines: changes first, then errors."""
        lines = [c.describe() for c in self.changes]
        lines.extend(f"ERROR: {e}" for e in self.errors)
        return lines
