"""Manifest file: the resolved-state record of the dependency closure."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from semantic_version import Version

from errors import ManifestCorruptError
from versioning.models import Tracking
from versioning.ranges import parse_version

from .toml_io import read_toml, write_toml

MANIFEST_HEADER = "This file is machine-generated - editing it directly is not advised"


@dataclass
class ManifestEntry:
    """One resolved package."""
    name: str
    uuid: str
    version: Optional[str] = None
    tree_hash: Optional[str] = None
    path: Optional[str] = None
    repo_url: Optional[str] = None
    repo_rev: Optional[str] = None
    pinned: bool = False
    deps: List[str] = field(default_factory=list)

    @property
    def tracking(self) -> Tracking:
        if self.path:
            return Tracking.PATH
        if self.repo_url:
            return Tracking.REPO
        return Tracking.REGISTRY

    @property
    def parsed_version(self) -> Optional[Version]:
        return parse_version(self.version) if self.version else None

    @property
    def is_fixed(self) -> bool:
        """Pinned and source-tracked entries are excluded from version search."""
        return self.pinned or self.tracking != Tracking.REGISTRY

    def same_content(self, other: "ManifestEntry") -> bool:
        """True when both entries materialize to the same files."""
        return (
            self.tree_hash == other.tree_hash
            and self.path == other.path
            and self.repo_url == other.repo_url
            and self.version == other.version
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "uuid": self.uuid}
        for key in ("version", "tree_hash", "path", "repo_url", "repo_rev"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.pinned:
            data["pinned"] = True
        if self.deps:
            data["deps"] = sorted(self.deps)
        return data


class Manifest:
    """Ordered collection of manifest entries keyed by identifier."""

    def __init__(self, entries: Iterable[ManifestEntry] = ()):
        self.entries: Dict[str, ManifestEntry] = {}
        for entry in entries:
            self.entries[entry.uuid] = entry

    @classmethod
    def load(cls, path: Path) -> "Manifest":
        """Read ``path``; a missing file yields an empty manifest.

        Raises:
            ManifestCorruptError: On parse errors or invariant violations.
        """
        data = read_toml(path)
        if data is None:
            return cls()
        return cls.from_dict(data, source=str(path))

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: str = "<manifest>") -> "Manifest":
        raw_entries = data.get("package", [])
        if not isinstance(raw_entries, list):
            raise ManifestCorruptError(source, "'package' must be an array of tables")
        manifest = cls()
        for raw in raw_entries:
            if not isinstance(raw, dict) or not raw.get("name") or not raw.get("uuid"):
                raise ManifestCorruptError(source, f"entry without name/uuid: {raw!r}")
            entry = ManifestEntry(
                name=str(raw["name"]),
                uuid=str(raw["uuid"]),
                version=raw.get("version"),
                tree_hash=raw.get("tree_hash"),
                path=raw.get("path"),
                repo_url=raw.get("repo_url"),
                repo_rev=raw.get("repo_rev"),
                pinned=bool(raw.get("pinned", False)),
                deps=[str(d) for d in raw.get("deps", [])],
            )
            if entry.uuid in manifest.entries:
                raise ManifestCorruptError(source, f"identifier {entry.uuid} listed twice", packages=[entry.name])
            manifest.entries[entry.uuid] = entry
        manifest.validate(source)
        return manifest

    def validate(self, source: str = "<manifest>") -> None:
        """Check structural invariants.

        Raises:
            ManifestCorruptError: On the first violated invariant.
        """
        for entry in self.entries.values():
            if entry.tracking == Tracking.REGISTRY:
                if not entry.version or not entry.tree_hash:
                    raise ManifestCorruptError(
                        source, f"{entry.name} has neither a version+hash nor a path", packages=[entry.name]
                    )
            if entry.version:
                try:
                    parse_version(entry.version)
                except ValueError as exc:
                    raise ManifestCorruptError(source, f"{entry.name}: {exc}", packages=[entry.name]) from exc
            for dep in entry.deps:
                if dep not in self.entries:
                    raise ManifestCorruptError(
                        source, f"{entry.name} depends on {dep} which is not in the manifest", packages=[entry.name]
                    )

    def to_dict(self) -> Dict[str, Any]:
        ordered = sorted(self.entries.values(), key=lambda e: (e.name, e.uuid))
        return {"package": [e.to_dict() for e in ordered]}

    def write(self, path: Path) -> None:
        """Persist atomically."""
        write_toml(path, self.to_dict(), header=MANIFEST_HEADER)

    def copy(self) -> "Manifest":
        return Manifest(copy.deepcopy(list(self.entries.values())))

    def get(self, uuid: str) -> Optional[ManifestEntry]:
        return self.entries.get(uuid)

    def find_by_name(self, name: str) -> List[ManifestEntry]:
        return [e for e in self.entries.values() if e.name == name]

    def closure(self, roots: Iterable[str]) -> Set[str]:
        """Identifiers reachable from ``roots`` through manifest deps."""
        seen: Set[str] = set()
        stack = [r for r in roots if r in self.entries]
        while stack:
            uuid = stack.pop()
            if uuid in seen:
                continue
            seen.add(uuid)
            stack.extend(d for d in self.entries[uuid].deps if d not in seen)
        return seen

    def dependents(self, uuid: str) -> Set[str]:
        """Identifiers that depend on ``uuid``, directly or transitively."""
        found: Set[str] = set()
        frontier = [uuid]
        while frontier:
            target = frontier.pop()
            for entry in self.entries.values():
                if target in entry.deps and entry.uuid not in found and entry.uuid != uuid:
                    found.add(entry.uuid)
                    frontier.append(entry.uuid)
        return found

    def topological_order(self, uuids: Optional[Iterable[str]] = None) -> List[str]:
        """Dependencies before dependents; cycles are broken by name order."""
        selected = set(self.entries) if uuids is None else set(uuids) & set(self.entries)
        order: List[str] = []
        state: Dict[str, int] = {}

        def visit(start: str) -> None:
            stack = [(start, iter(sorted(d for d in self.entries[start].deps if d in selected)))]
            state[start] = 1
            while stack:
                node, children = stack[-1]
                child = next(children, None)
                if child is None:
                    stack.pop()
                    state[node] = 2
                    order.append(node)
                elif child not in state:
                    state[child] = 1
                    stack.append((child, iter(sorted(d for d in self.entries[child].deps if d in selected))))

        for uuid in sorted(selected, key=lambda u: (self.entries[u].name, u)):
            if uuid not in state:
                visit(uuid)
        return order

    def __contains__(self, uuid: object) -> bool:
        return uuid in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Manifest):
            return NotImplemented
        return self.to_dict() == other.to_dict()
