"""Data models for package requests and catalog metadata."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional

from semantic_version import Version

if TYPE_CHECKING:  # pragma: no cover
    from versioning.ranges import VersionRange


class PackageMode(Enum):
    """Whether a command targets the project (direct deps) or the whole manifest."""
    PROJECT = "project"
    MANIFEST = "manifest"


class UpgradeLevel(Enum):
    """How far a package may move away from its previously resolved version."""
    FIXED = 0
    PATCH = 1
    MINOR = 2
    MAJOR = 3

    @classmethod
    def from_name(cls, name: str) -> "UpgradeLevel":
        """Return the level matching a case-insensitive name."""
        try:
            return cls[str(name).strip().upper()]
        except KeyError as exc:
            raise ValueError(f"Unknown upgrade level: {name}") from exc


class Tracking(Enum):
    """Where a resolved package comes from."""
    REGISTRY = "registry"
    PATH = "path"
    REPO = "repo"


@dataclass
class PackageSpec:
    """A package named by a command.

    At least one of ``name``, ``uuid``, ``url`` or ``path`` must be given.
    ``version`` is a compat-range string restricting this command only.
    """
    name: Optional[str] = None
    uuid: Optional[str] = None
    version: Optional[str] = None
    url: Optional[str] = None
    path: Optional[str] = None
    rev: Optional[str] = None
    mode: PackageMode = PackageMode.PROJECT
    level: UpgradeLevel = UpgradeLevel.MAJOR

    def __post_init__(self) -> None:
        if not (self.name or self.uuid or self.url or self.path):
            raise ValueError("PackageSpec needs a name, uuid, url or path")

    @property
    def has_source(self) -> bool:
        """True when the request points at a url or local path."""
        return bool(self.url or self.path)

    def label(self) -> str:
        """Human readable identification for log lines and errors."""
        if self.name and self.uuid:
            return f"{self.name} [{self.uuid[:8]}]"
        return self.name or self.uuid or self.path or self.url or "<unnamed>"


@dataclass
class VersionInfo:
    """One published version of a registry package."""
    version: Version
    hash: str
    requires: Dict[str, "VersionRange"] = field(default_factory=dict)
    source_url: Optional[str] = None
    yanked: bool = False


@dataclass
class RegistryEntry:
    """Catalog answer for one package identifier."""
    uuid: str
    name: str
    versions: Dict[Version, VersionInfo] = field(default_factory=dict)
    repo: Optional[str] = None

    def sorted_versions(self) -> List[Version]:
        """Published, non-yanked versions in ascending order."""
        return sorted(v for v, info in self.versions.items() if not info.yanked)

    def info(self, version: Version) -> Optional[VersionInfo]:
        """Metadata for ``version`` or None if it was never published."""
        return self.versions.get(version)
