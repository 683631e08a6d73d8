"""Catalog contract and an in-memory implementation.

The catalog answers two questions: which identifier a package name maps to,
and which versions of an identifier exist together with their per-version
compat requirements. Storage and transport belong to concrete subclasses.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from semantic_version import Version

from errors import ManifestCorruptError, SpecResolutionError
from versioning.models import RegistryEntry, VersionInfo
from versioning.ranges import VersionRange, parse_version

logger = logging.getLogger(__name__)


class Catalog(ABC):
    """Abstract package metadata source."""

    @abstractmethod
    def lookup(self, name: str) -> str:
        """Return the unique identifier registered for ``name``.

        Raises:
            SpecResolutionError: If the name is unknown or ambiguous.
        """

    @abstractmethod
    def entry(self, uuid: str) -> RegistryEntry:
        """Return the registry entry for ``uuid``.

        Raises:
            SpecResolutionError: If the identifier is unknown.
        """

    @abstractmethod
    def has(self, uuid: str) -> bool:
        """True if ``uuid`` is registered."""

    def versions(self, uuid: str) -> List[Tuple[Version, Dict[str, VersionRange]]]:
        """Sorted (version, requirements) pairs published for ``uuid``."""
        entry = self.entry(uuid)
        return [(v, dict(entry.versions[v].requires)) for v in entry.sorted_versions()]

    def name_of(self, uuid: str) -> str:
        """Registered name of ``uuid``."""
        return self.entry(uuid).name

    def refresh(self) -> None:
        """Reload metadata from the backing store. No-op by default."""


class InMemoryCatalog(Catalog):
    """Catalog backed by a list of RegistryEntry objects."""

    def __init__(self, entries: Iterable[RegistryEntry] = ()):
        self._entries: Dict[str, RegistryEntry] = {}
        self._by_name: Dict[str, List[str]] = {}
        for entry in entries:
            self.register(entry)

    def register(self, entry: RegistryEntry) -> None:
        """Add or replace one entry."""
        previous = self._entries.get(entry.uuid)
        if previous is not None and previous.name != entry.name:
            self._by_name[previous.name].remove(entry.uuid)
        self._entries[entry.uuid] = entry
        uuids = self._by_name.setdefault(entry.name, [])
        if entry.uuid not in uuids:
            uuids.append(entry.uuid)
            uuids.sort()

    def lookup(self, name: str) -> str:
        uuids = self._by_name.get(name, [])
        if not uuids:
            raise SpecResolutionError(f"Package {name} not found in any registry", packages=[name])
        if len(uuids) > 1:
            raise SpecResolutionError(
                f"Package name {name} is ambiguous: matches {', '.join(uuids)}; specify the uuid",
                packages=[name],
            )
        return uuids[0]

    def entry(self, uuid: str) -> RegistryEntry:
        entry = self._entries.get(uuid)
        if entry is None:
            raise SpecResolutionError(f"Package identifier {uuid} not found in any registry", packages=[uuid])
        return entry

    def has(self, uuid: str) -> bool:
        return uuid in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def entries_from_index(data: Mapping[str, Any], source: str = "<index>") -> List[RegistryEntry]:
    """Build registry entries from a decoded JSON index.

    Expected shape::

        {"packages": {"<uuid>": {"name": "Example", "repo": "...",
            "versions": {"1.2.0": {"hash": "...", "url": "...",
                                    "requires": {"<uuid>": "1.0"}}}}}}

    Raises:
        ManifestCorruptError: If the index does not have the expected shape.
    """
    packages = data.get("packages") if isinstance(data, Mapping) else None
    if not isinstance(packages, Mapping):
        raise ManifestCorruptError(source, "registry index has no 'packages' table")

    entries: List[RegistryEntry] = []
    for uuid in sorted(packages):
        pkg = packages[uuid]
        if not isinstance(pkg, Mapping) or not pkg.get("name"):
            raise ManifestCorruptError(source, f"registry entry {uuid} has no name", packages=[uuid])
        versions: Dict[Version, VersionInfo] = {}
        for raw_version, meta in (pkg.get("versions") or {}).items():
            meta = meta or {}
            try:
                version = parse_version(raw_version)
                requires = {
                    dep: VersionRange(str(rng)) for dep, rng in (meta.get("requires") or {}).items()
                }
            except ValueError as exc:
                raise ManifestCorruptError(source, f"{pkg['name']}@{raw_version}: {exc}", packages=[uuid]) from exc
            versions[version] = VersionInfo(
                version=version,
                hash=str(meta.get("hash", "")),
                requires=requires,
                source_url=meta.get("url"),
                yanked=bool(meta.get("yanked", False)),
            )
        entries.append(RegistryEntry(uuid=uuid, name=str(pkg["name"]), versions=versions, repo=pkg.get("repo")))
    logger.debug("Loaded %s registry entries from %s", len(entries), source)
    return entries
