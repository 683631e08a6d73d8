"""Garbage collection of materialized packages in the depot."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Set

from constants import Constants
from environment.manifest import Manifest
from environment.usage import known_manifests
from versioning.models import Tracking

from .materialize import version_slug

logger = logging.getLogger(__name__)


@dataclass
class GcReport:
    """What a collection pass found and removed."""
    manifests: List[Path] = field(default_factory=list)
    removed: List[Path] = field(default_factory=list)
    kept: int = 0


def referenced_slugs(manifests: List[Path]) -> Set[Path]:
    """Relative ``<name>/<slug>`` paths referenced by any readable manifest."""
    referenced: Set[Path] = set()
    for manifest_path in manifests:
        manifest = Manifest.load(manifest_path)
        for entry in manifest.entries.values():
            if entry.tracking == Tracking.PATH or not entry.tree_hash:
                continue
            referenced.add(Path(entry.name) / version_slug(entry.uuid, entry.tree_hash))
    return referenced


def tracked_paths(manifests: List[Path]) -> Set[Path]:
    """Absolute locations of path-tracked packages in any readable manifest."""
    paths: Set[Path] = set()
    for manifest_path in manifests:
        manifest = Manifest.load(manifest_path)
        for entry in manifest.entries.values():
            if entry.tracking == Tracking.PATH:
                paths.add((manifest_path.parent / entry.path).resolve())
    return paths


def _overlaps(directory: Path, protected: Set[Path]) -> bool:
    resolved = directory.resolve()
    return any(resolved == p or resolved in p.parents or p in resolved.parents for p in protected)


def collect_garbage(depot: Path, dry_run: bool = False) -> GcReport:
    """Delete ``packages/<name>/<slug>`` directories no known manifest uses.

    Path-tracked locations are never deleted, even when a checkout sits
    inside the package store. Dead entries are pruned from the usage log
    first.

    Raises:
        ManifestCorruptError: If a logged manifest cannot be read; nothing is
            deleted in that case.
    """
    report = GcReport(manifests=known_manifests(depot, prune=not dry_run))
    referenced = referenced_slugs(report.manifests)
    protected = tracked_paths(report.manifests)
    packages_dir = depot / Constants.DEPOT_PACKAGES_DIR
    if not packages_dir.is_dir():
        return report

    for name_dir in sorted(p for p in packages_dir.iterdir() if p.is_dir() and not p.name.startswith(".")):
        for slug_dir in sorted(p for p in name_dir.iterdir() if p.is_dir() and not p.name.startswith(".")):
            if Path(name_dir.name) / slug_dir.name in referenced or _overlaps(slug_dir, protected):
                report.kept += 1
                continue
            report.removed.append(slug_dir)
            if not dry_run:
                shutil.rmtree(slug_dir)
                logger.info("Removed %s", slug_dir)
        if not dry_run and not any(name_dir.iterdir()):
            name_dir.rmdir()
    logger.info(
        "Garbage collection: %s manifests, %s packages kept, %s removed",
        len(report.manifests), report.kept, len(report.removed),
    )
    return report
