"""Environment: the paired Project and Manifest of one directory."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from constants import Constants
from errors import ManifestCorruptError
from versioning.models import Tracking

from .manifest import MANIFEST_HEADER, Manifest, ManifestEntry
from .project import Project
from .toml_io import atomic_write_many, dumps_toml
from .usage import record_manifest_usage

logger = logging.getLogger(__name__)


@dataclass
class Environment:
    """In-memory copy of an environment directory.

    Loaded at the start of a command, mutated in memory, and written back
    only through ``persist``.
    """
    path: Path
    project: Project = field(default_factory=Project)
    manifest: Manifest = field(default_factory=Manifest)
    manifest_existed: bool = False

    @property
    def project_file(self) -> Path:
        return self.path / Constants.PROJECT_FILE

    @property
    def manifest_file(self) -> Path:
        return self.path / Constants.MANIFEST_FILE

    @classmethod
    def load(cls, path: Path) -> "Environment":
        """Read both files of ``path``.

        Raises:
            ManifestCorruptError: If either file is malformed, or the manifest
                names a direct dependency under a different identifier.
        """
        path = Path(path)
        project = Project.load(path / Constants.PROJECT_FILE)
        manifest_file = path / Constants.MANIFEST_FILE
        manifest = Manifest.load(manifest_file)
        for name, uuid in project.deps.items():
            entry = manifest.get(uuid)
            if entry is not None and entry.name != name:
                raise ManifestCorruptError(
                    str(manifest_file),
                    f"{uuid} is {name} in the project but {entry.name} in the manifest",
                    packages=[name],
                )
        logger.debug("Loaded environment %s (%s deps, %s manifest entries)", path, len(project.deps), len(manifest))
        return cls(path=path, project=project, manifest=manifest, manifest_existed=manifest_file.is_file())

    def overrides(self) -> Dict[str, ManifestEntry]:
        """Manifest entries that are pinned or tracking a path/repo."""
        return {u: e for u, e in self.manifest.entries.items() if e.is_fixed}

    def path_tracked(self) -> Dict[str, ManifestEntry]:
        return {u: e for u, e in self.manifest.entries.items() if e.tracking == Tracking.PATH}

    def is_instantiable(self) -> bool:
        """True if the manifest covers every direct dependency."""
        return self.manifest_existed and all(u in self.manifest for u in self.project.deps.values())

    def persist(self, depot: Optional[Path] = None) -> None:
        """Write Project and Manifest, then log the manifest for gc."""
        self.manifest.validate(str(self.manifest_file))
        atomic_write_many([
            (self.project_file, dumps_toml(self.project.to_dict())),
            (self.manifest_file, dumps_toml(self.manifest.to_dict(), header=MANIFEST_HEADER)),
        ])
        self.manifest_existed = True
        logger.info("Updated %s and %s", self.project_file, self.manifest_file)
        if depot is not None:
            record_manifest_usage(depot, self.manifest_file)


def locate_environment(
    target: Optional[str],
    depot: Path,
    shared: bool = False,
    current: Optional[Path] = None,
) -> Path:
    """Pick the directory an ``activate`` request refers to.

    * ``shared``: ``<depot>/environments/<target>``;
    * an existing path is used as is;
    * a dependency of the current project that tracks a path activates that path;
    * anything else is treated as a new path.
    """
    if shared:
        if not target:
            raise ValueError("A shared environment needs a name")
        return depot / Constants.DEPOT_ENVIRONMENTS_DIR / target
    if not target:
        env = os.environ.get(Constants.ENV_PROJECT)
        return Path(env).resolve() if env else Path.cwd()
    candidate = Path(os.path.expanduser(target))
    if candidate.exists():
        return candidate.resolve()
    if current is not None:
        try:
            env = Environment.load(current)
        except ManifestCorruptError:
            env = None
        if env is not None:
            uuid = env.project.deps.get(target)
            entry = env.manifest.get(uuid) if uuid else None
            if entry is not None and entry.path:
                return (current / entry.path).resolve()
    return candidate.resolve()
