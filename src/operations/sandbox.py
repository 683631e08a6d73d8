"""Isolated environments for running lifecycle scripts.

A sandbox is a temporary directory holding a Project and Manifest that cover
only the closure of the package being built or tested. Scripts see it
through environment variables instead of the user's environment.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from constants import Constants
from environment.manifest import MANIFEST_HEADER, Manifest
from environment.project import Project
from environment.toml_io import atomic_write_many, dumps_toml

logger = logging.getLogger(__name__)


@dataclass
class SandboxConfig:
    """Files and environment variables exposed to one script run."""
    path: Path
    env_vars: Dict[str, str] = field(default_factory=dict)
    load_path: List[str] = field(default_factory=list)

    def environ(self, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """``base`` (default ``os.environ``) overlaid with the sandbox variables."""
        env = dict(os.environ if base is None else base)
        env.update(self.env_vars)
        return env


def sandbox_manifest(manifest: Manifest, roots: Iterable[str]) -> Manifest:
    """Subset of ``manifest`` reachable from ``roots``."""
    keep = manifest.closure(roots)
    return Manifest(e for u, e in manifest.copy().entries.items() if u in keep)


@contextmanager
def isolated_environment(
    manifest: Manifest,
    roots: Dict[str, str],
    package_paths: Dict[str, Path],
    coverage: bool = False,
    name: Optional[str] = None,
) -> Iterator[SandboxConfig]:
    """Create a throwaway environment for ``roots`` and remove it afterwards.

    Args:
        manifest: resolved state holding at least the closure of ``roots``.
        roots: direct dependencies of the sandbox, identifier -> name.
        package_paths: on-disk location of every materialized package.
        coverage: exported to scripts as ``DEPENV_COVERAGE``.
        name: label used for the temporary directory.
    """
    subset = sandbox_manifest(manifest, roots)
    tmp = Path(tempfile.mkdtemp(prefix=f"depenv-{name or 'sandbox'}-"))
    try:
        project = Project(name=name, deps={n: u for u, n in sorted(roots.items())})
        atomic_write_many([
            (tmp / Constants.PROJECT_FILE, dumps_toml(project.to_dict())),
            (tmp / Constants.MANIFEST_FILE, dumps_toml(subset.to_dict(), header=MANIFEST_HEADER)),
        ])
        load_path = [str(package_paths[u]) for u in subset.topological_order() if u in package_paths]
        config = SandboxConfig(
            path=tmp,
            env_vars={
                Constants.ENV_PROJECT: str(tmp),
                Constants.ENV_LOAD_PATH: os.pathsep.join(load_path),
                Constants.ENV_COVERAGE: "1" if coverage else "0",
            },
            load_path=load_path,
        )
        logger.debug("Sandbox %s holds %s packages", tmp, len(subset))
        yield config
    finally:
        shutil.rmtree(tmp, ignore_errors=True)
