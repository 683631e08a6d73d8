"""Shared fixtures: a small catalog, an in-memory fetcher and a recording script runner."""

import hashlib
import os
import shutil
import threading
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

import pytest
import tomli_w

from cli_config import Settings
from constants import Constants
from environment.manifest import Manifest, ManifestEntry
from errors import MaterializationError
from operations.build import BuildOutcome, BuildTask, ScriptRunner
from operations.context import Context
from operations.materialize import Fetcher, tree_hash, version_slug
from operations.orchestrator import Orchestrator
from registry.catalog import InMemoryCatalog
from versioning.models import RegistryEntry, Tracking, VersionInfo
from versioning.ranges import VersionRange, parse_version

A = "0a000000-0000-4000-8000-00000000000a"
B = "0b000000-0000-4000-8000-00000000000b"
C = "0c000000-0000-4000-8000-00000000000c"
D = "0d000000-0000-4000-8000-00000000000d"
P = "0e000000-0000-4000-8000-00000000000e"
T = "0f000000-0000-4000-8000-00000000000f"
X = "10000000-0000-4000-8000-000000000010"


def fake_hash(name: str, version: str) -> str:
    return hashlib.sha256(f"{name}-{version}".encode()).hexdigest()


def registry_entry(uuid: str, name: str, versions: Dict[str, Dict[str, str]], yanked: Iterable[str] = ()) -> RegistryEntry:
    """Build a RegistryEntry from ``{"1.0.0": {dep_uuid: "range"}}``."""
    yanked = set(yanked)
    infos = {}
    for raw, requires in versions.items():
        version = parse_version(raw)
        infos[version] = VersionInfo(
            version=version,
            hash=fake_hash(name, raw),
            requires={dep: VersionRange(rng) for dep, rng in requires.items()},
            source_url=f"https://example.invalid/{name}-{raw}.tar.gz",
            yanked=raw in yanked,
        )
    return RegistryEntry(uuid=uuid, name=name, versions=infos, repo=f"https://example.invalid/{name}.git")


def standard_entries():
    """Catalog used across resolver and orchestrator tests.

    * A: 1.1.0 1.2.0 1.2.5 1.3.0 2.0.0, no deps
    * B: 1.0.0 and 1.1.0 need A "1"; 2.0.0 needs A "2"
    * C: 1.0.0 needs B "1", 1.1.0 needs B "1.1"
    * D: 1.0.0 2.0.0, no deps (used for develop)
    * P: 1.0.0 needs X "2"
    * T: 1.0.0, no deps (test extra)
    * X: 1.0.0 1.5.0 2.0.0 2.5.0
    """
    return [
        registry_entry(A, "A", {"1.1.0": {}, "1.2.0": {}, "1.2.5": {}, "1.3.0": {}, "2.0.0": {}}),
        registry_entry(B, "B", {"1.0.0": {A: "1"}, "1.1.0": {A: "1"}, "2.0.0": {A: "2"}}),
        registry_entry(C, "C", {"1.0.0": {B: "1"}, "1.1.0": {B: "1.1"}}),
        registry_entry(D, "D", {"1.0.0": {}, "2.0.0": {}}),
        registry_entry(P, "P", {"1.0.0": {X: "2"}}),
        registry_entry(T, "T", {"1.0.0": {}}),
        registry_entry(X, "X", {"1.0.0": {}, "1.5.0": {}, "2.0.0": {}, "2.5.0": {}}),
    ]


class CountingCatalog(InMemoryCatalog):
    """InMemoryCatalog that counts refreshes."""

    def __init__(self, entries=()):
        super().__init__(entries)
        self.refreshes = 0

    def refresh(self) -> None:
        self.refreshes += 1


class FakeFetcher(Fetcher):
    """Fetcher that creates package directories instead of downloading.

    ``scripts`` maps package names to the ``[scripts]`` table written into
    the installed package's Project.toml.
    """

    def __init__(self, root: Path, scripts: Optional[Dict[str, Dict[str, str]]] = None, failing: Iterable[str] = ()):
        self.root = Path(root)
        self.scripts = scripts or {}
        self.failing = set(failing)
        self.calls = []
        self._lock = threading.Lock()
        self._staged = 0

    def package_path(self, entry: ManifestEntry, base: Path) -> Path:
        if entry.tracking == Tracking.PATH:
            return (Path(base) / entry.path).resolve()
        return self.root / "packages" / entry.name / version_slug(entry.uuid, entry.tree_hash or "")

    def materialize(self, entry: ManifestEntry, source_url: Optional[str] = None) -> Path:
        with self._lock:
            self.calls.append(("materialize", entry.name, entry.version))
        if entry.name in self.failing:
            raise MaterializationError(entry.name, "simulated download failure")
        target = self.package_path(entry, self.root)
        target.mkdir(parents=True, exist_ok=True)
        data = {"name": entry.name, "uuid": entry.uuid, "version": entry.version or "0.0.0"}
        if entry.name in self.scripts:
            data["scripts"] = self.scripts[entry.name]
        (target / Constants.PROJECT_FILE).write_text(tomli_w.dumps(data), encoding="utf-8")
        return target

    def materialize_source(self, url_or_path: str, rev: Optional[str] = None) -> Path:
        with self._lock:
            self.calls.append(("source", url_or_path, rev))
            self._staged += 1
            staging = self.root / "staging" / str(self._staged)
        shutil.copytree(url_or_path, staging)
        return staging

    def install_snapshot(self, staging: Path, name: str, uuid: str) -> Tuple[Path, str]:
        content_hash = tree_hash(staging)
        target = self.root / "packages" / name / version_slug(uuid, content_hash)
        if target.exists():
            shutil.rmtree(staging)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(staging, target)
        return target, content_hash

    def clone_to(self, url: str, dest: Path, rev: Optional[str] = None) -> Path:
        with self._lock:
            self.calls.append(("clone", url, rev))
        shutil.copytree(url, dest)
        return dest


class RecordingRunner(ScriptRunner):
    """Script runner that records invocations instead of spawning processes."""

    def __init__(self, log_dir: Path, failing: Iterable[str] = ()):
        super().__init__(log_dir)
        self.failing = set(failing)
        self.runs = []
        self.sandboxes = {}
        self._lock = threading.Lock()

    def run(self, task: BuildTask, phase: str = Constants.SCRIPT_BUILD) -> BuildOutcome:
        project_dir = task.env.get(Constants.ENV_PROJECT)
        manifest = Manifest.load(Path(project_dir) / Constants.MANIFEST_FILE) if project_dir else None
        with self._lock:
            self.runs.append((phase, task.name))
            self.sandboxes[(phase, task.name)] = {
                "env": {k: v for k, v in task.env.items() if k.startswith("DEPENV_")},
                "manifest": manifest,
            }
        return BuildOutcome(uuid=task.uuid, returncode=1 if task.name in self.failing else 0)


def write_project(env_dir: Path, data: dict) -> Path:
    env_dir.mkdir(parents=True, exist_ok=True)
    path = env_dir / Constants.PROJECT_FILE
    path.write_text(tomli_w.dumps(data), encoding="utf-8")
    return path


def registry_manifest_entry(catalog, uuid: str, version: str, deps=(), pinned=False) -> ManifestEntry:
    entry = catalog.entry(uuid)
    info = entry.info(parse_version(version))
    return ManifestEntry(name=entry.name, uuid=uuid, version=version, tree_hash=info.hash, deps=list(deps), pinned=pinned)


def write_manifest(env_dir: Path, entries) -> Path:
    path = env_dir / Constants.MANIFEST_FILE
    Manifest(entries).write(path)
    return path


@pytest.fixture
def catalog():
    return CountingCatalog(standard_entries())


@pytest.fixture
def env_dir(tmp_path):
    path = tmp_path / "env"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path):
    return Settings(depot=tmp_path / "depot", devdir=tmp_path / "devdir", max_workers=1, lock_blocking=False)


@pytest.fixture
def fetcher(tmp_path):
    return FakeFetcher(tmp_path / "fake-depot")


@pytest.fixture
def runner(tmp_path):
    return RecordingRunner(tmp_path / "logs")


@pytest.fixture
def orchestrator(env_dir, catalog, fetcher, settings, runner):
    return Orchestrator(env_dir, catalog, fetcher, settings=settings, context=Context(), runner=runner)
