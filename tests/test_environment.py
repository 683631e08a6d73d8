"""Tests for Project/Manifest files, persistence, the usage log and locking."""

import pytest

from constants import Constants
from environment.lock import directory_lock
from environment.manifest import MANIFEST_HEADER, Manifest, ManifestEntry
from environment.project import Project
from environment.state import Environment, locate_environment
from environment.toml_io import read_toml
from environment.usage import known_manifests, record_manifest_usage, usage_log_path
from errors import EnvironmentLockedError, ManifestCorruptError
from versioning.models import Tracking

from conftest import A, B, C, write_project


def entry(name, uuid, version="1.0.0", deps=(), **kwargs):
    return ManifestEntry(name=name, uuid=uuid, version=version, tree_hash=f"hash-{name}", deps=list(deps), **kwargs)


class TestProject:
    """Project.toml parsing and serialization."""

    def test_round_trip_is_deterministic(self, tmp_path):
        path = write_project(tmp_path, {
            "name": "App",
            "uuid": "u-app",
            "deps": {"Zed": "u-z", "Alpha": "u-a"},
            "compat": {"Alpha": "1.2"},
            "extras": {"Tester": "u-t"},
            "targets": {"test": ["Tester"]},
            "scripts": {"test": "pytest"},
            "authors": ["someone"],
        })
        project = Project.load(path)
        assert str(project.compat["Alpha"]) == "1.2"
        assert project.test_deps() == {"Tester": "u-t"}
        data = project.to_dict()
        assert list(data["deps"]) == ["Alpha", "Zed"]
        assert data["authors"] == ["someone"]

    def test_missing_file_is_empty(self, tmp_path):
        assert Project.load(tmp_path / Constants.PROJECT_FILE).deps == {}

    def test_conflicting_identifier(self, tmp_path):
        path = write_project(tmp_path, {"deps": {"A": "same"}, "extras": {"B": "same"}})
        with pytest.raises(ManifestCorruptError):
            Project.load(path)

    def test_invalid_compat(self, tmp_path):
        path = write_project(tmp_path, {"deps": {"A": A}, "compat": {"A": ">=nope"}})
        with pytest.raises(ManifestCorruptError) as excinfo:
            Project.load(path)
        assert excinfo.value.packages == ["A"]

    def test_add_dep_replaces_rename(self):
        project = Project(deps={"Old": A}, compat={})
        project.add_dep("New", A)
        assert project.deps == {"New": A}
        project.remove_dep("New")
        assert project.deps == {}


class TestManifest:
    """Manifest.toml invariants and graph helpers."""

    @pytest.fixture
    def manifest(self):
        return Manifest([
            entry("A", A),
            entry("B", B, deps=[A]),
            entry("C", C, deps=[B]),
        ])

    def test_write_load_round_trip(self, manifest, tmp_path):
        path = tmp_path / Constants.MANIFEST_FILE
        manifest.write(path)
        assert path.read_text(encoding="utf-8").startswith(f"# {MANIFEST_HEADER}")
        assert Manifest.load(path) == manifest

    def test_closure_and_dependents(self, manifest):
        assert manifest.closure([B]) == {A, B}
        assert manifest.dependents(A) == {B, C}
        assert manifest.topological_order() == [A, B, C]
        assert manifest.topological_order([C, A]) == [A, C]

    def test_dangling_dependency(self, tmp_path):
        path = tmp_path / Constants.MANIFEST_FILE
        path.write_text(
            '[[package]]\nname = "B"\nuuid = "b"\nversion = "1.0.0"\ntree_hash = "h"\ndeps = ["a"]\n',
            encoding="utf-8",
        )
        with pytest.raises(ManifestCorruptError) as excinfo:
            Manifest.load(path)
        assert "not in the manifest" in str(excinfo.value)

    def test_registry_entry_needs_hash(self):
        with pytest.raises(ManifestCorruptError):
            Manifest([ManifestEntry(name="A", uuid=A, version="1.0.0")]).validate()

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / Constants.MANIFEST_FILE
        path.write_text("[[package]\n", encoding="utf-8")
        with pytest.raises(ManifestCorruptError):
            Manifest.load(path)

    def test_tracking(self):
        assert entry("A", A).tracking == Tracking.REGISTRY
        assert ManifestEntry(name="A", uuid=A, path="../A").tracking == Tracking.PATH
        repo = ManifestEntry(name="A", uuid=A, repo_url="https://example.invalid/A.git", tree_hash="h")
        assert repo.tracking == Tracking.REPO and repo.is_fixed
        assert entry("A", A, pinned=True).is_fixed


class TestEnvironment:
    """Loading and persisting an environment directory."""

    def test_persist_writes_both_files_and_usage(self, tmp_path):
        env_dir = tmp_path / "env"
        write_project(env_dir, {"name": "App", "deps": {"A": A}})
        env = Environment.load(env_dir)
        assert not env.is_instantiable()
        env.manifest = Manifest([entry("A", A)])
        env.persist(tmp_path / "depot")

        again = Environment.load(env_dir)
        assert again.is_instantiable()
        assert again.manifest.get(A).version == "1.0.0"
        assert known_manifests(tmp_path / "depot") == [(env_dir / Constants.MANIFEST_FILE).resolve()]

    def test_name_mismatch_is_corruption(self, tmp_path):
        write_project(tmp_path, {"deps": {"A": A}})
        Manifest([entry("Other", A)]).write(tmp_path / Constants.MANIFEST_FILE)
        with pytest.raises(ManifestCorruptError):
            Environment.load(tmp_path)

    def test_persist_refuses_invalid_manifest(self, tmp_path):
        write_project(tmp_path, {"name": "App"})
        env = Environment.load(tmp_path)
        env.manifest = Manifest([entry("B", B, deps=[A])])
        with pytest.raises(ManifestCorruptError):
            env.persist()
        assert not (tmp_path / Constants.MANIFEST_FILE).exists()

    def test_overrides(self, tmp_path):
        env = Environment(path=tmp_path, manifest=Manifest([
            entry("A", A, pinned=True),
            entry("B", B),
            ManifestEntry(name="C", uuid=C, path="dev/C"),
        ]))
        assert set(env.overrides()) == {A, C}
        assert set(env.path_tracked()) == {C}


class TestUsageLog:
    """Manifest usage bookkeeping for gc."""

    def test_prunes_vanished_manifests(self, tmp_path):
        depot = tmp_path / "depot"
        keep = tmp_path / "keep" / Constants.MANIFEST_FILE
        gone = tmp_path / "gone" / Constants.MANIFEST_FILE
        for path in (keep, gone):
            path.parent.mkdir()
            path.write_text("", encoding="utf-8")
            record_manifest_usage(depot, path)
        gone.unlink()

        assert known_manifests(depot, prune=False) == [keep.resolve()]
        assert len(read_toml(usage_log_path(depot))) == 2
        known_manifests(depot)
        assert list(read_toml(usage_log_path(depot))) == [str(keep.resolve())]


class TestLocking:
    """Advisory directory locks."""

    def test_non_blocking_lock_conflict(self, tmp_path):
        with directory_lock(tmp_path, blocking=False):
            with pytest.raises(EnvironmentLockedError):
                with directory_lock(tmp_path, blocking=False):
                    pass
        with directory_lock(tmp_path, blocking=False) as lock_path:
            assert lock_path.name == Constants.LOCK_FILE


class TestLocateEnvironment:
    """activate target resolution."""

    def test_shared_name(self, tmp_path):
        path = locate_environment("team", tmp_path, shared=True)
        assert path == tmp_path / Constants.DEPOT_ENVIRONMENTS_DIR / "team"

    def test_shared_needs_name(self, tmp_path):
        with pytest.raises(ValueError):
            locate_environment(None, tmp_path, shared=True)

    def test_path_tracked_dependency(self, tmp_path):
        env_dir = tmp_path / "env"
        write_project(env_dir, {"deps": {"Dev": A}})
        Manifest([ManifestEntry(name="Dev", uuid=A, path="dev/Dev")]).write(env_dir / Constants.MANIFEST_FILE)
        assert locate_environment("Dev", tmp_path, current=env_dir) == (env_dir / "dev" / "Dev").resolve()
