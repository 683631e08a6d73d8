"""End-to-end behaviour of orchestrator commands against fake collaborators."""

import shutil
from pathlib import Path

import pytest
import tomli_w

from constants import Constants
from environment.lock import directory_lock
from environment.manifest import Manifest
from environment.project import Project
from errors import (
    BuildError,
    CommandCancelledError,
    ConstraintConflictError,
    EnvironmentLockedError,
    MaterializationError,
    SpecResolutionError,
)
from operations.context import Context
from operations.materialize import version_slug
from operations.orchestrator import Orchestrator
from operations.results import ChangeKind
from versioning.models import PackageMode, PackageSpec, UpgradeLevel

from conftest import (
    A,
    B,
    C,
    D,
    T,
    X,
    FakeFetcher,
    RecordingRunner,
    fake_hash,
    registry_manifest_entry,
    write_manifest,
    write_project,
)

APP = "aaaaaaaa-0000-4000-8000-000000000001"
LOCAL = "ee000000-0000-4000-8000-0000000000ee"


def spec(name=None, **kwargs):
    return PackageSpec(name=name, **kwargs)


def load_manifest(env_dir):
    return Manifest.load(env_dir / Constants.MANIFEST_FILE)


def load_project(env_dir):
    return Project.load(env_dir / Constants.PROJECT_FILE)


def versions(env_dir):
    return {e.name: e.version for e in load_manifest(env_dir).entries.values()}


@pytest.fixture
def make_orchestrator(env_dir, catalog, settings, tmp_path):
    """Build an orchestrator with custom fetcher scripts or failures."""
    def _make(scripts=None, fetch_failing=(), build_failing=(), context=None):
        fetcher = FakeFetcher(tmp_path / "fake-depot", scripts=scripts, failing=fetch_failing)
        runner = RecordingRunner(tmp_path / "logs", failing=build_failing)
        return Orchestrator(env_dir, catalog, fetcher, settings=settings, context=context or Context(), runner=runner)
    return _make


def write_source_package(directory: Path, name: str, uuid: str, version: str, deps=None, compat=None) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    data = {"name": name, "uuid": uuid, "version": version}
    if deps:
        data["deps"] = deps
    if compat:
        data["compat"] = compat
    (directory / Constants.PROJECT_FILE).write_text(tomli_w.dumps(data), encoding="utf-8")
    (directory / "src").mkdir(exist_ok=True)
    (directory / "src" / f"{name}.py").write_text(f"VERSION = {version!r}\n", encoding="utf-8")
    return directory


class TestAdd:
    """Adding direct dependencies."""

    def test_add_respects_project_compat(self, orchestrator, env_dir):
        write_project(env_dir, {"name": "App", "uuid": APP, "compat": {"A": "1.2"}})
        result = orchestrator.add([spec("A")])
        assert result.ok, result.summary()
        assert versions(env_dir) == {"A": "1.3.0"}
        assert load_project(env_dir).deps == {"A": A}
        assert [(c.name, c.kind) for c in result.changes] == [("A", ChangeKind.ADDED)]

    def test_manifest_records_registry_hash(self, orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        orchestrator.add([spec("A")])
        entry = load_manifest(env_dir).get(A)
        assert entry.tree_hash == fake_hash("A", "2.0.0")
        assert entry.deps == []

    def test_add_with_version_restricts_this_command_only(self, orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        result = orchestrator.add([spec("A", version="~1.2")])
        assert result.ok
        assert versions(env_dir) == {"A": "1.2.5"}
        assert "A" not in load_project(env_dir).compat

    def test_add_by_uuid(self, orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        result = orchestrator.add([spec(uuid=D)])
        assert result.ok
        assert load_project(env_dir).deps == {"D": D}

    def test_add_unknown_name(self, orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        result = orchestrator.add([spec("Nope")])
        assert not result.ok
        assert isinstance(result.errors[0], SpecResolutionError)
        assert "Nope" in str(result.errors[0])

    def test_transitive_closure_installed(self, orchestrator, env_dir, fetcher):
        write_project(env_dir, {"name": "App"})
        result = orchestrator.add([spec("C")])
        assert result.ok
        assert versions(env_dir) == {"A": "1.3.0", "B": "1.1.0", "C": "1.1.0"}
        manifest = load_manifest(env_dir)
        assert manifest.get(C).deps == [B]
        assert manifest.get(B).deps == [A]
        assert sorted(call[1] for call in fetcher.calls) == ["A", "B", "C"]

    def test_conflict_leaves_files_untouched(self, orchestrator, env_dir):
        project_file = write_project(env_dir, {"name": "App", "deps": {"X": X}, "compat": {"X": "1"}})
        before = project_file.read_bytes()
        result = orchestrator.add([spec("P")])
        assert not result.ok
        error = result.errors[0]
        assert isinstance(error, ConstraintConflictError)
        assert error.conflict.name == "X"
        assert error.conflict.sources == ["the project", "P@1.0.0"]
        assert project_file.read_bytes() == before
        assert not (env_dir / Constants.MANIFEST_FILE).exists()

    def test_add_local_source_tracks_snapshot(self, orchestrator, env_dir, tmp_path, catalog):
        write_project(env_dir, {"name": "App"})
        source = write_source_package(tmp_path / "src-local", "Local", LOCAL, "0.2.0")
        result = orchestrator.add([spec(path=str(source))])
        assert result.ok, result.summary()
        entry = load_manifest(env_dir).get(LOCAL)
        assert entry.repo_url == str(source.resolve())
        assert entry.version == "0.2.0"
        assert entry.path is None
        assert load_project(env_dir).deps == {"Local": LOCAL}
        assert catalog.refreshes == 0


class TestRemove:
    """rm in project and manifest mode."""

    def test_rm_direct_dependency(self, orchestrator, env_dir):
        write_project(env_dir, {"name": "App", "deps": {"A": A, "B": B}})
        assert orchestrator.resolve().ok
        result = orchestrator.rm([spec("B")])
        assert result.ok
        assert load_project(env_dir).deps == {"A": A}
        assert set(versions(env_dir)) == {"A"}
        assert [(c.name, c.kind) for c in result.changes] == [("B", ChangeKind.REMOVED)]

    def test_rm_requires_direct_dependency(self, orchestrator, env_dir):
        write_project(env_dir, {"name": "App", "deps": {"C": C}})
        assert orchestrator.resolve().ok
        result = orchestrator.rm([spec("B")])
        assert not result.ok
        assert isinstance(result.errors[0], SpecResolutionError)
        assert "not a direct dependency" in str(result.errors[0])

    def test_rm_manifest_mode_removes_dependents(self, orchestrator, env_dir):
        write_project(env_dir, {"name": "App", "deps": {"C": C, "D": D}})
        assert orchestrator.resolve().ok
        result = orchestrator.rm([spec("A")], mode=PackageMode.MANIFEST)
        assert result.ok
        assert load_project(env_dir).deps == {"D": D}
        assert set(versions(env_dir)) == {"D"}


class TestUpdate:
    """Upgrades with levels and pins."""

    @pytest.fixture
    def resolved(self, env_dir, catalog):
        write_project(env_dir, {"name": "App", "deps": {"A": A, "D": D}})
        write_manifest(env_dir, [
            registry_manifest_entry(catalog, A, "1.2.0"),
            registry_manifest_entry(catalog, D, "1.0.0"),
        ])
        return env_dir

    def test_patch_update_of_one_package(self, orchestrator, resolved):
        result = orchestrator.update([spec("A")], level=UpgradeLevel.PATCH)
        assert result.ok
        assert versions(resolved) == {"A": "1.2.5", "D": "1.0.0"}
        assert [(c.name, c.kind) for c in result.changes] == [("A", ChangeKind.UPGRADED)]

    def test_minor_update_everything(self, orchestrator, resolved):
        result = orchestrator.update(level=UpgradeLevel.MINOR)
        assert result.ok
        assert versions(resolved) == {"A": "1.3.0", "D": "1.0.0"}

    def test_major_update_everything(self, orchestrator, resolved):
        assert orchestrator.update().ok
        assert versions(resolved) == {"A": "2.0.0", "D": "2.0.0"}

    def test_untouched_packages_keep_versions_on_resolve(self, orchestrator, resolved):
        result = orchestrator.resolve()
        assert result.ok
        assert result.changes == []
        assert versions(resolved) == {"A": "1.2.0", "D": "1.0.0"}

    def test_pinned_package_is_skipped(self, orchestrator, env_dir, catalog):
        write_project(env_dir, {"name": "App", "deps": {"A": A, "D": D}})
        write_manifest(env_dir, [
            registry_manifest_entry(catalog, A, "1.2.0", pinned=True),
            registry_manifest_entry(catalog, D, "1.0.0"),
        ])
        result = orchestrator.update()
        assert result.ok
        assert result.data["skipped"] == ["A"]
        assert versions(env_dir) == {"A": "1.2.0", "D": "2.0.0"}
        assert load_manifest(env_dir).get(A).pinned

    def test_update_unknown_target(self, orchestrator, resolved):
        result = orchestrator.update([spec("B")])
        assert not result.ok
        assert isinstance(result.errors[0], SpecResolutionError)


class TestPinFree:
    """pin and free round trips."""

    @pytest.fixture
    def resolved(self, env_dir, catalog):
        write_project(env_dir, {"name": "App", "deps": {"A": A}})
        write_manifest(env_dir, [registry_manifest_entry(catalog, A, "1.2.0")])
        return env_dir

    def test_pin_current_version(self, orchestrator, resolved):
        result = orchestrator.pin([spec("A")])
        assert result.ok
        entry = load_manifest(resolved).get(A)
        assert entry.pinned and entry.version == "1.2.0"
        assert [(c.name, c.kind) for c in result.changes] == [("A", ChangeKind.CHANGED)]

    def test_pin_given_version(self, orchestrator, resolved):
        result = orchestrator.pin([spec("A", version="1.1.0")])
        assert result.ok
        entry = load_manifest(resolved).get(A)
        assert entry.version == "1.1.0"
        assert entry.tree_hash == fake_hash("A", "1.1.0")

    def test_pin_unpublished_version(self, orchestrator, resolved):
        result = orchestrator.pin([spec("A", version="9.9.9")])
        assert not result.ok
        assert "not published" in str(result.errors[0])

    def test_pinned_survives_upgrade_then_free(self, orchestrator, resolved):
        assert orchestrator.pin([spec("A")]).ok
        assert orchestrator.update([spec("A")]).ok
        assert versions(resolved) == {"A": "1.2.0"}
        assert orchestrator.free([spec("A")]).ok
        entry = load_manifest(resolved).get(A)
        assert not entry.pinned
        assert entry.version == "1.2.0"
        assert orchestrator.update([spec("A")]).ok
        assert versions(resolved) == {"A": "2.0.0"}

    def test_free_unpinned_package(self, orchestrator, resolved):
        result = orchestrator.free([spec("A")])
        assert not result.ok
        assert "not pinned" in str(result.errors[0])


class TestDevelop:
    """Path tracking of local checkouts."""

    @pytest.fixture
    def checkout(self, tmp_path):
        return write_source_package(
            tmp_path / "work" / "D", "D", D, "3.0.0", deps={"A": A}, compat={"A": "1.2"}
        )

    def test_rm_after_checkout_was_deleted(self, orchestrator, env_dir, checkout):
        write_project(env_dir, {"name": "App"})
        assert orchestrator.develop([spec(path=str(checkout))]).ok
        shutil.rmtree(checkout)
        result = orchestrator.rm([spec("D")])
        assert result.ok, result.summary()
        assert D not in load_manifest(env_dir)
        assert "D" not in load_project(env_dir).deps

    def test_develop_uses_checkout_requirements(self, orchestrator, env_dir, checkout):
        write_project(env_dir, {"name": "App"})
        result = orchestrator.develop([spec(path=str(checkout))])
        assert result.ok, result.summary()
        manifest = load_manifest(env_dir)
        entry = manifest.get(D)
        assert entry.path == str(checkout.resolve())
        assert entry.version == "3.0.0"
        assert entry.deps == [A]
        assert manifest.get(A).version == "1.3.0"
        assert load_project(env_dir).deps == {"D": D}

    def test_resolve_picks_up_checkout_changes(self, orchestrator, env_dir, checkout):
        write_project(env_dir, {"name": "App"})
        assert orchestrator.develop([spec(path=str(checkout))]).ok
        write_source_package(checkout, "D", D, "3.0.0", deps={"A": A, "B": B}, compat={"A": "1.2", "B": "1"})
        result = orchestrator.resolve()
        assert result.ok
        kinds = {c.name: c.kind for c in result.changes}
        assert kinds == {"B": ChangeKind.ADDED, "D": ChangeKind.CHANGED}
        assert versions(env_dir)["B"] == "1.1.0"
        assert versions(env_dir)["A"] == "1.3.0"

    def test_path_tracked_package_cannot_be_pinned(self, orchestrator, env_dir, checkout):
        write_project(env_dir, {"name": "App"})
        assert orchestrator.develop([spec(path=str(checkout))]).ok
        result = orchestrator.pin([spec("D")])
        assert not result.ok
        assert "tracks a path" in str(result.errors[0])

    def test_free_returns_to_registry(self, orchestrator, env_dir, checkout):
        write_project(env_dir, {"name": "App"})
        assert orchestrator.develop([spec(path=str(checkout))]).ok
        result = orchestrator.free([spec("D")])
        assert result.ok
        entry = load_manifest(env_dir).get(D)
        assert entry.path is None
        assert entry.version == "2.0.0"
        assert A not in load_manifest(env_dir)

    def test_develop_clones_into_shared_dir(self, orchestrator, env_dir, catalog, settings, fetcher, tmp_path):
        write_project(env_dir, {"name": "App"})
        repo = write_source_package(tmp_path / "remote" / "D", "D", D, "3.1.0")
        catalog.entry(D).repo = str(repo)
        result = orchestrator.develop([spec("D")])
        assert result.ok, result.summary()
        assert ("clone", str(repo), None) in fetcher.calls
        entry = load_manifest(env_dir).get(D)
        assert entry.path == str((settings.dev_root / "D").resolve())

    def test_develop_local_keeps_relative_path(self, orchestrator, env_dir, catalog, tmp_path):
        write_project(env_dir, {"name": "App"})
        repo = write_source_package(tmp_path / "remote" / "D", "D", D, "3.1.0")
        catalog.entry(D).repo = str(repo)
        result = orchestrator.develop([spec("D")], shared=False)
        assert result.ok
        assert load_manifest(env_dir).get(D).path == "dev/D"


class TestInstantiate:
    """Reproducing a recorded manifest."""

    def test_idempotent(self, orchestrator, env_dir, fetcher, runner):
        write_project(env_dir, {"name": "App"})
        assert orchestrator.add([spec("A")]).ok
        calls = list(fetcher.calls)
        result = orchestrator.instantiate()
        assert result.ok
        assert result.changes == []
        assert fetcher.calls == calls
        assert runner.runs == []

    def test_installs_recorded_versions_without_resolving(self, orchestrator, env_dir, catalog, fetcher):
        write_project(env_dir, {"name": "App", "deps": {"A": A}})
        write_manifest(env_dir, [registry_manifest_entry(catalog, A, "1.2.0")])
        result = orchestrator.instantiate()
        assert result.ok
        assert fetcher.calls == [("materialize", "A", "1.2.0")]
        assert versions(env_dir) == {"A": "1.2.0"}

    def test_reinstalls_missing_package(self, orchestrator, env_dir, fetcher):
        write_project(env_dir, {"name": "App"})
        assert orchestrator.add([spec("A")]).ok
        entry = load_manifest(env_dir).get(A)
        shutil.rmtree(fetcher.package_path(entry, env_dir))
        assert orchestrator.instantiate().ok
        assert fetcher.calls[-1] == ("materialize", "A", "2.0.0")
        assert fetcher.is_installed(entry, env_dir)

    def test_resolves_without_manifest(self, orchestrator, env_dir):
        write_project(env_dir, {"name": "App", "deps": {"A": A}, "compat": {"A": "1"}})
        result = orchestrator.instantiate()
        assert result.ok
        assert versions(env_dir) == {"A": "1.3.0"}

    def test_materialization_failure_keeps_resolution(self, make_orchestrator, env_dir, tmp_path):
        write_project(env_dir, {"name": "App"})
        failing = make_orchestrator(fetch_failing=["A"])
        result = failing.add([spec("A")])
        assert not result.ok
        assert isinstance(result.errors[0], MaterializationError)
        assert versions(env_dir) == {"A": "2.0.0"}
        assert make_orchestrator().instantiate().ok


class TestBuild:
    """Lifecycle build scripts."""

    SCRIPTS = {"A": {"build": "make"}, "B": {"build": "make"}, "D": {"build": "make"}}

    def test_dependencies_build_first(self, make_orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        orchestrator = make_orchestrator(scripts=self.SCRIPTS)
        result = orchestrator.add([spec("B")])
        assert result.ok, result.summary()
        assert orchestrator.runner.runs == [("build", "A"), ("build", "B")]
        assert result.data["built"] == ["A", "B"]

    def test_build_sandbox_holds_dependency_closure(self, make_orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        orchestrator = make_orchestrator(scripts=self.SCRIPTS)
        assert orchestrator.add([spec("B")]).ok
        sandbox = orchestrator.runner.sandboxes[("build", "B")]
        assert set(sandbox["manifest"].entries) == {A}
        assert sandbox["env"][Constants.ENV_COVERAGE] == "0"
        installed = orchestrator.fetcher.package_path(load_manifest(env_dir).get(A), env_dir)
        assert sandbox["env"][Constants.ENV_LOAD_PATH] == str(installed)

    def test_failure_blocks_dependents(self, make_orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        orchestrator = make_orchestrator(scripts=self.SCRIPTS, build_failing=["A"])
        result = orchestrator.add([spec("B")])
        assert not result.ok
        assert orchestrator.runner.runs == [("build", "A")]
        errors = {e.package: e for e in result.errors}
        assert isinstance(errors["A"], BuildError) and errors["A"].returncode == 1
        assert errors["B"].blocked_by == "A"
        assert set(versions(env_dir)) == {"A", "B"}

    def test_failure_does_not_stop_siblings(self, make_orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        orchestrator = make_orchestrator(scripts=self.SCRIPTS, build_failing=["A"])
        result = orchestrator.add([spec("A"), spec("D")])
        assert [e.package for e in result.errors] == ["A"]
        assert ("build", "D") in orchestrator.runner.runs

    def test_build_command_runs_closure(self, make_orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        orchestrator = make_orchestrator(scripts=self.SCRIPTS)
        assert orchestrator.add([spec("B"), spec("D")]).ok
        orchestrator.runner.runs.clear()
        result = orchestrator.build([spec("B")])
        assert result.ok
        assert orchestrator.runner.runs == [("build", "A"), ("build", "B")]

    def test_uninstalled_dependency_blocks_build(self, make_orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        orchestrator = make_orchestrator(scripts={"B": {"build": "make"}}, fetch_failing=["A"])
        result = orchestrator.add([spec("B")])
        assert not result.ok
        assert orchestrator.runner.runs == []
        errors = {e.packages[0]: e for e in result.errors}
        assert isinstance(errors["A"], MaterializationError)
        assert isinstance(errors["B"], BuildError) and errors["B"].blocked_by == "A"

    def test_uninstalled_indirect_dependency_blocks_build(self, make_orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        orchestrator = make_orchestrator(scripts={"C": {"build": "make"}}, fetch_failing=["A"])
        result = orchestrator.add([spec("C")])
        assert orchestrator.runner.runs == []
        errors = {e.packages[0]: e for e in result.errors}
        assert errors["C"].blocked_by == "A"

    def test_build_command_skips_dependents_of_missing_packages(self, make_orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        orchestrator = make_orchestrator(scripts={"B": {"build": "make"}}, fetch_failing=["A"])
        orchestrator.add([spec("B")])
        result = orchestrator.build()
        assert orchestrator.runner.runs == []
        errors = {e.packages[0]: e for e in result.errors}
        assert isinstance(errors["A"], MaterializationError)
        assert errors["B"].blocked_by == "A"

    def test_build_requires_installation(self, orchestrator, env_dir, catalog):
        write_project(env_dir, {"name": "App", "deps": {"A": A}})
        write_manifest(env_dir, [registry_manifest_entry(catalog, A, "1.2.0")])
        result = orchestrator.build()
        assert not result.ok
        assert isinstance(result.errors[0], MaterializationError)


class TestTest:
    """Test scripts run in sandboxes with test extras."""

    def test_project_tests_with_extras(self, orchestrator, env_dir, runner):
        write_project(env_dir, {
            "name": "App",
            "uuid": APP,
            "deps": {"A": A},
            "extras": {"T": T},
            "targets": {"test": ["T"]},
            "scripts": {"test": "run-tests"},
        })
        assert orchestrator.resolve().ok
        result = orchestrator.test(coverage=True)
        assert result.ok, result.summary()
        assert result.data["tested"] == ["App"]
        sandbox = runner.sandboxes[("test", "App")]
        assert set(sandbox["manifest"].entries) == {A, T}
        assert sandbox["env"][Constants.ENV_COVERAGE] == "1"
        assert T not in load_manifest(env_dir)

    def test_project_without_test_script(self, orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        result = orchestrator.test()
        assert not result.ok
        assert "no test script" in str(result.errors[0])

    def test_dependency_tests(self, make_orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        orchestrator = make_orchestrator(scripts={"A": {"test": "check"}})
        assert orchestrator.add([spec("A")]).ok
        result = orchestrator.test([spec("A")])
        assert result.ok
        assert orchestrator.runner.runs == [("test", "A")]

    def test_failing_tests_reported(self, make_orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        orchestrator = make_orchestrator(scripts={"A": {"test": "check"}}, build_failing=["A"])
        assert orchestrator.add([spec("A")]).ok
        result = orchestrator.test([spec("A")])
        assert not result.ok
        assert result.errors[0].phase == "test"


class TestGc:
    """Garbage collection through the orchestrator."""

    def test_removes_unreferenced_packages(self, orchestrator, env_dir, settings):
        write_project(env_dir, {"name": "App"})
        assert orchestrator.add([spec("A")]).ok
        entry = load_manifest(env_dir).get(A)
        packages = settings.depot / Constants.DEPOT_PACKAGES_DIR
        live = packages / "A" / version_slug(A, entry.tree_hash)
        stale = packages / "A" / "stale"
        orphan = packages / "Old" / "abcde"
        for directory in (live, stale, orphan):
            directory.mkdir(parents=True)

        preview = orchestrator.gc(dry_run=True)
        assert preview.ok
        assert sorted(preview.data["removed"]) == sorted([str(stale), str(orphan)])
        assert stale.exists()

        result = orchestrator.gc()
        assert result.ok
        assert live.exists()
        assert not stale.exists()
        assert not (packages / "Old").exists()
        assert result.data["manifests"] == [str((env_dir / Constants.MANIFEST_FILE).resolve())]

    def test_keeps_developed_checkouts_inside_depot(self, orchestrator, env_dir, settings):
        write_project(env_dir, {"name": "App"})
        packages = settings.depot / Constants.DEPOT_PACKAGES_DIR
        in_store = write_source_package(packages / "D" / "checkout", "D", D, "3.0.0")
        in_dev = write_source_package(settings.depot / Constants.DEPOT_DEV_DIR / "Local", "Local", LOCAL, "0.1.0")
        result = orchestrator.develop([spec(path=str(in_store)), spec(path=str(in_dev))])
        assert result.ok, result.summary()
        stale = packages / "A" / "stale"
        stale.mkdir(parents=True)

        preview = orchestrator.gc(dry_run=True)
        assert preview.data["removed"] == [str(stale)]

        assert orchestrator.gc().ok
        assert (in_store / Constants.PROJECT_FILE).is_file()
        assert (in_dev / Constants.PROJECT_FILE).is_file()
        assert not stale.exists()


class TestStatusAndQueries:
    """status, installed, generate, activate."""

    def test_status_project_mode(self, orchestrator, env_dir, catalog):
        write_project(env_dir, {"name": "App", "deps": {"A": A, "D": D}})
        write_manifest(env_dir, [registry_manifest_entry(catalog, A, "1.2.0")])
        result = orchestrator.status()
        assert result.ok
        assert result.data["project"] == "App"
        labels = {line.name: line.label for line in result.report}
        assert labels == {"A": "v1.2.0", "D": "(not resolved)"}
        assert "(not installed)" in result.report[0].render()

    def test_status_manifest_mode(self, orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        assert orchestrator.add([spec("C")]).ok
        result = orchestrator.status(PackageMode.MANIFEST)
        assert [(line.name, line.direct) for line in result.report] == [("A", False), ("B", False), ("C", True)]
        assert all(line.installed for line in result.report)

    def test_installed_mapping(self, orchestrator, env_dir, tmp_path):
        write_project(env_dir, {"name": "App"})
        checkout = write_source_package(tmp_path / "work" / "D", "D", D, "3.0.0")
        assert orchestrator.add([spec("A")]).ok
        assert orchestrator.develop([spec(path=str(checkout))]).ok
        result = orchestrator.installed()
        assert result.data["installed"] == {"A": "2.0.0", "D": str(checkout.resolve())}

    def test_generate_creates_skeleton(self, orchestrator, tmp_path):
        result = orchestrator.generate("Widget", parent=tmp_path)
        assert result.ok
        project = Project.load(tmp_path / "Widget" / Constants.PROJECT_FILE)
        assert project.name == "Widget"
        assert project.uuid == result.data["uuid"]
        assert project.version == Constants.DEFAULT_PACKAGE_VERSION
        assert (tmp_path / "Widget" / "src" / "Widget.py").is_file()
        assert not orchestrator.generate("Widget", parent=tmp_path).ok

    def test_activate_path_and_shared(self, orchestrator, tmp_path, settings):
        other = tmp_path / "other"
        other.mkdir()
        result = orchestrator.activate(str(other))
        assert result.data["path"] == str(other.resolve())
        assert orchestrator.env_dir == other.resolve()
        shared = orchestrator.activate("team", shared=True)
        assert shared.data["path"] == str(settings.depot / Constants.DEPOT_ENVIRONMENTS_DIR / "team")


class TestRunContext:
    """Locking, registry refresh and cancellation."""

    def test_registry_refreshed_once_per_context(self, orchestrator, env_dir, catalog):
        write_project(env_dir, {"name": "App"})
        assert orchestrator.add([spec("A")]).ok
        assert orchestrator.add([spec("D")]).ok
        assert orchestrator.update().ok
        assert catalog.refreshes == 1

    def test_locked_environment(self, orchestrator, env_dir):
        write_project(env_dir, {"name": "App"})
        with directory_lock(env_dir, blocking=False):
            result = orchestrator.add([spec("A")])
        assert not result.ok
        assert isinstance(result.errors[0], EnvironmentLockedError)
        assert not (env_dir / Constants.MANIFEST_FILE).exists()

    def test_cancelled_command_changes_nothing(self, orchestrator, env_dir):
        project_file = write_project(env_dir, {"name": "App"})
        before = project_file.read_bytes()
        orchestrator.context.cancel()
        result = orchestrator.add([spec("A")])
        assert not result.ok
        assert isinstance(result.errors[0], CommandCancelledError)
        assert project_file.read_bytes() == before
        assert not (env_dir / Constants.MANIFEST_FILE).exists()

    def test_corrupt_manifest_reported(self, orchestrator, env_dir):
        write_project(env_dir, {"name": "App", "deps": {"A": A}})
        (env_dir / Constants.MANIFEST_FILE).write_text("[[package]]\nname = \"A\"\n", encoding="utf-8")
        result = orchestrator.resolve()
        assert not result.ok
        assert "Corrupt" in str(result.errors[0])
