"""Tests for manifest diffs, command results and script sandboxes."""

import os
from pathlib import Path

from constants import Constants
from environment.manifest import Manifest, ManifestEntry
from environment.project import Project
from errors import BuildError
from operations.results import ChangeKind, CommandResult, StatusLine, diff_manifests, entry_label
from operations.sandbox import isolated_environment, sandbox_manifest

from conftest import A, B, C


def entry(name, uuid, version="1.0.0", deps=(), **kwargs):
    return ManifestEntry(name=name, uuid=uuid, version=version, tree_hash=f"{name}-{version}", deps=list(deps), **kwargs)


class TestDiff:
    """diff_manifests classification."""

    def test_kinds(self):
        old = Manifest([entry("A", A, "1.0.0"), entry("B", B, "2.0.0"), entry("C", C, "1.0.0")])
        new = Manifest([entry("A", A, "1.1.0"), entry("B", B, "1.5.0"), entry("D", "u-d")])
        kinds = [(c.name, c.kind) for c in diff_manifests(old, new)]
        assert kinds == [
            ("A", ChangeKind.UPGRADED),
            ("B", ChangeKind.DOWNGRADED),
            ("C", ChangeKind.REMOVED),
            ("D", ChangeKind.ADDED),
        ]

    def test_tracking_switch_is_a_change(self):
        old = Manifest([entry("A", A)])
        new = Manifest([ManifestEntry(name="A", uuid=A, version="1.0.0", path="dev/A")])
        (change,) = diff_manifests(old, new)
        assert change.kind is ChangeKind.CHANGED
        assert change.describe() == "~ A v1.0.0 ⇒ [dev/A]"

    def test_identical_manifests(self):
        manifest = Manifest([entry("A", A)])
        assert diff_manifests(manifest, manifest.copy()) == []

    def test_labels(self):
        repo = ManifestEntry(name="A", uuid=A, version="0.2.0", repo_url="https://example.invalid/A.git", repo_rev="main")
        assert entry_label(repo) == "0.2.0#main (https://example.invalid/A.git)"
        assert entry_label(entry("A", A)) == "v1.0.0"


class TestCommandResult:
    """Error aggregation and rendering."""

    def test_errors_flip_ok(self):
        result = CommandResult(command="build")
        assert result.ok
        result.add_error(BuildError("A", returncode=1))
        assert not result.ok
        assert result.summary() == ["ERROR: build of A failed with exit code 1"]

    def test_status_line_render(self):
        line = StatusLine(name="A", uuid=A, label="v1.0.0", pinned=True, installed=False)
        assert line.render() == f"[{A[:8]}] A v1.0.0 ⚲ (not installed)"


class TestSandbox:
    """Isolated environments for scripts."""

    def test_sandbox_holds_closure_only(self, tmp_path):
        manifest = Manifest([entry("A", A), entry("B", B, deps=[A]), entry("C", C)])
        paths = {A: tmp_path / "a", B: tmp_path / "b", C: tmp_path / "c"}
        assert set(sandbox_manifest(manifest, [B]).entries) == {A, B}

        with isolated_environment(manifest, {B: "B"}, paths, coverage=True, name="Pkg") as sandbox:
            root = Path(sandbox.env_vars[Constants.ENV_PROJECT])
            assert Project.load(root / Constants.PROJECT_FILE).deps == {"B": B}
            assert set(Manifest.load(root / Constants.MANIFEST_FILE).entries) == {A, B}
            assert sandbox.env_vars[Constants.ENV_LOAD_PATH] == os.pathsep.join([str(paths[A]), str(paths[B])])
            assert sandbox.env_vars[Constants.ENV_COVERAGE] == "1"
            env = sandbox.environ({"PATH": "/bin"})
            assert env["PATH"] == "/bin" and env[Constants.ENV_PROJECT] == str(root)
        assert not root.exists()
