"""Command orchestration.

Each public method implements one command as the same pipeline: lock the
environment, load it, apply the command's mutation in memory, build the
dependency graph, resolve, diff against the previous manifest, materialize
what changed, run build scripts for new packages, and persist atomically.
Errors raised before the persist step leave the files on disk untouched.
"""

from __future__ import annotations

import logging
import os
import uuid as uuidlib
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from semantic_version import Version

from cli_config import Settings
from constants import Constants
from environment.lock import directory_lock
from environment.manifest import Manifest, ManifestEntry
from environment.project import Project
from environment.state import Environment, locate_environment
from environment.toml_io import atomic_write_text, write_toml
from errors import (
    ConstraintConflictError,
    DepEnvError,
    MaterializationError,
    SpecResolutionError,
)
from registry.catalog import Catalog
from resolution.builder import FixedPackage, ResolveRequest, build_graph
from resolution.graph import DependencyGraph, NodeOverride
from resolution.resolver import Resolver
from versioning.models import PackageMode, PackageSpec, Tracking, UpgradeLevel
from versioning.ranges import VersionRange, parse_version

from .build import BuildScheduler, BuildTask, ScriptRunner
from .context import Context
from .gc import collect_garbage
from .materialize import Fetcher, materialize_all, tree_hash
from .results import CommandResult, StatusLine, diff_manifests, entry_label
from .sandbox import isolated_environment

logger = logging.getLogger(__name__)

_PROJECT_LABEL = "the project"
_NULL_VERSION = Version("0.0.0")


def requirements_of(project: Project) -> Dict[str, VersionRange]:
    """Compat requirements a source package declares for its own deps."""
    return {uuid: project.compat.get(name, VersionRange.any()) for name, uuid in project.deps.items()}


@dataclass
class _Session:
    """Mutable state of one command between load and persist."""
    env: Environment
    result: CommandResult
    baseline: Manifest
    overrides: Dict[str, ManifestEntry] = field(default_factory=dict)
    upgrade: Set[str] = field(default_factory=set)
    levels: Dict[str, UpgradeLevel] = field(default_factory=dict)
    constraints: List[Tuple[str, str, VersionRange]] = field(default_factory=list)


class Orchestrator:
    """One method per command over a single environment directory.

    Args:
        env_dir: directory holding Project.toml and Manifest.toml.
        catalog: package metadata source.
        fetcher: materialization collaborator.
        settings: depot location, worker count and lock behaviour.
        context: per-run state (registry refresh flag, cancellation).
        runner: executes lifecycle scripts; defaults to subprocesses logging
            under ``<depot>/logs/build``.
    """

    def __init__(
        self,
        env_dir: Path,
        catalog: Catalog,
        fetcher: Fetcher,
        settings: Optional[Settings] = None,
        context: Optional[Context] = None,
        runner: Optional[ScriptRunner] = None,
    ):
        self.env_dir = Path(env_dir).resolve()
        self.catalog = catalog
        self.fetcher = fetcher
        self.settings = settings or Settings()
        self.context = context or Context()
        self.runner = runner or ScriptRunner(
            self.settings.depot / Constants.DEPOT_LOGS_DIR / Constants.BUILD_LOGS_DIR
        )

    # ------------------------------------------------------------------
    # commands
    # ------------------------------------------------------------------

    def add(self, specs: Sequence[PackageSpec]) -> CommandResult:
        """Add packages to the project and resolve.

        Registry packages are looked up by name or identifier; a spec with a
        url or path is snapshot-installed and tracked as a repo package. A
        version range on the request restricts this resolution only.
        """
        def body(session: _Session) -> None:
            if any(not s.has_source for s in specs):
                self.context.ensure_registry_fresh(self.catalog)
            for spec in specs:
                if spec.has_source:
                    entry = self._snapshot_source(spec)
                    session.overrides[entry.uuid] = entry
                    uuid, name = entry.uuid, entry.name
                else:
                    uuid, name = self._registry_identity(spec)
                    if uuid in session.overrides and session.overrides[uuid].tracking != Tracking.REGISTRY:
                        logger.info("%s switches back to registry tracking", name)
                        del session.overrides[uuid]
                    if spec.version:
                        session.constraints.append((uuid, f"requested {name}@{spec.version}", self._range(spec)))
                session.env.project.add_dep(name, uuid)
                session.upgrade.add(uuid)
                logger.info("Adding %s [%s]", name, uuid[:8])
            self._resolve_and_apply(session)

        return self._execute("add", body)

    def rm(self, specs: Sequence[PackageSpec], mode: PackageMode = PackageMode.PROJECT) -> CommandResult:
        """Remove packages.

        In project mode the package must be a direct dependency. In manifest
        mode the package and every package depending on it leave both the
        manifest and the project.
        """
        def body(session: _Session) -> None:
            env = session.env
            for spec in specs:
                if mode == PackageMode.PROJECT:
                    uuid, name = self._project_identity(env, spec)
                    env.project.remove_dep(name)
                    session.overrides.pop(uuid, None)
                    logger.info("Removing %s from the project", name)
                    continue
                uuid, name = self._manifest_identity(env, spec)
                doomed = {uuid} | env.manifest.dependents(uuid)
                for victim in sorted(doomed):
                    dep_name = env.project.name_for(victim)
                    if dep_name is not None and dep_name in env.project.deps:
                        env.project.remove_dep(dep_name)
                    session.overrides.pop(victim, None)
                logger.info("Removing %s and %s dependents", name, len(doomed) - 1)
            self._resolve_and_apply(session)

        return self._execute("rm", body)

    def update(
        self,
        specs: Optional[Sequence[PackageSpec]] = None,
        level: UpgradeLevel = UpgradeLevel.MAJOR,
        mode: PackageMode = PackageMode.PROJECT,
    ) -> CommandResult:
        """Upgrade targeted packages (or everything not pinned) up to ``level``."""
        def body(session: _Session) -> None:
            env = session.env
            self.context.ensure_registry_fresh(self.catalog)
            targets: Dict[str, str] = {}
            if specs:
                for spec in specs:
                    if mode == PackageMode.PROJECT:
                        uuid, name = self._project_identity(env, spec)
                    else:
                        uuid, name = self._manifest_identity(env, spec)
                    targets[uuid] = name
            else:
                targets = {u: e.name for u, e in env.manifest.entries.items()}
                targets.update({u: n for n, u in env.project.deps.items()})

            skipped: List[str] = []
            for uuid, name in sorted(targets.items(), key=lambda kv: (kv[1], kv[0])):
                override = session.overrides.get(uuid)
                if override is not None and override.pinned:
                    logger.warning("%s is pinned and will not be updated", name)
                    skipped.append(name)
                    continue
                if override is not None and override.tracking == Tracking.REPO:
                    session.overrides[uuid] = self._refresh_repo(override)
                    continue
                if override is not None:
                    continue
                session.upgrade.add(uuid)
                session.levels[uuid] = level
            session.result.data["skipped"] = skipped
            self._resolve_and_apply(session)

        return self._execute("update", body)

    def pin(self, specs: Sequence[PackageSpec]) -> CommandResult:
        """Fix packages at their current version, or at the version given."""
        def body(session: _Session) -> None:
            env = session.env
            for spec in specs:
                uuid, name = self._manifest_identity(env, spec)
                entry = session.overrides.get(uuid) or env.manifest.get(uuid)
                if entry.tracking == Tracking.PATH:
                    raise SpecResolutionError(f"{name} tracks a path and cannot be pinned", packages=[name])
                pinned = ManifestEntry(**{**entry.__dict__, "deps": list(entry.deps), "pinned": True})
                if spec.version:
                    if entry.tracking != Tracking.REGISTRY:
                        raise SpecResolutionError(
                            f"{name} tracks a repository; pin it without a version", packages=[name]
                        )
                    version = self._published_version(uuid, name, spec.version)
                    pinned.version = str(version)
                    pinned.tree_hash = self.catalog.entry(uuid).info(version).hash
                session.overrides[uuid] = pinned
                logger.info("Pinning %s at %s", name, entry_label(pinned))
            self._resolve_and_apply(session)

        return self._execute("pin", body)

    def free(self, specs: Sequence[PackageSpec]) -> CommandResult:
        """Undo ``pin``, ``develop`` or a repo-tracked ``add``."""
        def body(session: _Session) -> None:
            env = session.env
            for spec in specs:
                uuid, name = self._manifest_identity(env, spec)
                entry = session.overrides.get(uuid)
                if entry is None:
                    raise SpecResolutionError(
                        f"{name} is not pinned, not tracking a path and not tracking a repo", packages=[name]
                    )
                if entry.pinned:
                    if entry.tracking == Tracking.REGISTRY:
                        del session.overrides[uuid]
                    else:
                        session.overrides[uuid] = ManifestEntry(
                            **{**entry.__dict__, "deps": list(entry.deps), "pinned": False}
                        )
                    logger.info("Unpinned %s", name)
                    continue
                if not self.catalog.has(uuid):
                    raise SpecResolutionError(
                        f"{name} is not registered; it cannot be freed from its {entry.tracking.value} source",
                        packages=[name],
                    )
                del session.overrides[uuid]
                logger.info("%s now tracks the registry", name)
            self._resolve_and_apply(session)

        return self._execute("free", body)

    def develop(self, specs: Sequence[PackageSpec], shared: bool = True) -> CommandResult:
        """Track packages from a local checkout instead of the registry.

        A spec with a path uses that directory. Otherwise the package is
        cloned (from the requested url or its registered repo) into the shared
        development directory, or into ``<env>/dev`` when ``shared`` is False;
        an existing checkout there is reused.
        """
        def body(session: _Session) -> None:
            dev_root = self.settings.dev_root if shared else self.env_dir / Constants.DEPOT_DEV_DIR
            for spec in specs:
                directory = self._develop_directory(spec, dev_root)
                project = self._source_project(directory, spec)
                entry = ManifestEntry(
                    name=project.name,
                    uuid=project.uuid,
                    version=project.version,
                    path=self._stored_path(directory),
                    tree_hash=tree_hash(directory),
                )
                session.overrides[entry.uuid] = entry
                session.env.project.add_dep(entry.name, entry.uuid)
                logger.info("Developing %s at %s", entry.name, directory)
            self._resolve_and_apply(session)

        return self._execute("develop", body)

    def resolve(self) -> CommandResult:
        """Re-resolve, picking up changes in path-tracked packages' own deps."""
        return self._execute("resolve", self._resolve_and_apply)

    def instantiate(self) -> CommandResult:
        """Install everything the manifest records, resolving only if needed.

        When the manifest covers the project, entries are materialized as
        recorded without consulting the resolver; already-installed entries
        cause no fetch and no build.
        """
        def body(session: _Session) -> None:
            env = session.env
            if not env.is_instantiable():
                logger.info("Manifest missing or incomplete; resolving")
                self._resolve_and_apply(session)
                return
            missing = [
                e for e in env.manifest.entries.values()
                if e.tracking != Tracking.PATH and not self.fetcher.is_installed(e, env.path)
            ]
            if not missing:
                logger.info("All %s packages already installed", len(env.manifest))
                return
            installed = self._materialize(session, env.manifest, missing)
            self._build_installed(session, env.manifest, set(installed))

        return self._execute("instantiate", body)

    def status(self, mode: PackageMode = PackageMode.PROJECT) -> CommandResult:
        """Report direct dependencies (project mode) or every manifest entry."""
        result = CommandResult(command="status")
        try:
            env = Environment.load(self.env_dir)
        except DepEnvError as exc:
            result.add_error(exc)
            return result
        result.manifest = env.manifest
        result.data["project"] = env.project.name
        if mode == PackageMode.PROJECT:
            rows = sorted(env.project.deps.items())
            for name, uuid in rows:
                entry = env.manifest.get(uuid)
                if entry is None:
                    result.report.append(StatusLine(name=name, uuid=uuid, label="(not resolved)", installed=False))
                else:
                    result.report.append(self._status_line(env, entry, direct=True))
        else:
            direct = set(env.project.deps.values())
            for entry in sorted(env.manifest.entries.values(), key=lambda e: (e.name, e.uuid)):
                result.report.append(self._status_line(env, entry, direct=entry.uuid in direct))
        return result

    def build(self, specs: Optional[Sequence[PackageSpec]] = None) -> CommandResult:
        """Run build scripts of the targets' closure, dependencies first."""
        def body(session: _Session) -> None:
            env = session.env
            if specs:
                roots = [self._manifest_identity(env, s)[0] for s in specs]
            else:
                roots = list(env.manifest.entries)
            closure = env.manifest.closure(roots)
            self._run_scripts(session, env.manifest, closure, Constants.SCRIPT_BUILD, require_installed=True)

        return self._execute("build", body)

    def test(self, specs: Optional[Sequence[PackageSpec]] = None, coverage: bool = False) -> CommandResult:
        """Run test scripts in sandboxes holding each target's closure plus its test extras.

        Without targets the project itself is tested.
        """
        def body(session: _Session) -> None:
            env = session.env
            tasks: Dict[str, BuildTask] = {}
            with ExitStack() as stack:
                if specs:
                    targets = [self._manifest_identity(env, s) for s in specs]
                    for uuid, name in targets:
                        entry = env.manifest.get(uuid)
                        directory = self.fetcher.package_path(entry, env.path)
                        if not directory.is_dir():
                            raise MaterializationError(name, "not installed; run instantiate first")
                        project = Project.load(directory / Constants.PROJECT_FILE)
                        deps = {d: env.manifest.get(d).name for d in entry.deps}
                        tasks[uuid] = self._test_task(session, stack, uuid, name, directory, project, deps, coverage)
                else:
                    project = env.project
                    if not project.scripts.get(Constants.SCRIPT_TEST):
                        raise SpecResolutionError("The project declares no test script", packages=[project.name or ""])
                    uuid = project.uuid or str(env.path)
                    deps = {u: n for n, u in project.deps.items()}
                    name = project.name or env.path.name
                    tasks[uuid] = self._test_task(session, stack, uuid, name, env.path, project, deps, coverage)
                scheduler = BuildScheduler(self.runner, self.settings.max_workers, self.context.check_cancelled)
                done, errors = scheduler.run(tasks, phase=Constants.SCRIPT_TEST)
            for error in errors:
                session.result.add_error(error)
            session.result.data["tested"] = [tasks[u].name for u in done]

        return self._execute("test", body)

    def gc(self, dry_run: bool = False) -> CommandResult:
        """Delete depot packages no known manifest references."""
        result = CommandResult(command="gc")
        try:
            with directory_lock(self.settings.depot, blocking=self.settings.lock_blocking):
                report = collect_garbage(self.settings.depot, dry_run=dry_run)
        except DepEnvError as exc:
            result.add_error(exc)
            return result
        result.data["removed"] = [str(p) for p in report.removed]
        result.data["manifests"] = [str(p) for p in report.manifests]
        return result

    def activate(self, target: Optional[str] = None, shared: bool = False) -> CommandResult:
        """Switch this orchestrator to another environment directory."""
        result = CommandResult(command="activate")
        try:
            path = locate_environment(target, self.settings.depot, shared=shared, current=self.env_dir)
        except (DepEnvError, ValueError) as exc:
            result.add_error(exc if isinstance(exc, DepEnvError) else SpecResolutionError(str(exc)))
            return result
        self.env_dir = path
        result.data["path"] = str(path)
        logger.info("Activated environment %s", path)
        return result

    def generate(self, name: str, parent: Optional[Path] = None) -> CommandResult:
        """Create a package skeleton ``<parent>/<name>`` with a fresh identifier."""
        result = CommandResult(command="generate")
        directory = Path(parent or Path.cwd()) / name
        if directory.exists():
            result.add_error(SpecResolutionError(f"{directory} already exists", packages=[name]))
            return result
        project = Project(name=name, uuid=str(uuidlib.uuid4()), version=Constants.DEFAULT_PACKAGE_VERSION)
        write_toml(directory / Constants.PROJECT_FILE, project.to_dict())
        atomic_write_text(directory / "src" / f"{name}.py", f'"""{name} package."""\n')
        logger.info("Generated %s in %s", name, directory)
        result.data["path"] = str(directory)
        result.data["uuid"] = project.uuid
        return result

    def installed(self) -> CommandResult:
        """Direct dependencies mapped to their resolved version or path."""
        result = self.status(PackageMode.PROJECT)
        result.command = "installed"
        if result.ok:
            manifest = result.manifest
            mapping: Dict[str, Optional[str]] = {}
            for line in result.report:
                entry = manifest.get(line.uuid)
                if entry is None:
                    mapping[line.name] = None
                else:
                    mapping[line.name] = entry.path if entry.tracking == Tracking.PATH else entry.version
            result.data["installed"] = mapping
        return result

    # ------------------------------------------------------------------
    # pipeline
    # ------------------------------------------------------------------

    def _execute(self, command: str, body: Callable[[_Session], None]) -> CommandResult:
        result = CommandResult(command=command)
        logger.info("Running %s in %s", command, self.env_dir)
        try:
            with directory_lock(self.env_dir, blocking=self.settings.lock_blocking):
                env = Environment.load(self.env_dir)
                session = _Session(
                    env=env,
                    result=result,
                    baseline=env.manifest.copy(),
                    overrides={u: e for u, e in env.manifest.copy().entries.items() if e.is_fixed},
                )
                body(session)
                result.manifest = env.manifest
        except DepEnvError as exc:
            logger.error("%s failed: %s", command, exc)
            result.add_error(exc)
        return result

    def _resolve_and_apply(self, session: _Session) -> None:
        env = session.env
        self.context.check_cancelled()
        request = self._request(session)
        graph = build_graph(request, self.catalog)
        logger.info("Resolving %s direct dependencies", len(request.roots))
        resolution = Resolver(graph, cancel_check=self.context.check_cancelled).resolve()
        if not resolution.ok:
            raise ConstraintConflictError(resolution.conflict)

        manifest = self._manifest_from(session, graph, resolution.assignment, request)
        session.result.changes = diff_manifests(session.baseline, manifest)
        for change in session.result.changes:
            logger.info("%s", change.describe())

        self.context.check_cancelled()
        missing = [
            e for e in manifest.entries.values()
            if e.tracking != Tracking.PATH and not self.fetcher.is_installed(e, env.path)
        ]
        installed = self._materialize(session, manifest, missing)

        rebuilt = set(installed)
        for change in session.result.changes:
            if change.new is not None and change.new.tracking == Tracking.PATH:
                rebuilt.add(change.uuid)
        self._build_installed(session, manifest, rebuilt)

        env.manifest = manifest
        env.persist(self.settings.depot)

    def _request(self, session: _Session) -> ResolveRequest:
        env = session.env
        request = ResolveRequest(upgrade=set(session.upgrade), levels=dict(session.levels))
        for name, uuid in sorted(env.project.deps.items()):
            request.roots[uuid] = name
            if name in env.project.compat:
                request.constrain(uuid, _PROJECT_LABEL, env.project.compat[name])
        for uuid, label, rng in session.constraints:
            request.constrain(uuid, label, rng)
        overrides = dict(session.overrides)

        def load_fixed(uuid: str) -> Optional[FixedPackage]:
            entry = overrides.get(uuid)
            return None if entry is None else self._fixed_package(entry, env.path)

        request.fixed_loader = load_fixed
        for uuid, entry in env.manifest.entries.items():
            if uuid not in session.overrides and entry.tracking == Tracking.REGISTRY and entry.version:
                request.previous[uuid] = entry.parsed_version
        return request

    def _manifest_from(
        self,
        session: _Session,
        graph: DependencyGraph,
        assignment: Dict[str, Version],
        request: ResolveRequest,
    ) -> Manifest:
        entries: List[ManifestEntry] = []
        for uuid, version in assignment.items():
            node = graph.node(uuid)
            deps = sorted(d for d in graph.dependencies(uuid, version) if d in assignment)
            override = session.overrides.get(uuid)
            if override is not None:
                entry = ManifestEntry(**{**override.__dict__, "deps": deps})
                if override.tracking == Tracking.PATH:
                    entry.tree_hash = tree_hash(self.fetcher.package_path(override, session.env.path))
                if override.tracking != Tracking.REGISTRY:
                    entry.version = str(request.fixed[uuid].version)
            else:
                info = self.catalog.entry(uuid).info(version)
                entry = ManifestEntry(name=node.name, uuid=uuid, version=str(version), tree_hash=info.hash, deps=deps)
            entries.append(entry)
        return Manifest(entries)

    def _materialize(self, session: _Session, manifest: Manifest, entries: List[ManifestEntry]) -> Dict[str, Path]:
        if not entries:
            return {}
        sources: Dict[str, Optional[str]] = {}
        for entry in entries:
            if entry.tracking == Tracking.REGISTRY:
                info = self.catalog.entry(entry.uuid).info(entry.parsed_version)
                sources[entry.uuid] = info.source_url if info is not None else None
        logger.info("Installing %s packages", len(entries))
        installed, errors = materialize_all(
            self.fetcher,
            entries,
            sources,
            max_workers=self.settings.max_workers,
            cancel_check=self.context.check_cancelled,
        )
        for error in errors:
            session.result.add_error(error)
        return installed

    def _build_installed(self, session: _Session, manifest: Manifest, uuids: Set[str]) -> None:
        """Run build scripts of freshly installed packages that declare one."""
        scripted = set()
        for uuid in uuids:
            entry = manifest.get(uuid)
            directory = self.fetcher.package_path(entry, session.env.path)
            if Project.load(directory / Constants.PROJECT_FILE).scripts.get(Constants.SCRIPT_BUILD):
                scripted.add(uuid)
        if scripted:
            self._run_scripts(session, manifest, scripted, Constants.SCRIPT_BUILD, require_installed=False)

    def _run_scripts(
        self,
        session: _Session,
        manifest: Manifest,
        uuids: Set[str],
        phase: str,
        require_installed: bool,
    ) -> None:
        tasks: Dict[str, BuildTask] = {}
        package_paths = {u: self.fetcher.package_path(e, session.env.path) for u, e in manifest.entries.items()}
        with ExitStack() as stack:
            for uuid in manifest.topological_order(uuids):
                entry = manifest.get(uuid)
                directory = package_paths[uuid]
                if not directory.is_dir():
                    if require_installed:
                        session.result.add_error(MaterializationError(entry.name, "not installed; run instantiate first"))
                    continue
                project = Project.load(directory / Constants.PROJECT_FILE)
                roots = {d: manifest.get(d).name for d in entry.deps}
                sandbox = stack.enter_context(
                    isolated_environment(manifest, roots, package_paths, name=entry.name)
                )
                tasks[uuid] = BuildTask(
                    uuid=uuid,
                    name=entry.name,
                    path=directory,
                    script=project.scripts.get(phase),
                    deps=list(entry.deps),
                    env=sandbox.environ(),
                )
            # a task whose closure holds an uninstalled package never starts
            blocked: Dict[str, str] = {}
            for uuid in tasks:
                missing = sorted(
                    manifest.get(d).name for d in manifest.closure([uuid]) - {uuid}
                    if not package_paths[d].is_dir()
                )
                if missing:
                    blocked[uuid] = missing[0]
            scheduler = BuildScheduler(self.runner, self.settings.max_workers, self.context.check_cancelled)
            done, errors = scheduler.run(tasks, phase=phase, blocked=blocked)
        for error in errors:
            session.result.add_error(error)
        session.result.data.setdefault("built", []).extend(tasks[u].name for u in done if tasks[u].script)

    def _test_task(
        self,
        session: _Session,
        stack: ExitStack,
        uuid: str,
        name: str,
        directory: Path,
        project: Project,
        deps: Dict[str, str],
        coverage: bool,
    ) -> BuildTask:
        """Prepare a sandbox with ``deps`` plus test extras and return the task."""
        env = session.env
        roots = dict(deps)
        roots.update({u: n for n, u in project.test_deps().items()})
        manifest = env.manifest
        if any(u not in manifest for u in roots):
            manifest = self._test_manifest(session, roots)
        package_paths = {u: self.fetcher.package_path(e, env.path) for u, e in manifest.entries.items()}
        sandbox = stack.enter_context(
            isolated_environment(manifest, roots, package_paths, coverage=coverage, name=name)
        )
        return BuildTask(
            uuid=uuid,
            name=name,
            path=directory,
            script=project.scripts.get(Constants.SCRIPT_TEST),
            env=sandbox.environ(),
        )

    def _test_manifest(self, session: _Session, roots: Dict[str, str]) -> Manifest:
        """Resolve extras on top of the current manifest, which stays fixed."""
        env = session.env
        request = ResolveRequest(roots=dict(roots))
        for uuid, entry in env.manifest.entries.items():
            fixed = session.overrides.get(uuid) or ManifestEntry(**{**entry.__dict__, "pinned": True})
            request.fixed[uuid] = self._fixed_package(fixed, env.path)
        graph = build_graph(request, self.catalog)
        resolution = Resolver(graph, cancel_check=self.context.check_cancelled).resolve()
        if not resolution.ok:
            raise ConstraintConflictError(resolution.conflict)
        scratch = _Session(env=env, result=session.result, baseline=env.manifest, overrides=dict(session.overrides))
        for uuid, entry in env.manifest.entries.items():
            scratch.overrides.setdefault(uuid, entry)
        manifest = self._manifest_from(scratch, graph, resolution.assignment, request)
        missing = [
            e for e in manifest.entries.values()
            if e.tracking != Tracking.PATH and not self.fetcher.is_installed(e, env.path)
        ]
        self._materialize(session, manifest, missing)
        return manifest

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _fixed_package(self, entry: ManifestEntry, base: Path) -> FixedPackage:
        """Graph input for a pinned or source-tracked entry."""
        if entry.tracking == Tracking.REGISTRY:
            version = entry.parsed_version
            info = self.catalog.entry(entry.uuid).info(version) if self.catalog.has(entry.uuid) else None
            if info is None:
                raise SpecResolutionError(
                    f"{entry.name} is pinned at {entry.version}, which no registry publishes", packages=[entry.name]
                )
            return FixedPackage(entry.uuid, entry.name, version, dict(info.requires), NodeOverride.PINNED)

        directory = self.fetcher.package_path(entry, base)
        if entry.tracking == Tracking.REPO and not directory.is_dir():
            directory = self.fetcher.materialize(entry)
        if not directory.is_dir():
            raise SpecResolutionError(
                f"{entry.name} tracks {entry.path}, which does not exist", packages=[entry.name]
            )
        project = Project.load(directory / Constants.PROJECT_FILE)
        version = parse_version(project.version) if project.version else (entry.parsed_version or _NULL_VERSION)
        override = NodeOverride.PATH if entry.tracking == Tracking.PATH else NodeOverride.REPO
        return FixedPackage(entry.uuid, entry.name, version, requirements_of(project), override)

    def _registry_identity(self, spec: PackageSpec) -> Tuple[str, str]:
        uuid = spec.uuid or self.catalog.lookup(spec.name)
        entry = self.catalog.entry(uuid)
        if spec.name and entry.name != spec.name:
            raise SpecResolutionError(
                f"Identifier {uuid} is registered as {entry.name}, not {spec.name}", packages=[spec.name]
            )
        return uuid, entry.name

    @staticmethod
    def _project_identity(env: Environment, spec: PackageSpec) -> Tuple[str, str]:
        if spec.uuid:
            name = env.project.name_for(spec.uuid)
            if name is not None and name in env.project.deps:
                return spec.uuid, name
        elif spec.name in env.project.deps:
            return env.project.deps[spec.name], spec.name
        raise SpecResolutionError(f"{spec.label()} is not a direct dependency of the project", packages=[spec.label()])

    @staticmethod
    def _manifest_identity(env: Environment, spec: PackageSpec) -> Tuple[str, str]:
        if spec.uuid:
            entry = env.manifest.get(spec.uuid)
            if entry is not None:
                return entry.uuid, entry.name
        elif spec.name:
            matches = env.manifest.find_by_name(spec.name)
            if len(matches) > 1:
                uuid = env.project.deps.get(spec.name)
                if uuid is not None:
                    return uuid, spec.name
                raise SpecResolutionError(
                    f"{spec.name} matches several manifest entries; specify the uuid", packages=[spec.name]
                )
            if matches:
                return matches[0].uuid, matches[0].name
        raise SpecResolutionError(f"{spec.label()} is not in the manifest", packages=[spec.label()])

    def _published_version(self, uuid: str, name: str, raw: str) -> Version:
        try:
            version = parse_version(raw.lstrip("="))
        except ValueError as exc:
            raise SpecResolutionError(f"Invalid version {raw} for {name}: {exc}", packages=[name]) from exc
        if self.catalog.entry(uuid).info(version) is None:
            raise SpecResolutionError(f"{name}@{version} is not published", packages=[name])
        return version

    @staticmethod
    def _range(spec: PackageSpec) -> VersionRange:
        try:
            return VersionRange(spec.version)
        except ValueError as exc:
            raise SpecResolutionError(str(exc), packages=[spec.label()]) from exc

    def _snapshot_source(self, spec: PackageSpec) -> ManifestEntry:
        """Check out a url/path source into the depot and describe it."""
        source = spec.url or str(Path(os.path.expanduser(spec.path)).resolve())
        staging = self.fetcher.materialize_source(source, spec.rev)
        project = self._source_project(staging, spec)
        _, content_hash = self.fetcher.install_snapshot(staging, project.name, project.uuid)
        return ManifestEntry(
            name=project.name,
            uuid=project.uuid,
            version=project.version,
            tree_hash=content_hash,
            repo_url=source,
            repo_rev=spec.rev,
        )

    def _refresh_repo(self, entry: ManifestEntry) -> ManifestEntry:
        """Re-fetch a repo-tracked package at its recorded revision."""
        staging = self.fetcher.materialize_source(entry.repo_url, entry.repo_rev)
        project = Project.load(staging / Constants.PROJECT_FILE)
        _, content_hash = self.fetcher.install_snapshot(staging, entry.name, entry.uuid)
        return ManifestEntry(**{**entry.__dict__, "deps": list(entry.deps), "tree_hash": content_hash,
                                "version": project.version or entry.version})

    @staticmethod
    def _source_project(directory: Path, spec: PackageSpec) -> Project:
        project = Project.load(directory / Constants.PROJECT_FILE)
        if not project.name or not project.uuid:
            raise SpecResolutionError(
                f"{spec.label()} has no name and uuid in its {Constants.PROJECT_FILE}", packages=[spec.label()]
            )
        if spec.name and spec.name != project.name:
            raise SpecResolutionError(
                f"{spec.label()} is named {project.name} in its {Constants.PROJECT_FILE}", packages=[spec.name]
            )
        return project

    def _develop_directory(self, spec: PackageSpec, dev_root: Path) -> Path:
        if spec.path:
            directory = Path(os.path.expanduser(spec.path))
            if not directory.is_absolute():
                directory = Path.cwd() / directory
            if not directory.is_dir():
                raise SpecResolutionError(f"{spec.path} is not a directory", packages=[spec.label()])
            return directory.resolve()
        if spec.url:
            name = spec.name or Path(spec.url.rstrip("/")).name
            name = name[:-4] if name.endswith(".git") else name
            url = spec.url
        else:
            uuid, name = self._registry_identity(spec)
            url = self.catalog.entry(uuid).repo
            if not url:
                raise SpecResolutionError(f"{name} has no registered repository to develop from", packages=[name])
        directory = dev_root / name
        if directory.is_dir():
            logger.info("Using existing checkout of %s at %s", name, directory)
        else:
            self.fetcher.clone_to(url, directory, spec.rev)
        return directory.resolve()

    def _stored_path(self, directory: Path) -> str:
        try:
            return directory.resolve().relative_to(self.env_dir).as_posix()
        except ValueError:
            return str(directory.resolve())

    def _status_line(self, env: Environment, entry: ManifestEntry, direct: bool) -> StatusLine:
        return StatusLine(
            name=entry.name,
            uuid=entry.uuid,
            label=entry_label(entry),
            pinned=entry.pinned,
            installed=self.fetcher.is_installed(entry, env.path),
            direct=direct,
        )
