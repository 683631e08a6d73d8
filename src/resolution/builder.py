"""Assemble a DependencyGraph from environment state and the catalog."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from semantic_version import Version

from errors import SpecResolutionError
from registry.catalog import Catalog
from versioning.models import UpgradeLevel
from versioning.ranges import VersionRange, level_range

from .graph import DependencyGraph, NodeOverride, PROJECT_SOURCE

logger = logging.getLogger(__name__)


@dataclass
class FixedPackage:
    """A package excluded from version search.

    Pinned packages take their requirements from the catalog; path and repo
    tracked packages take them from their own project file.
    """
    uuid: str
    name: str
    version: Version
    requires: Dict[str, VersionRange] = field(default_factory=dict)
    override: NodeOverride = NodeOverride.PINNED


@dataclass
class ResolveRequest:
    """Everything one resolution attempt needs besides the catalog.

    Attributes:
        roots: direct dependencies, identifier -> name.
        root_constraints: ranges imposed by the project (compat) or by the
            command (``add Foo@1.2``), as (label, range) pairs.
        fixed: pinned or source-tracked packages.
        fixed_loader: builds the FixedPackage for an identifier on first
            reach, or returns None when it is not fixed. Packages the graph
            never reaches are never loaded.
        previous: versions from the prior manifest, used as incumbents.
        upgrade: identifiers whose incumbent must not be preferred.
        levels: upgrade ceilings per identifier; missing means MAJOR.
    """
    roots: Dict[str, str] = field(default_factory=dict)
    root_constraints: Dict[str, List[Tuple[str, VersionRange]]] = field(default_factory=dict)
    fixed: Dict[str, FixedPackage] = field(default_factory=dict)
    fixed_loader: Optional[Callable[[str], Optional[FixedPackage]]] = None
    previous: Dict[str, Version] = field(default_factory=dict)
    upgrade: Set[str] = field(default_factory=set)
    levels: Dict[str, UpgradeLevel] = field(default_factory=dict)

    def constrain(self, uuid: str, label: str, rng: VersionRange) -> None:
        """Add a root-level range for ``uuid``."""
        self.root_constraints.setdefault(uuid, []).append((label, rng))

    def fixed_package(self, uuid: str) -> Optional[FixedPackage]:
        if uuid not in self.fixed and self.fixed_loader is not None:
            package = self.fixed_loader(uuid)
            if package is not None:
                self.fixed[uuid] = package
        return self.fixed.get(uuid)


def build_graph(request: ResolveRequest, catalog: Catalog) -> DependencyGraph:
    """Create nodes for every identifier reachable from the roots.

    Nodes are discovered breadth first in identifier order. Only versions
    that survive root constraints and upgrade ceilings contribute further
    identifiers, which keeps the graph to the relevant part of the catalog.

    Raises:
        SpecResolutionError: If a required identifier is not in the catalog.
    """
    graph = DependencyGraph()
    queue: Deque[str] = deque(sorted(request.roots))
    required_by: Dict[str, str] = {}

    while queue:
        uuid = queue.popleft()
        if uuid in graph:
            continue
        node = _add_node(graph, request, catalog, uuid, required_by.get(uuid))
        reached: Set[str] = set()
        for version in node.candidates:
            reached.update(node.requires.get(version, {}))
        for dep in sorted(reached):
            if dep not in graph and dep not in required_by:
                required_by[dep] = node.name
                queue.append(dep)

    logger.debug("Dependency graph built with %s nodes from %s roots", len(graph.nodes), len(request.roots))
    return graph


def _add_node(
    graph: DependencyGraph,
    request: ResolveRequest,
    catalog: Catalog,
    uuid: str,
    requirer: Optional[str],
):
    is_root = uuid in request.roots
    fixed = request.fixed_package(uuid)
    if fixed is not None:
        node = graph.add_package(
            uuid,
            fixed.name,
            {fixed.version: fixed.requires},
            override=fixed.override,
            fixed_version=fixed.version,
            root=is_root,
        )
    else:
        if not catalog.has(uuid):
            who = "the project" if requirer is None else requirer
            name = request.roots.get(uuid, uuid)
            raise SpecResolutionError(
                f"Package {name} required by {who} is not registered in any registry", packages=[name]
            )
        entry = catalog.entry(uuid)
        versions = {v: dict(entry.versions[v].requires) for v in entry.sorted_versions()}
        previous = request.previous.get(uuid)
        # an installed version that has since been yanked stays eligible
        if previous is not None and previous not in versions and entry.info(previous) is not None:
            versions[previous] = dict(entry.versions[previous].requires)
        node = graph.add_package(
            uuid,
            entry.name,
            versions,
            previous=previous,
            upgrade=uuid in request.upgrade,
            root=is_root,
        )
        level = request.levels.get(uuid, UpgradeLevel.MAJOR)
        if previous is not None:
            graph.apply_ceiling(uuid, level, level_range(previous, level))

    if is_root:
        for label, rng in request.root_constraints.get(uuid, []):
            graph.restrict_compat(uuid, rng, source=PROJECT_SOURCE, label=label)
    return node
