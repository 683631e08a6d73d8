"""In-memory dependency graph for a single resolution attempt.

Each node holds the candidate versions of one package identifier. Candidate
sets only ever shrink while the search moves forward; every change is
recorded on a trail so the resolver can return to an earlier checkpoint when
it backtracks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set, Tuple

from semantic_version import Version

from versioning.models import UpgradeLevel
from versioning.ranges import VersionRange

from common.logging_utils import extra_context, is_debug_enabled

logger = logging.getLogger(__name__)

PROJECT_SOURCE = "<project>"


class Restriction(Enum):
    """Outcome of narrowing a candidate set."""
    EMPTY = "empty"
    FORCED = "forced"
    OPEN = "open"


class NodeOverride(Enum):
    """Override state of a node."""
    FREE = "free"
    PINNED = "pinned"
    PATH = "path"
    REPO = "repo"


@dataclass(frozen=True)
class Constraint:
    """A range imposed on a node, remembered for conflict reports."""
    source: str
    label: str
    range: VersionRange


@dataclass
class GraphNode:
    """Candidate space of one package identifier."""
    uuid: str
    name: str
    published: List[Version]
    requires: Dict[Version, Dict[str, VersionRange]]
    override: NodeOverride = NodeOverride.FREE
    previous: Optional[Version] = None
    upgrade: bool = False
    candidates: List[Version] = field(default_factory=list)
    constraints: List[Constraint] = field(default_factory=list)
    decided: Optional[Version] = None
    active: bool = False

    @property
    def is_fixed(self) -> bool:
        return self.override != NodeOverride.FREE

    def label(self, version: Optional[Version] = None) -> str:
        version = version if version is not None else self.decided
        return f"{self.name}@{version}" if version is not None else self.name


class DependencyGraph:
    """Candidate versions and compat constraints connecting them."""

    def __init__(self) -> None:
        self.nodes: Dict[str, GraphNode] = {}
        self.roots: Set[str] = set()
        self._trail: List[Tuple[str, str, object]] = []

    # ----- construction -----

    def add_package(
        self,
        uuid: str,
        name: str,
        versions: Dict[Version, Dict[str, VersionRange]],
        override: NodeOverride = NodeOverride.FREE,
        fixed_version: Optional[Version] = None,
        previous: Optional[Version] = None,
        upgrade: bool = False,
        root: bool = False,
    ) -> GraphNode:
        """Register a node.

        Overridden nodes (pinned, path or repo tracked) start with a
        singleton candidate set holding ``fixed_version``.

        Raises:
            ValueError: If the node exists already or an override lacks its version.
        """
        if uuid in self.nodes:
            raise ValueError(f"Package {name} [{uuid}] is already in the graph")
        published = sorted(versions)
        node = GraphNode(
            uuid=uuid,
            name=name,
            published=published,
            requires={v: dict(r) for v, r in versions.items()},
            override=override,
            previous=previous,
            upgrade=upgrade,
            candidates=list(published),
        )
        if override != NodeOverride.FREE:
            if fixed_version is None or fixed_version not in versions:
                raise ValueError(f"Overridden package {name} needs a fixed version with metadata")
            node.candidates = [fixed_version]
            node.constraints.append(
                Constraint(source=uuid, label=f"{override.value} override", range=VersionRange.exact(fixed_version))
            )
        self.nodes[uuid] = node
        if root:
            self.roots.add(uuid)
        return node

    def apply_ceiling(self, uuid: str, level: UpgradeLevel, ceiling: VersionRange) -> Restriction:
        """Restrict a free node to its upgrade ceiling around ``previous``."""
        node = self.nodes[uuid]
        if node.is_fixed or level == UpgradeLevel.MAJOR or node.previous is None:
            return self._status(node)
        label = f"upgrade level {level.name.lower()} from {node.previous}"
        return self.restrict_compat(uuid, ceiling, source=uuid, label=label)

    # ----- queries -----

    def __contains__(self, uuid: object) -> bool:
        return uuid in self.nodes

    def __iter__(self) -> Iterator[GraphNode]:
        return iter(self.nodes.values())

    def node(self, uuid: str) -> GraphNode:
        return self.nodes[uuid]

    def requirements(self, uuid: str) -> List[Version]:
        """Currently feasible versions of ``uuid`` in ascending order."""
        return list(self.nodes[uuid].candidates)

    def dependencies(self, uuid: str, version: Version) -> Dict[str, VersionRange]:
        """Compat requirements that ``uuid@version`` imposes on other identifiers."""
        return self.nodes[uuid].requires.get(version, {})

    def is_feasible(self) -> bool:
        """True iff no node's candidate set is empty."""
        return all(node.candidates for node in self.nodes.values())

    def undecided_active(self) -> List[GraphNode]:
        return [n for n in self.nodes.values() if n.active and n.decided is None]

    def assignment(self) -> Dict[str, Version]:
        """Decided versions of every node reached from the roots."""
        return {u: n.decided for u, n in sorted(self.nodes.items()) if n.active and n.decided is not None}

    # ----- mutation (trailed) -----

    def restrict_compat(self, uuid: str, rng: VersionRange, source: str = PROJECT_SOURCE, label: str = "project") -> Restriction:
        """Narrow the candidates of ``uuid`` to ``rng``.

        Returns:
            EMPTY when nothing is left, FORCED when exactly one version is
            left, OPEN otherwise.
        """
        node = self.nodes[uuid]
        remaining = rng.filter(node.candidates)
        self._trail.append(("constraint", uuid, None))
        node.constraints.append(Constraint(source=source, label=label, range=rng))
        if len(remaining) != len(node.candidates):
            self._trail.append(("candidates", uuid, node.candidates))
            node.candidates = remaining
        status = self._status(node)
        if is_debug_enabled(logger):
            logger.debug(
                "Restricted %s to %s by %s: %s left",
                node.name,
                rng,
                label,
                len(remaining),
                extra=extra_context(event="restrict", component="graph", package=node.name, outcome=status.value),
            )
        return status

    def activate(self, uuid: str) -> bool:
        """Mark ``uuid`` as required. Returns True if it was inactive."""
        node = self.nodes[uuid]
        if node.active:
            return False
        node.active = True
        self._trail.append(("active", uuid, None))
        return True

    def decide(self, uuid: str, version: Version) -> None:
        """Fix ``uuid`` to ``version``, collapsing its candidates."""
        node = self.nodes[uuid]
        self._trail.append(("decided", uuid, node.decided))
        node.decided = version
        if node.candidates != [version]:
            self._trail.append(("candidates", uuid, node.candidates))
            node.candidates = [version]

    def checkpoint(self) -> int:
        """Mark the current trail position."""
        return len(self._trail)

    def rollback(self, mark: int) -> None:
        """Undo every trailed change made after ``mark``."""
        while len(self._trail) > mark:
            kind, uuid, payload = self._trail.pop()
            node = self.nodes[uuid]
            if kind == "candidates":
                node.candidates = payload  # type: ignore[assignment]
            elif kind == "constraint":
                node.constraints.pop()
            elif kind == "active":
                node.active = False
            elif kind == "decided":
                node.decided = payload  # type: ignore[assignment]

    @staticmethod
    def _status(node: GraphNode) -> Restriction:
        if not node.candidates:
            return Restriction.EMPTY
        if len(node.candidates) == 1:
            return Restriction.FORCED
        return Restriction.OPEN
