"""Backtracking resolver over a DependencyGraph.

The search is iterative: an explicit stack of frames holds, for each branch
point, the node being decided, its ordered candidate values, the next value
to try and the graph checkpoint to roll back to. Contradictions are plain
return values, never exceptions.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

from semantic_version import Version

from common.logging_utils import Timer, extra_context, is_debug_enabled

from .conflicts import Conflict, minimal_core
from .graph import DependencyGraph, GraphNode, Restriction

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    """Outcome of a resolution: an assignment or a conflict, never both."""
    assignment: Dict[str, Version] = field(default_factory=dict)
    conflict: Optional[Conflict] = None
    steps: int = 0

    @property
    def ok(self) -> bool:
        return self.conflict is None


@dataclass
class _Frame:
    uuid: str
    values: List[Version]
    mark: int
    index: int = 0


class Resolver:
    """Choose one version per required node.

    Values are tried newest first, except that a node's incumbent (its
    version in the previous manifest) is tried before anything else unless
    the node is an upgrade target. Branching picks the undecided node with
    the fewest candidates, ties broken by identifier.

    Args:
        graph: freshly built graph; the resolver mutates it.
        cancel_check: called between steps; raises to abort the search.
    """

    def __init__(self, graph: DependencyGraph, cancel_check: Optional[Callable[[], None]] = None):
        self.graph = graph
        self.cancel_check = cancel_check
        self.steps = 0
        self._conflict_counts: Dict[str, int] = {}
        self._first_conflicts: Dict[str, Conflict] = {}
        self._stack: List[_Frame] = []

    def resolve(self) -> Resolution:
        """Run the search to completion."""
        with Timer() as timer:
            resolution = self._search()
        if resolution.ok:
            logger.info(
                "Resolved %s packages in %s steps",
                len(resolution.assignment),
                resolution.steps,
                extra=extra_context(
                    event="resolve", component="resolver", outcome="success",
                    count=len(resolution.assignment), duration_ms=timer.duration_ms(),
                ),
            )
        else:
            logger.info(
                "Resolution failed on %s after %s steps",
                resolution.conflict.name,
                resolution.steps,
                extra=extra_context(
                    event="resolve", component="resolver", outcome="conflict",
                    package=resolution.conflict.name, duration_ms=timer.duration_ms(),
                ),
            )
        return resolution

    # ----- search -----

    def _search(self) -> Resolution:
        pending: Deque[str] = deque()
        conflict = self._seed(pending) or self._propagate(pending)
        if conflict is not None:
            return Resolution(conflict=conflict, steps=self.steps)

        while True:
            self._check_cancelled()
            node = self._select()
            if node is None:
                return Resolution(assignment=self.graph.assignment(), steps=self.steps)
            self._stack.append(_Frame(uuid=node.uuid, values=self._ordered(node), mark=self.graph.checkpoint()))
            if not self._advance():
                return Resolution(conflict=self._report(), steps=self.steps)

    def _seed(self, pending: Deque[str]) -> Optional[Conflict]:
        """Activate the roots and fix any that are already forced."""
        for uuid in sorted(self.graph.roots):
            self.graph.activate(uuid)
            node = self.graph.node(uuid)
            if not node.candidates:
                return self._record(uuid)
            if len(node.candidates) == 1 and node.decided is None:
                self.graph.decide(uuid, node.candidates[0])
                pending.append(uuid)
        return None

    def _propagate(self, pending: Deque[str]) -> Optional[Conflict]:
        """Push the requirements of newly decided nodes onto their targets."""
        while pending:
            uuid = pending.popleft()
            node = self.graph.node(uuid)
            version = node.decided
            for dep, rng in sorted(self.graph.dependencies(uuid, version).items()):
                if dep not in self.graph:
                    continue
                status = self.graph.restrict_compat(dep, rng, source=uuid, label=node.label(version))
                self.graph.activate(dep)
                if status is Restriction.EMPTY:
                    return self._record(dep)
                target = self.graph.node(dep)
                if status is Restriction.FORCED and target.decided is None:
                    self.graph.decide(dep, target.candidates[0])
                    pending.append(dep)
        return None

    def _advance(self) -> bool:
        """Try the next value of the top frame, backtracking as needed.

        Returns:
            False once every frame is exhausted.
        """
        while self._stack:
            self._check_cancelled()
            frame = self._stack[-1]
            self.graph.rollback(frame.mark)
            if frame.index >= len(frame.values):
                self._stack.pop()
                continue
            version = frame.values[frame.index]
            frame.index += 1
            self.steps += 1
            self.graph.decide(frame.uuid, version)
            if is_debug_enabled(logger):
                logger.debug(
                    "Trying %s@%s (depth %s)",
                    self.graph.node(frame.uuid).name,
                    version,
                    len(self._stack),
                    extra=extra_context(event="branch", component="resolver", package=self.graph.node(frame.uuid).name),
                )
            if self._propagate(deque([frame.uuid])) is None:
                return True
        return False

    def _select(self) -> Optional[GraphNode]:
        """Most constrained undecided node, ties by identifier."""
        open_nodes = self.graph.undecided_active()
        if not open_nodes:
            return None
        return min(open_nodes, key=lambda n: (len(n.candidates), n.uuid))

    @staticmethod
    def _ordered(node: GraphNode) -> List[Version]:
        values = sorted(node.candidates, reverse=True)
        if node.previous is not None and not node.upgrade and node.previous in values:
            values.remove(node.previous)
            values.insert(0, node.previous)
        return values

    def _check_cancelled(self) -> None:
        if self.cancel_check is not None:
            self.cancel_check()

    # ----- conflict bookkeeping -----

    def _record(self, uuid: str) -> Conflict:
        node = self.graph.node(uuid)
        chain = [(self.graph.node(f.uuid).name, self.graph.node(f.uuid).decided) for f in self._stack]
        conflict = Conflict(
            uuid=uuid,
            name=node.name,
            published=list(node.published),
            constraints=minimal_core(node.published, node.constraints),
            chain=[(name, version) for name, version in chain if version is not None],
        )
        self._conflict_counts[uuid] = self._conflict_counts.get(uuid, 0) + 1
        self._first_conflicts.setdefault(uuid, conflict)
        return conflict

    def _report(self) -> Conflict:
        """The package emptied most often; ties go to the first one seen."""
        position = {u: i for i, u in enumerate(self._first_conflicts)}
        best = max(position, key=lambda u: (self._conflict_counts[u], -position[u]))
        return self._first_conflicts[best]


def resolve_graph(graph: DependencyGraph, cancel_check: Optional[Callable[[], None]] = None) -> Resolution:
    """Convenience wrapper around ``Resolver(graph).resolve()``."""
    return Resolver(graph, cancel_check=cancel_check).resolve()
