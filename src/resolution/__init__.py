"""Dependency graph and backtracking resolver.

A resolution attempt builds a ``DependencyGraph`` from the environment and the
catalog, then runs the ``Resolver`` to obtain either one version per required
package or a ``Conflict`` describing the ranges that could not be satisfied.
"""

from .builder import FixedPackage, ResolveRequest, build_graph
from .conflicts import Conflict
from .graph import DependencyGraph, NodeOverride, Restriction
from .resolver import Resolution, Resolver, resolve_graph

__all__ = [
    "Conflict",
    "DependencyGraph",
    "FixedPackage",
    "NodeOverride",
    "Resolution",
    "ResolveRequest",
    "Resolver",
    "Restriction",
    "build_graph",
    "resolve_graph",
]
