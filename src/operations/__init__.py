"""Command orchestration: materialization, lifecycle scripts and the command pipeline."""

from .context import Context
from .orchestrator import Orchestrator
from .results import ChangeKind, CommandResult, PackageChange, StatusLine, diff_manifests

__all__ = [
    "ChangeKind",
    "CommandResult",
    "Context",
    "Orchestrator",
    "PackageChange",
    "StatusLine",
    "diff_manifests",
]
