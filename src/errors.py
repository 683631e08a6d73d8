"""Error taxonomy shared by the resolver, environment state and orchestrator.

Every error names the package(s) involved so that reports never degrade to a
bare "resolution failed".
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:  # pragma: no cover
    from resolution.conflicts import Conflict


class DepEnvError(Exception):
    """Base class for all expected failures."""

    def __init__(self, message: str, packages: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.message = message
        self.packages: List[str] = list(packages or [])

    def __str__(self) -> str:
        return self.message


class SpecResolutionError(DepEnvError):
    """A requested name, identifier, url or path is ambiguous or unknown."""


class ConstraintConflictError(DepEnvError):
    """Resolution found no assignment; carries the offending requirement chain."""

    def __init__(self, conflict: "Conflict"):
        super().__init__(conflict.describe(), packages=[conflict.name])
        self.conflict = conflict


class MaterializationError(DepEnvError):
    """Fetch or checkout failed, or an artifact hash mismatched the manifest."""

    def __init__(self, package: str, reason: str):
        super().__init__(f"Failed to materialize {package}: {reason}", packages=[package])
        self.package = package
        self.reason = reason


class BuildError(DepEnvError):
    """A lifecycle script failed, or was skipped because a dependency failed."""

    def __init__(
        self,
        package: str,
        phase: str = "build",
        returncode: Optional[int] = None,
        log_path: Optional[str] = None,
        blocked_by: Optional[str] = None,
    ):
        if blocked_by is not None:
            message = f"{phase} of {package} skipped: dependency {blocked_by} failed"
        else:
            message = f"{phase} of {package} failed with exit code {returncode}"
            if log_path:
                message += f" (see {log_path})"
        super().__init__(message, packages=[package])
        self.package = package
        self.phase = phase
        self.returncode = returncode
        self.log_path = log_path
        self.blocked_by = blocked_by


class ManifestCorruptError(DepEnvError):
    """Persisted state failed to parse or violates an invariant on load."""

    def __init__(self, path: str, reason: str, packages: Optional[Iterable[str]] = None):
        super().__init__(f"Corrupt environment file {path}: {reason}", packages=packages)
        self.path = path
        self.reason = reason


class EnvironmentLockedError(DepEnvError):
    """Another invocation holds the environment lock."""

    def __init__(self, path: str):
        super().__init__(f"Environment {path} is locked by another process")
        self.path = path


class CommandCancelledError(DepEnvError):
    """Cancellation was requested between package-level steps."""


class RegistryUnavailableError(DepEnvError):
    """The catalog could not be loaded or refreshed."""
