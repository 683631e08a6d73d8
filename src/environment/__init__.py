"""Environment state: Project and Manifest files, locking and usage log."""

from .manifest import Manifest, ManifestEntry
from .project import Project
from .state import Environment, locate_environment
from .lock import directory_lock

__all__ = [
    "Environment",
    "Manifest",
    "ManifestEntry",
    "Project",
    "directory_lock",
    "locate_environment",
]
