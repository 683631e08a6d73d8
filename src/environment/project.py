"""Project file: the desired-state declaration of direct dependencies."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from constants import Constants
from errors import ManifestCorruptError
from versioning.ranges import VersionRange

from .toml_io import read_toml, write_toml

_KNOWN_KEYS = ("name", "uuid", "version", "deps", "compat", "extras", "targets", "scripts")


@dataclass
class Project:
    """Parsed Project.toml.

    ``deps`` and ``extras`` map names to identifiers, ``compat`` maps names to
    ranges, ``targets`` lists extras per target (``test``) and ``scripts``
    holds lifecycle commands (``build``, ``test``).
    """
    name: Optional[str] = None
    uuid: Optional[str] = None
    version: Optional[str] = None
    deps: Dict[str, str] = field(default_factory=dict)
    compat: Dict[str, VersionRange] = field(default_factory=dict)
    extras: Dict[str, str] = field(default_factory=dict)
    targets: Dict[str, List[str]] = field(default_factory=dict)
    scripts: Dict[str, str] = field(default_factory=dict)
    other: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def load(cls, path: Path) -> "Project":
        """Read ``path``; a missing file yields an empty project.

        Raises:
            ManifestCorruptError: On parse errors or invariant violations.
        """
        data = read_toml(path)
        if data is None:
            return cls()
        return cls.from_dict(data, source=str(path))

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: str = "<project>") -> "Project":
        """Build a project from decoded TOML."""
        def _table(key: str) -> Dict[str, Any]:
            value = data.get(key, {}) or {}
            if not isinstance(value, dict):
                raise ManifestCorruptError(source, f"[{key}] must be a table")
            return value

        deps = {str(k): str(v) for k, v in _table("deps").items()}
        extras = {str(k): str(v) for k, v in _table("extras").items()}
        compat: Dict[str, VersionRange] = {}
        for name, raw in _table("compat").items():
            try:
                compat[str(name)] = VersionRange(str(raw))
            except ValueError as exc:
                raise ManifestCorruptError(source, str(exc), packages=[str(name)]) from exc
        targets: Dict[str, List[str]] = {}
        for target, names in _table("targets").items():
            if not isinstance(names, list):
                raise ManifestCorruptError(source, f"target {target} must list package names")
            targets[str(target)] = [str(n) for n in names]
        scripts = {str(k): str(v) for k, v in _table("scripts").items()}

        seen: Dict[str, str] = {}
        for name, uuid in list(deps.items()) + list(extras.items()):
            if uuid in seen and seen[uuid] != name:
                raise ManifestCorruptError(
                    source, f"identifier {uuid} is declared as both {seen[uuid]} and {name}", packages=[name]
                )
            seen[uuid] = name

        return cls(
            name=data.get("name"),
            uuid=data.get("uuid"),
            version=data.get("version"),
            deps=deps,
            compat=compat,
            extras=extras,
            targets=targets,
            scripts=scripts,
            other={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )

    def to_dict(self) -> Dict[str, Any]:
        """Deterministic TOML-ready representation."""
        data: Dict[str, Any] = {}
        for key in ("name", "uuid", "version"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        data.update({k: self.other[k] for k in sorted(self.other)})
        if self.deps:
            data["deps"] = {k: self.deps[k] for k in sorted(self.deps)}
        if self.compat:
            data["compat"] = {k: str(self.compat[k]) for k in sorted(self.compat)}
        if self.extras:
            data["extras"] = {k: self.extras[k] for k in sorted(self.extras)}
        if self.targets:
            data["targets"] = {k: list(self.targets[k]) for k in sorted(self.targets)}
        if self.scripts:
            data["scripts"] = {k: self.scripts[k] for k in sorted(self.scripts)}
        return data

    def write(self, path: Path) -> None:
        """Persist atomically."""
        write_toml(path, self.to_dict())

    def name_for(self, uuid: str) -> Optional[str]:
        """Name under which ``uuid`` is declared (deps first, then extras)."""
        for table in (self.deps, self.extras):
            for name, candidate in table.items():
                if candidate == uuid:
                    return name
        return None

    def add_dep(self, name: str, uuid: str) -> None:
        """Declare a direct dependency, replacing any entry with the same uuid."""
        existing = self.name_for(uuid)
        if existing is not None and existing != name:
            self.deps.pop(existing, None)
        self.deps[name] = uuid

    def remove_dep(self, name: str) -> None:
        """Drop a direct dependency and its compat entry."""
        self.deps.pop(name, None)
        self.compat.pop(name, None)

    def test_deps(self) -> Dict[str, str]:
        """Extras listed under the test target."""
        names = self.targets.get(Constants.TEST_TARGET, [])
        return {n: self.extras[n] for n in names if n in self.extras}
