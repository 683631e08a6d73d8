"""Runtime settings: depot location, workers, lock behaviour.

Precedence, highest first: CLI arguments, environment variables, the YAML
config file (``--config`` or ``<depot>/config/depenv.yml``), then the
defaults in ``Constants``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from constants import Constants

logger = logging.getLogger(__name__)

_TRUE = ("1", "true", "yes", "on")


def _default_depot() -> Path:
    return Path(os.path.expanduser(Constants.DEFAULT_DEPOT))


def load_config_file(config_path: Optional[str]) -> Dict[str, Any]:
    """Read a YAML config file; a missing or empty file yields ``{}``.

    Raises:
        ValueError: If the file exists but is not a YAML mapping.
    """
    if not config_path or not os.path.isfile(config_path):
        if config_path:
            logger.debug("Config file not found: %s", config_path)
        return {}
    with open(config_path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    return data.get("depenv", data)


@dataclass
class Settings:
    """Resolved runtime settings."""
    depot: Path = field(default_factory=_default_depot)
    devdir: Optional[Path] = None
    registry_index: Optional[str] = None
    max_workers: int = Constants.MAX_WORKERS
    lock_blocking: bool = Constants.LOCK_BLOCKING
    http_timeout: int = Constants.REQUEST_TIMEOUT

    @property
    def dev_root(self) -> Path:
        """Shared location for development checkouts."""
        return self.devdir or self.depot / Constants.DEPOT_DEV_DIR

    def apply(self, values: Mapping[str, Any]) -> None:
        """Overlay non-empty ``values`` onto these settings."""
        if values.get("depot"):
            self.depot = Path(os.path.expanduser(str(values["depot"])))
        if values.get("devdir"):
            self.devdir = Path(os.path.expanduser(str(values["devdir"])))
        if values.get("registry_index"):
            self.registry_index = str(values["registry_index"])
        if values.get("max_workers") is not None:
            self.max_workers = max(1, int(values["max_workers"]))
        if values.get("lock_blocking") is not None:
            raw = values["lock_blocking"]
            self.lock_blocking = raw if isinstance(raw, bool) else str(raw).strip().lower() in _TRUE
        if values.get("http_timeout") is not None:
            self.http_timeout = int(values["http_timeout"])

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        """Settings values present in the process environment."""
        environ = os.environ if environ is None else environ
        return {
            "depot": environ.get(Constants.ENV_DEPOT),
            "devdir": environ.get(Constants.ENV_DEVDIR),
            "registry_index": environ.get(Constants.ENV_REGISTRY),
            "max_workers": environ.get(Constants.ENV_MAX_WORKERS) or None,
        }

    @classmethod
    def from_args(cls, args: Any = None, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from CLI arguments, environment and config file.

        Args:
            args: Parsed CLI arguments namespace (may be None).
            environ: Environment mapping; defaults to ``os.environ``.

        Returns:
            Settings instance.
        """
        env_values = cls.from_environ(environ)
        cli_values = {
            "depot": getattr(args, "DEPOT", None),
            "devdir": getattr(args, "DEVDIR", None),
            "registry_index": getattr(args, "REGISTRY", None),
            "max_workers": getattr(args, "MAX_WORKERS", None),
            "lock_blocking": False if getattr(args, "NO_WAIT", False) else None,
        }

        depot = cli_values["depot"] or env_values["depot"] or Constants.DEFAULT_DEPOT
        config_path = getattr(args, "CONFIG", None) or str(
            Path(os.path.expanduser(str(depot))) / Constants.DEPOT_CONFIG_DIR / Constants.CONFIG_FILE
        )

        settings = cls()
        settings.apply(load_config_file(config_path))
        settings.apply(env_values)
        settings.apply(cli_values)
        logger.debug("Using depot %s with %s workers", settings.depot, settings.max_workers)
        return settings
