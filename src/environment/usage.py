"""Manifest usage log kept in the depot.

Every persisted manifest is recorded so garbage collection knows which
manifests may still reference materialized packages.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

from constants import Constants

from .toml_io import read_toml, write_toml

logger = logging.getLogger(__name__)


def usage_log_path(depot: Path) -> Path:
    return depot / Constants.DEPOT_LOGS_DIR / Constants.USAGE_LOG_FILE


def record_manifest_usage(depot: Path, manifest_path: Path) -> None:
    """Stamp ``manifest_path`` with the current time in the usage log."""
    log_path = usage_log_path(depot)
    data = read_toml(log_path) or {}
    data[str(manifest_path.resolve())] = {"time": datetime.now(timezone.utc).replace(microsecond=0)}
    write_toml(log_path, {k: data[k] for k in sorted(data)})


def known_manifests(depot: Path, prune: bool = True) -> List[Path]:
    """Logged manifests that still exist on disk.

    With ``prune`` the log is rewritten without the vanished entries.
    """
    log_path = usage_log_path(depot)
    data: Dict[str, object] = read_toml(log_path) or {}
    alive = {k: v for k, v in data.items() if Path(k).is_file()}
    if prune and len(alive) != len(data):
        logger.info("Pruned %s dead manifest usage entries", len(data) - len(alive))
        write_toml(log_path, {k: alive[k] for k in sorted(alive)})
    return [Path(k) for k in sorted(alive)]
