"""TOML read/write helpers with atomic replacement."""

from __future__ import annotations

import logging
import os
import tempfile
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import tomli_w

from errors import ManifestCorruptError

logger = logging.getLogger(__name__)


def read_toml(path: Path) -> Optional[Dict[str, Any]]:
    """Parse ``path`` or return None when it does not exist.

    Raises:
        ManifestCorruptError: If the file exists but cannot be parsed.
    """
    try:
        with open(path, "rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        return None
    except tomllib.TOMLDecodeError as exc:
        raise ManifestCorruptError(str(path), f"invalid TOML: {exc}") from exc
    except OSError as exc:
        raise ManifestCorruptError(str(path), f"unreadable: {exc}") from exc


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place so readers never observe a partial file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def write_toml(path: Path, data: Dict[str, Any], header: Optional[str] = None) -> None:
    """Serialize ``data`` as TOML and write it atomically."""
    atomic_write_text(path, dumps_toml(data, header))
    logger.debug("Wrote %s", path)


def atomic_write_many(files: List[Tuple[Path, str]]) -> None:
    """Stage every file as a temp sibling, then rename them all into place.

    Nothing is replaced unless every temp file was written successfully.
    """
    staged: List[Tuple[str, Path]] = []
    try:
        for path, content in files:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
            staged.append((tmp_path, path))
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
    except BaseException:
        for tmp_path, _ in staged:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise
    for tmp_path, path in staged:
        os.replace(tmp_path, str(path))
        logger.debug("Wrote %s", path)


def dumps_toml(data: Dict[str, Any], header: Optional[str] = None) -> str:
    """Serialize ``data`` as TOML text with an optional comment header."""
    content = tomli_w.dumps(data)
    if header:
        content = f"# {header}\n\n{content}"
    return content
