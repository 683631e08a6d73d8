"""Fetch collaborator: put resolved packages on disk.

Registry and repo-tracked packages land in ``<depot>/packages/<name>/<slug>``
where the slug is derived from identifier and content hash, so a directory
that exists is complete and never needs to be fetched again.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import shutil
import subprocess
import tarfile
import tempfile
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from constants import Constants
from environment.manifest import ManifestEntry
from errors import CommandCancelledError, DepEnvError, MaterializationError
from common.http_client import download
from common.logging_utils import Timer, extra_context, safe_url
from versioning.models import Tracking

logger = logging.getLogger(__name__)

_IGNORED_NAMES = {".git", Constants.LOCK_FILE}


def tree_hash(root: Path) -> str:
    """Content hash of a directory tree.

    Covers relative paths and file bytes in sorted order, ignoring VCS
    metadata, so identical checkouts hash identically wherever they live.
    """
    digest = hashlib.sha256()
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _IGNORED_NAMES)
        for filename in sorted(filenames):
            if filename in _IGNORED_NAMES:
                continue
            full = Path(dirpath) / filename
            digest.update(full.relative_to(root).as_posix().encode("utf-8"))
            digest.update(b"\0")
            with open(full, "rb") as handle:
                for chunk in iter(lambda: handle.read(Constants.DOWNLOAD_CHUNK_BYTES), b""):
                    digest.update(chunk)
            digest.update(b"\0")
    return digest.hexdigest()


def file_hash(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(Constants.DOWNLOAD_CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()


def version_slug(uuid: str, content_hash: str) -> str:
    """Short, filesystem friendly name for one version of one package."""
    raw = hashlib.sha256(f"{uuid}:{content_hash}".encode("utf-8")).digest()
    return base64.b32encode(raw).decode("ascii").lower()[: Constants.SLUG_LENGTH]


class Fetcher(ABC):
    """Materialization contract used by the orchestrator."""

    @abstractmethod
    def materialize(self, entry: ManifestEntry, source_url: Optional[str] = None) -> Path:
        """Install a registry or repo-tracked entry and return its directory.

        The installed content must match ``entry.tree_hash``.

        Raises:
            MaterializationError: On fetch failure or hash mismatch.
        """

    @abstractmethod
    def materialize_source(self, url_or_path: str, rev: Optional[str] = None) -> Path:
        """Check out a url or local path into a fresh staging directory."""

    @abstractmethod
    def install_snapshot(self, staging: Path, name: str, uuid: str) -> Tuple[Path, str]:
        """Move a staged checkout into the depot; return (path, tree hash)."""

    @abstractmethod
    def clone_to(self, url: str, dest: Path, rev: Optional[str] = None) -> Path:
        """Clone ``url`` into ``dest`` as a working copy for development."""

    @abstractmethod
    def package_path(self, entry: ManifestEntry, base: Path) -> Path:
        """Directory where ``entry`` lives or would live once materialized."""

    def is_installed(self, entry: ManifestEntry, base: Path) -> bool:
        return self.package_path(entry, base).is_dir()


class DepotFetcher(Fetcher):
    """Fetcher storing packages in a depot directory.

    Registry artifacts are tarballs downloaded over HTTP (or read from a
    local file for ``file://`` and plain paths) and verified with sha256.
    Sources are checked out with ``git``.
    """

    def __init__(self, depot: Path):
        self.depot = Path(depot)
        self.packages_dir = self.depot / Constants.DEPOT_PACKAGES_DIR
        self.clones_dir = self.depot / Constants.DEPOT_CLONES_DIR

    def package_path(self, entry: ManifestEntry, base: Path) -> Path:
        if entry.tracking == Tracking.PATH:
            return (Path(base) / os.path.expanduser(entry.path)).resolve()
        return self.packages_dir / entry.name / version_slug(entry.uuid, entry.tree_hash or "")

    def materialize(self, entry: ManifestEntry, source_url: Optional[str] = None) -> Path:
        if entry.tracking == Tracking.PATH:
            raise MaterializationError(entry.name, "path-tracked packages are never materialized")
        target = self.package_path(entry, self.depot)
        if target.is_dir():
            logger.debug("%s already installed at %s", entry.name, target)
            return target

        with Timer() as timer:
            if entry.tracking == Tracking.REPO:
                staging = self.materialize_source(entry.repo_url, entry.repo_rev)
                actual = tree_hash(staging)
                if actual != entry.tree_hash:
                    shutil.rmtree(staging, ignore_errors=True)
                    raise MaterializationError(
                        entry.name, f"tree hash mismatch: expected {entry.tree_hash}, got {actual}"
                    )
            else:
                if not source_url:
                    raise MaterializationError(entry.name, f"no download url for version {entry.version}")
                staging = self._fetch_archive(entry, source_url)
            self._move_into_place(staging, target)

        logger.info(
            "Installed %s %s",
            entry.name,
            entry.version or entry.repo_rev or "",
            extra=extra_context(
                event="materialize", component="fetcher", outcome="success",
                package=entry.name, version=entry.version, duration_ms=timer.duration_ms(),
            ),
        )
        return target

    def materialize_source(self, url_or_path: str, rev: Optional[str] = None) -> Path:
        self.clones_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix="checkout-", dir=str(self.clones_dir)))
        local = Path(os.path.expanduser(url_or_path))
        try:
            if local.is_dir() and rev is None:
                shutil.copytree(local, staging, dirs_exist_ok=True, ignore=shutil.ignore_patterns(*_IGNORED_NAMES))
            else:
                source = str(local.resolve()) if local.is_dir() else url_or_path
                self._git("clone", "--quiet", source, str(staging))
                if rev:
                    self._git("-C", str(staging), "checkout", "--quiet", rev)
                shutil.rmtree(staging / ".git", ignore_errors=True)
        except (OSError, MaterializationError):
            shutil.rmtree(staging, ignore_errors=True)
            raise
        logger.debug("Checked out %s%s into %s", safe_url(url_or_path), f"#{rev}" if rev else "", staging)
        return staging

    def install_snapshot(self, staging: Path, name: str, uuid: str) -> Tuple[Path, str]:
        content_hash = tree_hash(staging)
        target = self.packages_dir / name / version_slug(uuid, content_hash)
        if target.is_dir():
            shutil.rmtree(staging, ignore_errors=True)
        else:
            self._move_into_place(staging, target)
        return target, content_hash

    def clone_to(self, url: str, dest: Path, rev: Optional[str] = None) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        self._git("clone", "--quiet", url, str(dest))
        if rev:
            self._git("-C", str(dest), "checkout", "--quiet", rev)
        return dest

    # ----- helpers -----

    def _fetch_archive(self, entry: ManifestEntry, source_url: str) -> Path:
        self.packages_dir.mkdir(parents=True, exist_ok=True)
        fd, archive = tempfile.mkstemp(prefix=f".{entry.name}.", suffix=".tar.gz", dir=str(self.packages_dir))
        os.close(fd)
        try:
            if source_url.startswith(("http://", "https://")):
                try:
                    actual = download(source_url, archive, context=entry.name)
                except DepEnvError as exc:
                    raise MaterializationError(entry.name, str(exc)) from exc
            else:
                local = source_url[len("file://"):] if source_url.startswith("file://") else source_url
                try:
                    shutil.copyfile(os.path.expanduser(local), archive)
                except OSError as exc:
                    raise MaterializationError(entry.name, f"cannot read {local}: {exc}") from exc
                actual = file_hash(Path(archive))
            if actual != entry.tree_hash:
                raise MaterializationError(
                    entry.name, f"hash mismatch for {entry.version}: expected {entry.tree_hash}, got {actual}"
                )
            staging = Path(tempfile.mkdtemp(prefix=f".{entry.name}.", dir=str(self.packages_dir)))
            try:
                with tarfile.open(archive) as tar:
                    tar.extractall(staging, filter="data")
            except (tarfile.TarError, OSError) as exc:
                shutil.rmtree(staging, ignore_errors=True)
                raise MaterializationError(entry.name, f"cannot unpack archive: {exc}") from exc
            return _strip_single_root(staging)
        finally:
            try:
                os.unlink(archive)
            except OSError:
                pass

    @staticmethod
    def _move_into_place(staging: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.replace(staging, target)
        except OSError:
            if target.is_dir():
                # another process finished the same install first
                shutil.rmtree(staging, ignore_errors=True)
            else:
                raise

    @staticmethod
    def _git(*args: str) -> None:
        cmd = ["git", *args]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, check=False)  # noqa: S603
        except FileNotFoundError as exc:
            raise MaterializationError(args[-1], "git executable not found") from exc
        if proc.returncode != 0:
            raise MaterializationError(args[-1], f"git {args[0]} failed: {proc.stderr.strip()}")


def _strip_single_root(staging: Path) -> Path:
    """Use the only top-level directory of an archive as the package root."""
    children = list(staging.iterdir())
    if len(children) == 1 and children[0].is_dir():
        inner = staging.parent / f"{staging.name}.root"
        os.replace(children[0], inner)
        staging.rmdir()
        os.replace(inner, staging)
    return staging


def materialize_all(
    fetcher: Fetcher,
    entries: Iterable[ManifestEntry],
    sources: Dict[str, Optional[str]],
    max_workers: int = Constants.MAX_WORKERS,
    cancel_check: Optional[Callable[[], None]] = None,
) -> Tuple[Dict[str, Path], List[DepEnvError]]:
    """Materialize ``entries`` on a worker pool.

    Failures are collected rather than raised so every package gets a
    chance; the caller reports them together.

    Returns:
        (installed paths by identifier, errors)
    """
    todo = sorted(entries, key=lambda e: (e.name, e.uuid))
    installed: Dict[str, Path] = {}
    errors: List[DepEnvError] = []
    if not todo:
        return installed, errors

    def _one(entry: ManifestEntry) -> Path:
        if cancel_check is not None:
            cancel_check()
        return fetcher.materialize(entry, sources.get(entry.uuid))

    workers = max(1, min(max_workers, len(todo)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(_one, entry): entry for entry in todo}
        for future in as_completed(futures):
            entry = futures[future]
            try:
                installed[entry.uuid] = future.result()
            except CommandCancelledError:
                raise
            except DepEnvError as exc:
                logger.warning("Could not install %s: %s", entry.name, exc)
                errors.append(exc)
    errors.sort(key=lambda e: e.packages)
    return installed, errors
