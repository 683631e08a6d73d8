"""Catalog backed by a JSON index file or URL."""

from __future__ import annotations

import json
import logging
import os
from typing import Optional

from constants import Constants
from errors import RegistryUnavailableError
from common.http_client import get_json
from common.logging_utils import safe_url

from .cache import TTLCache
from .catalog import Catalog, InMemoryCatalog, entries_from_index

logger = logging.getLogger(__name__)


def _is_remote(location: str) -> bool:
    return location.startswith(("http://", "https://"))


class IndexCatalog(Catalog):
    """Catalog loaded lazily from a JSON index.

    ``location`` is either an http(s) URL or a local file path. The parsed
    index is kept in a TTL cache; ``refresh`` drops it so the next query
    re-reads the source.
    """

    def __init__(self, location: str, cache: Optional[TTLCache] = None):
        self.location = location
        self.cache = cache or TTLCache(default_ttl=Constants.HTTP_CACHE_TTL_SEC)

    def _load(self) -> InMemoryCatalog:
        cached = self.cache.get(self.location)
        if cached is not None:
            return cached

        if _is_remote(self.location):
            status_code, _, data = get_json(self.location, context="registry index")
            if status_code != 200 or data is None:
                raise RegistryUnavailableError(
                    f"Registry index {safe_url(self.location)} unavailable (status {status_code})"
                )
        else:
            path = os.path.expanduser(self.location)
            try:
                with open(path, encoding="utf-8") as handle:
                    data = json.load(handle)
            except FileNotFoundError as exc:
                raise RegistryUnavailableError(f"Registry index {path} not found") from exc
            except (OSError, json.JSONDecodeError) as exc:
                raise RegistryUnavailableError(f"Registry index {path} unreadable: {exc}") from exc

        catalog = InMemoryCatalog(entries_from_index(data, source=self.location))
        self.cache.set(self.location, catalog)
        logger.info("Registry index loaded from %s (%s packages)", safe_url(self.location), len(catalog))
        return catalog

    def lookup(self, name: str) -> str:
        return self._load().lookup(name)

    def entry(self, uuid: str):
        return self._load().entry(uuid)

    def has(self, uuid: str) -> bool:
        return self._load().has(uuid)

    def refresh(self) -> None:
        logger.info("Refreshing registry index %s", safe_url(self.location))
        self.cache.invalidate(self.location)
        self._load()
