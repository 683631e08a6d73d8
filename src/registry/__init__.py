"""Catalog of published package metadata.

The catalog maps names to identifiers and identifiers to published versions
with their per-version compat requirements.
"""

from .catalog import Catalog, InMemoryCatalog, entries_from_index
from .index import IndexCatalog

__all__ = ["Catalog", "InMemoryCatalog", "IndexCatalog", "entries_from_index"]
