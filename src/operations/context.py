"""Per-invocation context threaded through orchestrator commands."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from errors import CommandCancelledError
from registry.catalog import Catalog

logger = logging.getLogger(__name__)


@dataclass
class Context:
    """State scoped to one run of the tool.

    ``registry_refreshed`` ensures the catalog is refreshed at most once per
    run; ``cancel_event`` is checked between package-level steps.
    """
    registry_refreshed: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def ensure_registry_fresh(self, catalog: Catalog) -> None:
        """Refresh ``catalog`` unless this context already did."""
        if self.registry_refreshed:
            logger.debug("Registry already refreshed in this run")
            return
        catalog.refresh()
        self.registry_refreshed = True

    def cancel(self) -> None:
        """Request cooperative cancellation."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        """Raise if cancellation was requested.

        Raises:
            CommandCancelledError: When ``cancel`` has been called.
        """
        if self.cancel_event.is_set():
            raise CommandCancelledError("Command cancelled")
