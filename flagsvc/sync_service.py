"""Flag sync service: startup tracking, subscription streams and queries."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Iterator

from flagsvc.sync_multiplexer import Multiplexer

_log = logging.getLogger(__name__)


class SyncTracker:
    """Tracks which sources still owe their first sync at startup."""

    def __init__(self, sources: list[str]) -> None:
        self._lock = threading.Lock()
        self._pending = list(sources)
        self._done = threading.Event()

    def track_and_remove(self, source: str) -> None:
        """Mark ``source`` as synced; signal completion once no source is pending."""
        with self._lock:
            if source not in self._pending:
                return
            self._pending.remove(source)
            if not self._pending:
                self._done.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Wait until every source has synced; False on timeout."""
        return self._done.wait(timeout)


class SyncHandler:
    """The operations offered to flag sync clients."""

    def __init__(self, mux: Multiplexer) -> None:
        self._mux = mux

    def sync_flags(self, selector: str = "", stop: threading.Event | None = None) -> Iterator[str]:
        """Yield the configuration for ``selector`` now and after every change."""
        stop = stop if stop is not None else threading.Event()
        inbox: queue.Queue[str] = queue.Queue(maxsize=1)
        sub_id = object()
        self._mux.register(sub_id, selector, inbox)
        try:
            while not stop.is_set():
                try:
                    flags = inbox.get(timeout=0.05)
                except queue.Empty:
                    continue
                yield flags
            _log.debug("context complete and exiting stream request")
        finally:
            self._mux.unregister(sub_id, selector)

    def fetch_all_flags(self, selector: str = "") -> str:
        """The current configuration for ``selector``."""
        return self._mux.get_all_flags(selector)

    def get_metadata(self) -> dict[str, Any]:
        """Service metadata: the watched sources."""
        return {"sources": self._mux.sources_as_metadata()}


class SyncService:
    """Holds the multiplexer and publishes changes reported by the sync sources."""

    def __init__(self, store: Any, sources: list[str]) -> None:
        self.mux = Multiplexer(store, sources)
        self.handler = SyncHandler(self.mux)
        self._tracker = SyncTracker(list(sources))

    def emit(self, is_resync: bool, source: str) -> None:
        """Record a sync from ``source``; publish unless it was only a resync."""
        self._tracker.track_and_remove(source)
        if is_resync:
            return
        try:
            self.mux.publish()
        except Exception as exc:  # publishing failures must not stop the sync source
            _log.warning("error while publishing sync streams: %s", exc)

    def wait_ready(self, timeout: float = 5.0) -> bool:
        """Wait for every known source's initial sync; False if ``timeout`` passes first."""
        if self._tracker.wait(timeout):
            return True
        _log.warning(
            "timeout while waiting for all sync sources to complete their initial sync. continuing sync service"
        )
        return False