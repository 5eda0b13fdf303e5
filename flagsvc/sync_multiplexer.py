"""Fan-out of flag configuration snapshots to sync subscribers."""

from __future__ import annotations

import dataclasses
import json
import threading
from collections import defaultdict
from typing import Any, Hashable, Mapping, Protocol


class UnknownSourceError(LookupError):
    """Raised when a subscription or query names a source that is not watched."""

    def __init__(self, source: str) -> None:
        super().__init__(f"no flag watcher setup for source {source}")
        self.source = source


class _Sink(Protocol):
    def put(self, item: str) -> None: ...


def _encode(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    raise TypeError(f"{type(obj).__name__} is not JSON serializable")


def _dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, default=_encode, ensure_ascii=False)


EMPTY_CONFIG = _dumps({"flags": {}})


def _get_all(store: Any) -> Mapping[str, Any]:
    getter = getattr(store, "get_all", None)
    if callable(getter):
        return getter()
    return store


def _source_of(flag: Any) -> str:
    if isinstance(flag, Mapping):
        return str(flag.get("source", ""))
    return str(getattr(flag, "source", ""))


class Multiplexer:
    """Keeps pre-rendered flag configurations and pushes them to subscribers.

    Subscribers without a source receive every flag; subscribers of a source
    receive only the flags coming from that source.
    """

    def __init__(self, store: Any, sources: list[str]) -> None:
        self._store = store
        self._sources = list(sources)
        self._lock = threading.RLock()
        self._subs: dict[Hashable, _Sink] = {}
        self._selector_subs: dict[str, dict[Hashable, _Sink]] = {}
        self._all_flags = ""
        self._selector_flags: dict[str, str] = {}
        self._refill()

    def register(self, sub_id: Hashable, source: str, queue: _Sink) -> None:
        """Subscribe ``queue`` and send it the current configuration straight away."""
        with self._lock:
            if source and source not in self._sources:
                raise UnknownSourceError(source)
            if not source:
                self._subs[sub_id] = queue
                initial = self._all_flags
            else:
                self._selector_subs.setdefault(source, {})[sub_id] = queue
                initial = self._selector_flags.get(source, "")
        queue.put(initial)

    def publish(self) -> None:
        """Re-read the store and push fresh configurations to every subscriber."""
        with self._lock:
            self._refill()
            deliveries = [(sink, self._all_flags) for sink in self._subs.values()]
            for source, flags in self._selector_flags.items():
                deliveries.extend((sink, flags) for sink in self._selector_subs.get(source, {}).values())
        for sink, flags in deliveries:
            sink.put(flags)

    def unregister(self, sub_id: Hashable, selector: str) -> None:
        """Remove a subscription; unknown ids are ignored."""
        with self._lock:
            target = self._subs if not selector else self._selector_subs.get(selector, {})
            target.pop(sub_id, None)

    def get_all_flags(self, source: str = "") -> str:
        """The configuration for ``source``, or for all sources when it is empty."""
        with self._lock:
            if not source:
                return self._all_flags
            if source not in self._sources:
                raise UnknownSourceError(source)
            return self._selector_flags.get(source, "")

    def sources_as_metadata(self) -> str:
        """All known sources, comma separated."""
        with self._lock:
            return ",".join(self._sources)

    def _refill(self) -> None:
        selector_flags = {source: EMPTY_CONFIG for source in self._sources}
        try:
            flags = dict(_get_all(self._store))
        except Exception as exc:
            raise RuntimeError(f"error retrieving flags from the store: {exc}") from exc
        try:
            all_flags = _dumps({"flags": flags})
        except (TypeError, ValueError) as exc:
            raise ValueError(f"error marshalling: {exc}") from exc

        collector: dict[str, dict[str, Any]] = defaultdict(dict)
        for key, flag in flags.items():
            collector[_source_of(flag)][key] = flag
        for source, group in collector.items():
            try:
                selector_flags[source] = _dumps({"flags": group})
            except (TypeError, ValueError) as exc:
                raise ValueError(f"unable to marshal flags: {exc}") from exc

        self._all_flags = all_flags
        self._selector_flags = selector_flags