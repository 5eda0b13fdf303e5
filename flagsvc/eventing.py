"""Change notifications and a thread-safe registry of their subscribers."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Hashable, Protocol


class NotificationType(str, Enum):
    """Kinds of events sent to evaluation-stream subscribers."""

    CONFIGURATION_CHANGE = "configuration_change"
    PROVIDER_READY = "provider_ready"
    KEEP_ALIVE = "keep_alive"
    SHUTDOWN = "shutdown"


@dataclass
class Notification:
    """A single event with an optional payload."""

    type: NotificationType
    data: dict[str, Any] = field(default_factory=dict)


class _Sink(Protocol):
    def put(self, item: Notification) -> None: ...


class EventBus:
    """Keeps subscriber queues by id and fans notifications out to all of them."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subs: dict[Hashable, _Sink] = {}

    def subscribe(self, sub_id: Hashable, queue: _Sink) -> None:
        """Register ``queue`` under ``sub_id``, replacing any earlier one."""
        with self._lock:
            self._subs[sub_id] = queue

    def unsubscribe(self, sub_id: Hashable) -> None:
        """Forget the subscriber ``sub_id``; unknown ids are ignored."""
        with self._lock:
            self._subs.pop(sub_id, None)

    def emit_to_all(self, notification: Notification) -> None:
        """Put ``notification`` on every subscribed queue."""
        with self._lock:
            sinks = list(self._subs.values())
        for sink in sinks:
            sink.put(notification)

    def subscribers(self) -> dict[Hashable, _Sink]:
        """A snapshot of the current subscriptions."""
        with self._lock:
            return dict(self._subs)