"""Recording HTTP request metrics around a WSGI application."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable

from flagsvc.middleware import Middleware, WSGIApp


class MetricsRecorder(ABC):
    """Sink for HTTP and flag-evaluation measurements."""

    @abstractmethod
    def http_attributes(self, service: str, handler_id: str, method: str, code: str) -> dict[str, str]:
        """Attributes identifying one kind of request."""

    @abstractmethod
    def in_flight_request_start(self, attrs: dict[str, str]) -> None:
        """A request has started."""

    @abstractmethod
    def in_flight_request_end(self, attrs: dict[str, str]) -> None:
        """A request has finished."""

    @abstractmethod
    def http_request_duration(self, duration: float, attrs: dict[str, str]) -> None:
        """Duration of a request in seconds."""

    @abstractmethod
    def http_response_size(self, size: int, attrs: dict[str, str]) -> None:
        """Size of a response body in bytes."""

    @abstractmethod
    def record_evaluation(self, error: BaseException | None, reason: str, variant: str, flag_key: str) -> None:
        """One flag evaluation has taken place."""


class NoopMetricsRecorder(MetricsRecorder):
    """Discards every measurement."""

    def http_attributes(self, service, handler_id, method, code):
        return {}

    def in_flight_request_start(self, attrs):
        return None

    def in_flight_request_end(self, attrs):
        return None

    def http_request_duration(self, duration, attrs):
        return None

    def http_response_size(self, size, attrs):
        return None

    def record_evaluation(self, error, reason, variant, flag_key):
        return None


def _key(attrs: dict[str, str]) -> tuple[tuple[str, str], ...]:
    return tuple(sorted(attrs.items()))


class InMemoryMetricsRecorder(MetricsRecorder):
    """Keeps all measurements in memory for inspection."""

    def __init__(self, scope: str = "") -> None:
        self.scope = scope
        self._lock = threading.Lock()
        self.in_flight: dict[tuple[tuple[str, str], ...], int] = {}
        self.durations: list[tuple[float, dict[str, str]]] = []
        self.response_sizes: list[tuple[int, dict[str, str]]] = []
        self.evaluations: list[dict[str, Any]] = []

    def http_attributes(self, service, handler_id, method, code):
        return {
            "service.name": service,
            "http.route": handler_id,
            "http.method": method,
            "http.status_code": code,
        }

    def in_flight_request_start(self, attrs):
        with self._lock:
            key = _key(attrs)
            self.in_flight[key] = self.in_flight.get(key, 0) + 1

    def in_flight_request_end(self, attrs):
        with self._lock:
            key = _key(attrs)
            self.in_flight[key] = self.in_flight.get(key, 0) - 1

    def http_request_duration(self, duration, attrs):
        with self._lock:
            self.durations.append((duration, dict(attrs)))

    def http_response_size(self, size, attrs):
        with self._lock:
            self.response_sizes.append((size, dict(attrs)))

    def record_evaluation(self, error, reason, variant, flag_key):
        with self._lock:
            self.evaluations.append(
                {"error": error, "reason": reason, "variant": variant, "flag_key": flag_key}
            )


class Reporter(ABC):
    """Exposes facts about one request/response pair."""

    @abstractmethod
    def method(self) -> str: ...

    @abstractmethod
    def url_path(self) -> str: ...

    @abstractmethod
    def status_code(self) -> int: ...

    @abstractmethod
    def bytes_written(self) -> int: ...


@dataclass
class MetricsConfig:
    """Settings of the HTTP metrics middleware."""

    metric_recorder: MetricsRecorder | None = None
    service: str = ""
    grouped_status: bool = False
    disable_measure_size: bool = False
    handler_id: str = ""


class _Interceptor:
    def __init__(self, start_response: Callable[..., Any]) -> None:
        self._start_response = start_response
        self.status = 200
        self.written = 0

    def start_response(self, status, headers, exc_info=None):
        self.status = int(status.split(None, 1)[0])
        write = self._start_response(status, headers, exc_info)

        def counting_write(data: bytes) -> None:
            self.written += len(data)
            write(data)

        return counting_write


class _WSGIReporter(Reporter):
    def __init__(self, environ: dict, interceptor: _Interceptor) -> None:
        self._environ = environ
        self._interceptor = interceptor

    def method(self) -> str:
        return self._environ.get("REQUEST_METHOD", "GET")

    def url_path(self) -> str:
        return self._environ.get("SCRIPT_NAME", "") + self._environ.get("PATH_INFO", "")

    def status_code(self) -> int:
        return self._interceptor.status

    def bytes_written(self) -> int:
        return self._interceptor.written


class HTTPMetricsMiddleware(Middleware):
    """Measures in-flight count, duration and response size of each request."""

    def __init__(self, config: MetricsConfig) -> None:
        if config.metric_recorder is None:
            config = replace(config, metric_recorder=NoopMetricsRecorder())
        self.config = config

    def measure(self, handler_id: str, reporter: Reporter, next_call: Callable[[], None]) -> None:
        """Run ``next_call`` while recording metrics taken from ``reporter``."""
        hid = handler_id or reporter.url_path()
        if self.config.grouped_status:
            code = f"{reporter.status_code() // 100}xx"
        else:
            code = str(reporter.status_code())

        recorder = self.config.metric_recorder
        attrs = recorder.http_attributes(self.config.service, hid, reporter.method(), code)

        recorder.in_flight_request_start(attrs)
        start = time.monotonic()
        try:
            next_call()
        finally:
            recorder.http_request_duration(time.monotonic() - start, attrs)
            if not self.config.disable_measure_size:
                recorder.http_response_size(reporter.bytes_written(), attrs)
            recorder.in_flight_request_end(attrs)

    def handler(self, app: WSGIApp) -> WSGIApp:
        """Wrap ``app``; its response body is collected so its size can be measured."""

        def metrics_app(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
            interceptor = _Interceptor(start_response)
            reporter = _WSGIReporter(environ, interceptor)
            chunks: list[bytes] = []

            def run() -> None:
                result = app(environ, interceptor.start_response)
                try:
                    for chunk in result:
                        interceptor.written += len(chunk)
                        chunks.append(chunk)
                finally:
                    close = getattr(result, "close", None)
                    if close is not None:
                        close()

            self.measure(self.config.handler_id, reporter, run)
            return chunks

        return metrics_app