"""HTTP front end for flag evaluation plus the management (health/metrics) server."""

from __future__ import annotations

import logging
import os
import socket
import socketserver
import ssl
import threading
import uuid
from dataclasses import dataclass, field
from socketserver import ThreadingMixIn
from typing import Any, Callable, Iterable, Iterator
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer

from flagsvc.eventing import EventBus, Notification, NotificationType
from flagsvc.flag_evaluation import (
    EVALUATION_SCHEMA,
    OLD_SCHEMA,
    AnyFlag,
    Code,
    ConnectError,
    Evaluator,
    FlagEvaluationService,
)
from flagsvc.http_metrics import (
    HTTPMetricsMiddleware,
    InMemoryMetricsRecorder,
    MetricsConfig,
    MetricsRecorder,
    NoopMetricsRecorder,
)
from flagsvc.json_codec import CodecError, JsonCodec
from flagsvc.middleware import CorsMiddleware, Middleware, PassthroughMiddleware, WSGIApp

_log = logging.getLogger(__name__)

FLAGD_SCHEMA_PREFIX = "/flagd"

_HTTP_STATUS = {
    Code.CANCELED: "499 Client Closed Request",
    Code.UNKNOWN: "500 Internal Server Error",
    Code.INVALID_ARGUMENT: "400 Bad Request",
    Code.DEADLINE_EXCEEDED: "504 Gateway Timeout",
    Code.NOT_FOUND: "404 Not Found",
    Code.ALREADY_EXISTS: "409 Conflict",
    Code.PERMISSION_DENIED: "403 Forbidden",
    Code.RESOURCE_EXHAUSTED: "429 Too Many Requests",
    Code.FAILED_PRECONDITION: "412 Precondition Failed",
    Code.ABORTED: "409 Conflict",
    Code.OUT_OF_RANGE: "400 Bad Request",
    Code.UNIMPLEMENTED: "501 Not Implemented",
    Code.INTERNAL: "500 Internal Server Error",
    Code.UNAVAILABLE: "503 Service Unavailable",
    Code.DATA_LOSS: "500 Internal Server Error",
    Code.UNAUTHENTICATED: "401 Unauthorized",
}

_UNARY = ("ResolveAll", "ResolveBoolean", "ResolveString", "ResolveInt", "ResolveFloat", "ResolveObject")
_STREAM = "EventStream"


def _always_ready() -> bool:
    return True


@dataclass
class ServiceConfiguration:
    """Where and how the evaluation and management servers listen."""

    port: int = 8013
    management_port: int = 8014
    host: str = ""
    socket_path: str = ""
    cert_path: str = ""
    key_path: str = ""
    service_name: str = "flagd"
    cors: list[str] = field(default_factory=list)
    readiness_probe: Callable[[], bool] = _always_ready


class SchemaSwitch:
    """Routes requests of the evaluation schema to ``new`` and all others to ``old``."""

    def __init__(self, old: WSGIApp, new: WSGIApp) -> None:
        self.old = old
        self.new = new

    def __call__(self, environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        if environ.get("PATH_INFO", "").startswith(FLAGD_SCHEMA_PREFIX):
            return self.new(environ, start_response)
        return self.old(environ, start_response)


def _envelope(flags: int, payload: bytes) -> bytes:
    return bytes([flags]) + len(payload).to_bytes(4, "big") + payload


def _any_flag_json(flag: AnyFlag) -> dict[str, Any]:
    value = flag.value
    if isinstance(value, bool):
        key = "boolValue"
    elif isinstance(value, str):
        key = "stringValue"
    elif isinstance(value, dict):
        key = "objectValue"
    else:
        key = "doubleValue"
    return {"reason": flag.reason, "variant": flag.variant, key: value}


class _EvaluationApp:
    """Connect-style JSON endpoints of one evaluation service."""

    def __init__(
        self,
        service: FlagEvaluationService,
        prefix: str,
        codec: JsonCodec,
        stop: threading.Event,
        keep_alive: float = 20.0,
    ) -> None:
        self._service = service
        self._prefix = prefix
        self._codec = codec
        self._stop = stop
        self._keep_alive = keep_alive
        self._resolvers = {
            "ResolveBoolean": service.resolve_boolean,
            "ResolveString": service.resolve_string,
            "ResolveInt": service.resolve_int,
            "ResolveFloat": service.resolve_float,
            "ResolveObject": service.resolve_object,
        }

    def __call__(self, environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        path = environ.get("PATH_INFO", "")
        procedure = path[len(self._prefix):] if path.startswith(self._prefix) else ""
        if procedure not in _UNARY and procedure != _STREAM:
            start_response("404 Not Found", [("Content-Type", "text/plain; charset=utf-8")])
            return [b"404 page not found\n"]
        if environ.get("REQUEST_METHOD", "GET").upper() != "POST":
            start_response("405 Method Not Allowed", [("Allow", "POST")])
            return []

        data = self._read_body(environ)
        if procedure == _STREAM:
            start_response("200 OK", [("Content-Type", "application/connect+json")])
            return self._frames()

        try:
            request = self._decode(data)
            body = self._unary(procedure, request)
        except ConnectError as exc:
            return self._error(start_response, exc)
        except Exception as exc:  # any other failure is an unknown error for the client
            return self._error(start_response, ConnectError(Code.UNKNOWN, str(exc)))
        payload = self._codec.marshal_stable(body)
        start_response("200 OK", [("Content-Type", "application/json"), ("Content-Length", str(len(payload)))])
        return [payload]

    @staticmethod
    def _read_body(environ: dict) -> bytes:
        try:
            length = int(environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        stream = environ.get("wsgi.input")
        return stream.read(length) if stream is not None and length > 0 else b""

    def _decode(self, data: bytes) -> dict[str, Any]:
        if not data:
            return {}
        message: dict[str, Any] = {}
        try:
            self._codec.unmarshal(data, message)
        except CodecError as exc:
            raise ConnectError(Code.INVALID_ARGUMENT, str(exc)) from exc
        return message

    def _unary(self, procedure: str, request: dict[str, Any]) -> dict[str, Any]:
        context = request.get("context") or {}
        if not isinstance(context, dict):
            raise ConnectError(Code.INVALID_ARGUMENT, "context must be a JSON object")
        if procedure == "ResolveAll":
            flags = self._service.resolve_all(context)
            return {"flags": {key: _any_flag_json(flag) for key, flag in flags.items()}}

        flag_key = str(request.get("flagKey", request.get("flag_key", "")))
        response = self._resolvers[procedure](flag_key, context)
        value = response.value
        if procedure == "ResolveInt":
            value = str(int(value or 0))  # int64 fields travel as JSON strings
        elif procedure == "ResolveFloat":
            value = float(value or 0.0)
        return {
            "value": value,
            "reason": response.reason,
            "variant": response.variant,
            "metadata": response.metadata or {},
        }

    def _error(self, start_response: Callable[..., Any], error: ConnectError) -> list[bytes]:
        payload = self._codec.marshal_stable({"code": error.code.value, "message": error.message})
        start_response(
            _HTTP_STATUS.get(error.code, "500 Internal Server Error"),
            [("Content-Type", "application/json"), ("Content-Length", str(len(payload)))],
        )
        return [payload]

    def _frames(self) -> Iterator[bytes]:
        events = self._service.event_stream(uuid.uuid4().hex, self._stop, self._keep_alive)
        try:
            for notification in events:
                message = {"type": notification.type.value, "data": notification.data}
                yield _envelope(0, self._codec.marshal_stable(message))
            yield _envelope(2, b"{}")
        finally:
            events.close()


class _Handler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        _log.debug("%s - %s", self.address_string(), format % args)


class _UnixHandler(_Handler):
    def __init__(self, request: Any, client_address: Any, server: Any) -> None:
        super().__init__(request, ("unix", 0), server)


class _TCPServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _UnixServer(_TCPServer):
    address_family = socket.AF_UNIX
    allow_reuse_address = False

    def server_bind(self) -> None:
        socketserver.TCPServer.server_bind(self)
        self.server_name = "localhost"
        self.server_port = 0
        self.setup_environ()


def _make_server(server_cls: type, address: Any, handler: type, app: WSGIApp) -> WSGIServer:
    server = server_cls(address, handler)
    server.set_app(app)
    return server


class ConnectService:
    """Serves flag evaluation over HTTP and probes and metrics on a management port."""

    def __init__(self, evaluator: Evaluator, metrics: MetricsRecorder | None = None) -> None:
        self.evaluator = evaluator
        self.metrics: MetricsRecorder = metrics if metrics is not None else NoopMetricsRecorder()
        self.events = EventBus()
        self.readiness_enabled = False
        self.ready = threading.Event()
        self.address: Any = None
        self.management_address: Any = None
        self._app: WSGIApp | None = None
        self._stop = threading.Event()

    def notify(self, notification: Notification) -> None:
        """Send ``notification`` to every event stream."""
        self.events.emit_to_all(notification)

    def shutdown(self) -> None:
        """Report not-ready and tell every event stream that the service stops."""
        self.readiness_enabled = False
        self.events.emit_to_all(Notification(NotificationType.SHUTDOWN, {}))

    def add_middleware(self, middleware: Middleware) -> None:
        """Wrap the current evaluation application in ``middleware``."""
        if self._app is None:
            raise RuntimeError("the evaluation application has not been built")
        self._app = middleware.handler(self._app)

    def build_app(self, config: ServiceConfiguration) -> WSGIApp:
        """Assemble the evaluation application with its middlewares and return it."""
        codec = JsonCodec("json", emit_unpopulated=True, discard_unknown=True)
        old = FlagEvaluationService(self.evaluator, self.events, self.metrics, schema=OLD_SCHEMA)
        new = FlagEvaluationService(self.evaluator, self.events, self.metrics, schema=EVALUATION_SCHEMA)
        switch = SchemaSwitch(
            _EvaluationApp(old, f"/{OLD_SCHEMA}.Service/", codec, self._stop),
            _EvaluationApp(new, f"/{EVALUATION_SCHEMA}.Service/", codec, self._stop),
        )
        measured = HTTPMetricsMiddleware(
            MetricsConfig(metric_recorder=self.metrics, service=config.service_name)
        ).handler(switch)

        # The metrics middleware buffers whole bodies, so event streams go around it.
        def routed(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
            if environ.get("PATH_INFO", "").endswith("/" + _STREAM):
                return switch(environ, start_response)
            return measured(environ, start_response)

        self._app = routed
        self.add_middleware(CorsMiddleware(config.cors))
        if not config.cert_path or not config.key_path:
            self.add_middleware(PassthroughMiddleware())
        return self._app

    def _dispatch(self, environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        if self._app is None:
            start_response("503 Service Unavailable", [("Content-Type", "text/plain")])
            return [b"service not ready\n"]
        return self._app(environ, start_response)

    def management_app(self, config: ServiceConfiguration) -> WSGIApp:
        """Application answering /healthz, /readyz and /metrics."""

        def app(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
            path = environ.get("PATH_INFO", "")
            if path == "/healthz":
                start_response("200 OK", [("Content-Length", "0")])
                return []
            if path == "/readyz":
                if self.readiness_enabled and config.readiness_probe():
                    start_response("200 OK", [("Content-Length", "0")])
                else:
                    start_response("412 Precondition Failed", [("Content-Length", "0")])
                return []
            if path == "/metrics":
                body = self._metrics_text().encode("utf-8")
                start_response(
                    "200 OK",
                    [("Content-Type", "text/plain; version=0.0.4"), ("Content-Length", str(len(body)))],
                )
                return [body]
            start_response("404 Not Found", [("Content-Type", "text/plain; charset=utf-8")])
            return [b"404 page not found\n"]

        return app

    def _metrics_text(self) -> str:
        recorder = self.metrics
        if not isinstance(recorder, InMemoryMetricsRecorder):
            return ""
        lines = [
            f"feature_flag_evaluations_total {len(recorder.evaluations)}",
            f"http_server_requests_total {len(recorder.durations)}",
            f"http_server_active_requests {sum(recorder.in_flight.values())}",
        ]
        return "\n".join(lines) + "\n"

    def _evaluation_server(self, config: ServiceConfiguration) -> WSGIServer:
        try:
            if config.socket_path:
                server = _make_server(_UnixServer, config.socket_path, _UnixHandler, self._dispatch)
            else:
                server = _make_server(_TCPServer, (config.host, config.port), _Handler, self._dispatch)
        except OSError as exc:
            raise OSError(f"error creating listener for flag evaluation service: {exc}") from exc
        if config.cert_path and config.key_path:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.load_cert_chain(config.cert_path, config.key_path)
            server.socket = context.wrap_socket(server.socket, server_side=True)
        return server

    def serve(self, config: ServiceConfiguration, stop: threading.Event | None = None) -> None:
        """Run both servers until ``stop`` is set."""
        stop = stop if stop is not None else threading.Event()
        self.readiness_enabled = True
        self._stop.clear()
        self.build_app(config)

        main = self._evaluation_server(config)
        try:
            management = _make_server(
                _TCPServer, (config.host, config.management_port), _Handler, self.management_app(config)
            )
        except OSError as exc:
            main.server_close()
            if config.socket_path:
                os.unlink(config.socket_path)
            raise OSError(f"error creating metrics server: {exc}") from exc

        self.address = main.server_address
        self.management_address = management.server_address
        servers = (main, management)
        threads = [threading.Thread(target=srv.serve_forever, daemon=True) for srv in servers]
        for thread in threads:
            thread.start()
        _log.info("Flag IResolver listening at %s", self.address)
        _log.info("metrics and probes listening at %s", self.management_address)
        self.ready.set()
        try:
            stop.wait()
        finally:
            self.ready.clear()
            self._stop.set()
            for srv in servers:
                srv.shutdown()
                srv.server_close()
            for thread in threads:
                thread.join()
            if config.socket_path and os.path.exists(config.socket_path):
                os.unlink(config.socket_path)