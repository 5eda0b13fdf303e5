import http.client
import io
import json
import os
import queue
import shutil
import socket
import tempfile
import threading
from wsgiref.util import setup_testing_defaults

import pytest

from flagsvc.connect_service import ConnectService, SchemaSwitch, ServiceConfiguration
from flagsvc.eventing import Notification, NotificationType
from flagsvc.flag_evaluation import AnyValue
from flagsvc.http_metrics import InMemoryMetricsRecorder
from flagsvc.middleware import CorsMiddleware, Middleware


class FakeEvaluator:
    def __init__(self, result=None, error=None):
        self.result = result or AnyValue(value=True, variant="on", reason="DEFAULT")
        self.error = error
        self.calls = []

    def _answer(self, flag_key):
        self.calls.append(flag_key)
        return AnyValue(
            value=self.result.value,
            variant=self.result.variant,
            reason=self.result.reason,
            flag_key=flag_key,
            metadata=self.result.metadata,
            error=self.error,
        )

    def resolve_all_values(self, request_id, context):
        return [AnyValue(value=True, variant="on", reason="STATIC", flag_key="bool")]

    def resolve_boolean_value(self, request_id, flag_key, context):
        return self._answer(flag_key)

    resolve_string_value = resolve_boolean_value
    resolve_float_value = resolve_boolean_value
    resolve_object_value = resolve_boolean_value

    def resolve_int_value(self, request_id, flag_key, context):
        return self._answer(flag_key)


def call(app, method, path, body=b""):
    environ = {}
    setup_testing_defaults(environ)
    environ.update(
        {
            "REQUEST_METHOD": method,
            "PATH_INFO": path,
            "CONTENT_LENGTH": str(len(body)),
            "CONTENT_TYPE": "application/json",
            "wsgi.input": io.BytesIO(body),
        }
    )
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = int(status.split()[0])
        captured["headers"] = dict(headers)
        return lambda data: None

    result = app(environ, start_response)
    return captured, result


def request(app, method, path, payload=None):
    body = json.dumps(payload).encode() if payload is not None else b""
    captured, result = call(app, method, path, body)
    return captured["status"], b"".join(result)


def test_schema_switch_routes_by_prefix():
    def make(tag):
        def app(environ, start_response):
            start_response("200 OK", [])
            return [tag]

        return app

    switch = SchemaSwitch(make(b"old"), make(b"new"))
    assert request(switch, "POST", "/flagd.evaluation.v1.Service/ResolveAll")[1] == b"new"
    assert request(switch, "POST", "/schema.v1.Service/ResolveAll")[1] == b"old"


def test_notify_reaches_subscribers():
    service = ConnectService(FakeEvaluator(), InMemoryMetricsRecorder())
    inbox = queue.Queue(maxsize=1)
    service.events.subscribe("key", inbox)
    service.notify(Notification(NotificationType.CONFIGURATION_CHANGE, {}))
    assert inbox.get(timeout=2).type is NotificationType.CONFIGURATION_CHANGE


def test_shutdown_notifies_and_disables_readiness():
    service = ConnectService(FakeEvaluator(), InMemoryMetricsRecorder())
    service.readiness_enabled = True
    inbox = queue.Queue(maxsize=1)
    service.events.subscribe("key", inbox)
    service.shutdown()
    assert service.readiness_enabled is False
    assert inbox.get(timeout=2).type is NotificationType.SHUTDOWN


def test_add_middleware_requires_app():
    service = ConnectService(FakeEvaluator())
    with pytest.raises(RuntimeError):
        service.add_middleware(CorsMiddleware([]))


@pytest.mark.parametrize("prefix", ["/schema.v1.Service", "/flagd.evaluation.v1.Service"])
def test_resolve_boolean_over_http(prefix):
    recorder = InMemoryMetricsRecorder()
    evaluator = FakeEvaluator()
    service = ConnectService(evaluator, recorder)
    app = service.build_app(ServiceConfiguration())
    status, body = request(app, "POST", f"{prefix}/ResolveBoolean", {"flagKey": "myBoolFlag", "context": {}})
    assert status == 200
    assert json.loads(body) == {"value": True, "reason": "DEFAULT", "variant": "on", "metadata": {}}
    assert evaluator.calls == ["myBoolFlag"]
    assert recorder.evaluations[0]["flag_key"] == "myBoolFlag"
    assert len(recorder.durations) == 1


def test_resolve_int_is_sent_as_string():
    service = ConnectService(FakeEvaluator(AnyValue(value=12, variant="on", reason="DEFAULT")))
    app = service.build_app(ServiceConfiguration())
    status, body = request(app, "POST", "/flagd.evaluation.v1.Service/ResolveInt", {"flagKey": "int"})
    assert status == 200
    assert json.loads(body)["value"] == "12"


def test_resolve_all_over_http():
    service = ConnectService(FakeEvaluator())
    app = service.build_app(ServiceConfiguration())
    status, body = request(app, "POST", "/flagd.evaluation.v1.Service/ResolveAll", {})
    assert status == 200
    assert json.loads(body) == {"flags": {"bool": {"reason": "STATIC", "variant": "on", "boolValue": True}}}


def test_flag_not_found_maps_to_404():
    service = ConnectService(FakeEvaluator(error=Exception("FLAG_NOT_FOUND")))
    app = service.build_app(ServiceConfiguration())
    status, body = request(app, "POST", "/schema.v1.Service/ResolveString", {"flagKey": "missing"})
    assert status == 404
    assert json.loads(body) == {"code": "not_found", "message": "Flag not found"}


def test_unknown_error_maps_to_500():
    service = ConnectService(FakeEvaluator(error=Exception("eval interface error")))
    app = service.build_app(ServiceConfiguration())
    status, body = request(app, "POST", "/schema.v1.Service/ResolveBoolean", {"flagKey": "bool"})
    assert status == 500
    assert json.loads(body)["code"] == "unknown"


def test_get_is_not_allowed_until_middleware_added():
    service = ConnectService(FakeEvaluator(), InMemoryMetricsRecorder())
    app = service.build_app(ServiceConfiguration())
    assert request(app, "GET", "/flagd.evaluation.v1.Service/ResolveAll")[0] == 405

    class AlwaysOk(Middleware):
        def handler(self, app):
            def ok(environ, start_response):
                start_response("200 OK", [])
                return []

            return ok

    service.add_middleware(AlwaysOk())
    assert request(service._dispatch, "GET", "/flagd.evaluation.v1.Service/ResolveAll")[0] == 200


def test_event_stream_frames():
    service = ConnectService(FakeEvaluator())
    app = service.build_app(ServiceConfiguration())
    captured, frames = call(app, "POST", "/flagd.evaluation.v1.Service/EventStream")
    assert captured["status"] == 200

    def decode(frame):
        assert frame[0] == 0
        assert int.from_bytes(frame[1:5], "big") == len(frame) - 5
        return json.loads(frame[5:])

    assert decode(next(frames)) == {"type": "provider_ready", "data": {}}
    service.notify(Notification(NotificationType.CONFIGURATION_CHANGE, {"flags": {}}))
    assert decode(next(frames)) == {"type": "configuration_change", "data": {"flags": {}}}
    frames.close()
    assert service.events.subscribers() == {}


def test_management_probes():
    service = ConnectService(FakeEvaluator())
    ready = {"value": True}
    app = service.management_app(ServiceConfiguration(readiness_probe=lambda: ready["value"]))
    assert request(app, "GET", "/healthz")[0] == 200
    assert request(app, "GET", "/readyz")[0] == 412
    service.readiness_enabled = True
    assert request(app, "GET", "/readyz")[0] == 200
    ready["value"] = False
    assert request(app, "GET", "/readyz")[0] == 412
    assert request(app, "GET", "/unknown")[0] == 404


def test_metrics_endpoint_counts_evaluations():
    recorder = InMemoryMetricsRecorder()
    service = ConnectService(FakeEvaluator(), recorder)
    app = service.build_app(ServiceConfiguration())
    request(app, "POST", "/schema.v1.Service/ResolveBoolean", {"flagKey": "bool"})
    status, body = request(service.management_app(ServiceConfiguration()), "GET", "/metrics")
    assert status == 200
    assert "feature_flag_evaluations_total 1" in body.decode()


class UnixConnection(http.client.HTTPConnection):
    def __init__(self, path):
        super().__init__("localhost", timeout=5)
        self._path = path

    def connect(self):
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.connect(self._path)


def test_serve_unix_socket():
    directory = tempfile.mkdtemp(prefix="fs")
    path = os.path.join(directory, "flagd.sock")
    try:
        service = ConnectService(FakeEvaluator(), InMemoryMetricsRecorder())
        config = ServiceConfiguration(socket_path=path, host="127.0.0.1", management_port=0)
        stop = threading.Event()
        thread = threading.Thread(target=service.serve, args=(config, stop), daemon=True)
        thread.start()
        assert service.ready.wait(5)

        conn = UnixConnection(path)
        payload = json.dumps({"flagKey": "myBoolFlag", "context": {}})
        conn.request("POST", "/schema.v1.Service/ResolveBoolean", payload, {"Content-Type": "application/json"})
        response = conn.getresponse()
        body = json.loads(response.read())
        conn.close()
        assert response.status == 200
        assert (body["value"], body["reason"], body["variant"]) == (True, "DEFAULT", "on")

        stop.set()
        thread.join(5)
        assert not thread.is_alive()
        assert not os.path.exists(path)
    finally:
        shutil.rmtree(directory, ignore_errors=True)


def test_serve_tcp_and_management():
    service = ConnectService(FakeEvaluator())
    config = ServiceConfiguration(host="127.0.0.1", port=0, management_port=0)
    stop = threading.Event()
    thread = threading.Thread(target=service.serve, args=(config, stop), daemon=True)
    thread.start()
    assert service.ready.wait(5)

    conn = http.client.HTTPConnection("127.0.0.1", service.address[1], timeout=5)
    conn.request("GET", "/flagd.evaluation.v1.Service/ResolveAll")
    assert conn.getresponse().status == 405
    conn.close()

    conn = http.client.HTTPConnection("127.0.0.1", service.management_address[1], timeout=5)
    conn.request("GET", "/readyz")
    assert conn.getresponse().status == 200
    conn.close()

    stop.set()
    thread.join(5)
    assert not thread.is_alive()