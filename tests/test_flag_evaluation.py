import threading

import pytest

from flagsvc.eventing import EventBus, Notification, NotificationType
from flagsvc.flag_evaluation import (
    DEFAULT_REASON,
    ERROR_REASON,
    EVALUATION_SCHEMA,
    OLD_SCHEMA,
    AnyValue,
    Code,
    ConnectError,
    ErrorCode,
    FlagEvaluationService,
    ResolveAllError,
    ResolveResponse,
    err_format,
    readable_error_message,
    resolve,
)
from flagsvc.http_metrics import InMemoryMetricsRecorder

METADATA = {"scope": "some-scope"}
SCHEMAS = [OLD_SCHEMA, EVALUATION_SCHEMA]


class FakeEvaluator:
    def __init__(self, result=None, all_values=None, all_error=None):
        self.result = result
        self.all_values = all_values or []
        self.all_error = all_error
        self.calls = []

    def _one(self, request_id, flag_key, context):
        self.calls.append((flag_key, context))
        return self.result

    resolve_boolean_value = _one
    resolve_string_value = _one
    resolve_int_value = _one
    resolve_float_value = _one
    resolve_object_value = _one

    def resolve_all_values(self, request_id, context):
        if self.all_error is not None:
            raise self.all_error
        return self.all_values


def happy(value):
    return AnyValue(value=value, variant="on", reason=DEFAULT_REASON, metadata=METADATA)


@pytest.mark.parametrize("schema", SCHEMAS)
def test_resolve_all_happy_path(schema):
    values = [
        AnyValue(value=True, variant="bool-true", reason="true", flag_key="bool"),
        AnyValue(value=12.12, variant="float", reason="float", flag_key="float"),
        AnyValue(value="hello", variant="string", reason="string", flag_key="string"),
        AnyValue(value="hello", variant="object", reason="string", flag_key="object"),
    ]
    metrics = InMemoryMetricsRecorder()
    svc = FlagEvaluationService(FakeEvaluator(all_values=values), EventBus(), metrics, schema)
    flags = svc.resolve_all()
    assert flags["bool"].value is True
    assert flags["float"].value == 12.12
    assert flags["string"].value == "hello"
    assert flags["object"].value == "hello"
    assert flags["bool"].variant == "bool-true"
    assert len(metrics.evaluations) == 4


def test_resolve_all_objects_and_unsupported_values():
    values = [
        AnyValue(value={"food": "bars"}, variant="o", reason="r", flag_key="obj"),
        AnyValue(value={"bad": object()}, variant="o", reason="r", flag_key="broken"),
        AnyValue(value=[1, 2], variant="l", reason="r", flag_key="list"),
    ]
    svc = FlagEvaluationService(FakeEvaluator(all_values=values))
    flags = svc.resolve_all({"k": "v"})
    assert flags["obj"].value == {"food": "bars"}
    assert set(flags) == {"obj"}


def test_resolve_all_resolver_error():
    svc = FlagEvaluationService(FakeEvaluator(all_error=RuntimeError("some error from internal evaluator")))
    with pytest.raises(ResolveAllError) as excinfo:
        svc.resolve_all()
    assert str(excinfo.value) == f"error resolving flags. Tracking ID: {excinfo.value.tracking_id}"


@pytest.mark.parametrize("schema", SCHEMAS)
@pytest.mark.parametrize(
    "method, value",
    [
        ("resolve_boolean", True),
        ("resolve_string", "true"),
        ("resolve_float", 12.0),
        ("resolve_int", 12),
    ],
)
def test_typed_resolution_happy_path(schema, method, value):
    metrics = InMemoryMetricsRecorder()
    evaluator = FakeEvaluator(result=happy(value))
    svc = FlagEvaluationService(evaluator, EventBus(), metrics, schema)
    got = getattr(svc, method)("flag", {})
    assert got == ResolveResponse(value=value, variant="on", reason=DEFAULT_REASON, metadata=METADATA)
    assert evaluator.calls == [("flag", {})]
    assert len(metrics.evaluations) == 1
    assert metrics.evaluations[0]["flag_key"] == "flag"


@pytest.mark.parametrize("schema", SCHEMAS)
def test_resolve_object_happy_path(schema):
    svc = FlagEvaluationService(FakeEvaluator(result=happy({"food": "bars"})), schema=schema)
    got = svc.resolve_object("object")
    assert got == ResolveResponse(
        value={"food": "bars"}, variant="on", reason=DEFAULT_REASON, metadata=METADATA
    )


@pytest.mark.parametrize("value, structured", [(True, False), ("true", False), (12, False), ({"food": "bars"}, True)])
def test_eval_error_fills_response_and_raises(value, structured):
    err = RuntimeError("eval interface error")
    result = AnyValue(value=value, variant=":(", reason=ERROR_REASON, metadata=METADATA, error=err)
    metrics = InMemoryMetricsRecorder()
    response = ResolveResponse(structured=structured)
    with pytest.raises(RuntimeError) as excinfo:
        resolve(lambda rid, key, ctx: result, "flag", {}, response, metrics)
    assert excinfo.value is err
    assert response == ResolveResponse(value=value, variant=":(", reason=ERROR_REASON, metadata=METADATA)
    assert len(metrics.evaluations) == 1
    assert metrics.evaluations[0]["reason"] == ERROR_REASON


def test_known_error_code_becomes_connect_error():
    result = AnyValue(variant="", reason="", error=Exception(ErrorCode.FLAG_NOT_FOUND.value))
    svc = FlagEvaluationService(FakeEvaluator(result=result))
    with pytest.raises(ConnectError) as excinfo:
        svc.resolve_boolean("missing")
    assert excinfo.value.code == Code.NOT_FOUND
    assert excinfo.value.message == "Flag not found"


def test_raising_resolver_is_reported_with_error_reason():
    metrics = InMemoryMetricsRecorder()
    response = ResolveResponse()

    def resolver(rid, key, ctx):
        raise Exception(ErrorCode.TYPE_MISMATCH.value)

    with pytest.raises(ConnectError) as excinfo:
        resolve(resolver, "flag", None, response, metrics)
    assert excinfo.value.code == Code.INVALID_ARGUMENT
    assert response.reason == ERROR_REASON
    assert metrics.evaluations[0]["reason"] == ERROR_REASON


def test_unconvertible_object_raises_value_error():
    svc = FlagEvaluationService(FakeEvaluator(result=happy({"bad": object()})))
    with pytest.raises(ValueError, match="error setting response result"):
        svc.resolve_object("object")


def test_missing_metadata_becomes_empty():
    svc = FlagEvaluationService(FakeEvaluator(result=AnyValue(value=True, variant="on", reason="STATIC")))
    assert svc.resolve_boolean("flag").metadata == {}


@pytest.mark.parametrize(
    "code, expected",
    [
        (ErrorCode.FLAG_NOT_FOUND, Code.NOT_FOUND),
        (ErrorCode.TYPE_MISMATCH, Code.INVALID_ARGUMENT),
        (ErrorCode.PARSE_ERROR, Code.DATA_LOSS),
        (ErrorCode.FLAG_DISABLED, Code.NOT_FOUND),
        (ErrorCode.GENERAL, Code.UNKNOWN),
    ],
)
def test_error_codes(code, expected):
    formatted = err_format(Exception(code.value))
    assert isinstance(formatted, ConnectError)
    assert formatted.code == expected


def test_unknown_error_is_returned_unchanged():
    err = RuntimeError("something else")
    assert err_format(err) is err


@pytest.mark.parametrize(
    "code, expected",
    [
        (ErrorCode.FLAG_NOT_FOUND, "Flag not found"),
        (ErrorCode.PARSE_ERROR, "Error parsing input or configuration"),
        (ErrorCode.TYPE_MISMATCH, "Type mismatch error"),
        (ErrorCode.GENERAL, "General error"),
        (ErrorCode.FLAG_DISABLED, "Flag is disabled"),
        (ErrorCode.INVALID_CONTEXT, "Invalid context provided"),
    ],
)
def test_readable_error_message(code, expected):
    assert readable_error_message(code.value) == expected


def test_readable_error_message_unknown_code():
    assert readable_error_message("SOMETHING") == "SOMETHING"


def test_event_stream_flow():
    events = EventBus()
    svc = FlagEvaluationService(FakeEvaluator(), events)
    stop = threading.Event()
    stream = svc.event_stream("sub", stop, keep_alive=0.05)

    first = next(stream)
    assert first.type == NotificationType.PROVIDER_READY
    assert "sub" in events.subscribers()

    events.emit_to_all(Notification(NotificationType.CONFIGURATION_CHANGE, {"a": 1}))
    change = next(stream)
    assert change.type == NotificationType.CONFIGURATION_CHANGE
    assert change.data == {"a": 1.0}

    keep = next(stream)
    assert keep.type == NotificationType.KEEP_ALIVE

    stop.set()
    assert list(stream) == []
    assert "sub" not in events.subscribers()


def test_event_stream_close_unsubscribes():
    events = EventBus()
    svc = FlagEvaluationService(FakeEvaluator(), events)
    stream = svc.event_stream("x")
    assert next(stream).type == NotificationType.PROVIDER_READY
    stream.close()
    assert events.subscribers() == {}