# flagsvc

Building blocks for a feature-flag service, using only the standard library:

- typed flag resolution and bulk resolution on top of an evaluator you supply;
- an HTTP front end (WSGI) that serves those resolutions as JSON, plus a
  management server with health, readiness and metrics endpoints;
- change notifications fanned out to event-stream subscribers;
- pre-rendered flag configuration pushed to sync subscribers, for all
  sources together or for one source at a time;
- WSGI middlewares for CORS and request metrics.

## Modules

| Module | Contents |
| --- | --- |
| `flagsvc.eventing` | `NotificationType`, `Notification`, `EventBus` |
| `flagsvc.middleware` | `Middleware` (interface), `CorsMiddleware`, `PassthroughMiddleware` |
| `flagsvc.http_metrics` | `MetricsRecorder`, `NoopMetricsRecorder`, `InMemoryMetricsRecorder`, `Reporter`, `MetricsConfig`, `HTTPMetricsMiddleware` |
| `flagsvc.json_codec` | `JsonCodec`, `json_codecs()`, `CodecError` |
| `flagsvc.flag_evaluation` | `FlagEvaluationService`, `resolve()`, `err_format()`, `readable_error_message()`, `AnyValue`, `AnyFlag`, `ResolveResponse`, `ErrorCode`, `Code`, `ConnectError`, `ResolveAllError` |
| `flagsvc.sync_multiplexer` | `Multiplexer`, `UnknownSourceError` |
| `flagsvc.sync_service` | `SyncService`, `SyncHandler`, `SyncTracker` |
| `flagsvc.connect_service` | `ConnectService`, `ServiceConfiguration`, `SchemaSwitch` |

## Resolving flags

`FlagEvaluationService` needs an evaluator: any object with
`resolve_boolean_value`, `resolve_string_value`, `resolve_int_value`,
`resolve_float_value` and `resolve_object_value`, each taking
`(request_id, flag_key, context)` and returning an `AnyValue`, and
`resolve_all_values(request_id, context)` returning a list of `AnyValue`.

```python
from flagsvc.flag_evaluation import AnyValue, FlagEvaluationService

class StaticEvaluator:
    def resolve_boolean_value(self, request_id, flag_key, context):
        return AnyValue(value=True, variant="on", reason="STATIC", flag_key=flag_key)

    def resolve_all_values(self, request_id, context):
        return [AnyValue(value=True, variant="on", reason="STATIC", flag_key="my-flag")]

    # resolve_string_value, resolve_int_value, resolve_float_value and
    # resolve_object_value follow the same pattern

service = FlagEvaluationService(StaticEvaluator())
response = service.resolve_boolean("my-flag", {"user": "someone"})
response.value, response.variant, response.reason   # True, "on", "STATIC"
```

When an `AnyValue` carries an `error`, the reason becomes `"ERROR"`, the
evaluation is recorded on the metrics recorder, and the error is raised.
Errors whose text is an `ErrorCode` value are raised as `ConnectError` with a
matching `Code`:

| Error code | `Code` |
| --- | --- |
| `FLAG_NOT_FOUND`, `FLAG_DISABLED` | `NOT_FOUND` |
| `TYPE_MISMATCH` | `INVALID_ARGUMENT` |
| `PARSE_ERROR` | `DATA_LOSS` |
| `GENERAL` | `UNKNOWN` |

Any other error is raised unchanged. The `ConnectError` message is the
readable text from `readable_error_message()`.

`resolve_all(context)` returns a dict of flag key to `AnyFlag`. Booleans and
strings are kept, numbers become floats, dicts are passed on as objects, and
values of any other type are left out. If the evaluator fails,
`ResolveAllError` is raised with a tracking id.

`event_stream(request_id, stop, keep_alive)` is a generator. It yields a
`PROVIDER_READY` notification first, then every notification emitted on the
service's `EventBus`, and a `KEEP_ALIVE` after each `keep_alive` seconds
without one. It ends when the `stop` event is set.

## HTTP front end

`ConnectService(evaluator, metrics)` serves two schemas side by side.
`SchemaSwitch` sends paths starting with `/flagd` to
`/flagd.evaluation.v1.Service/<Method>` and everything else to
`/schema.v1.Service/<Method>`. The methods are `ResolveBoolean`,
`ResolveString`, `ResolveInt`, `ResolveFloat`, `ResolveObject`, `ResolveAll`
and `EventStream`. All of them take `POST` with a JSON body such as
`{"flagKey": "my-flag", "context": {}}`; other methods get `405`.
A `ConnectError` becomes a JSON `{"code", "message"}` body with a matching
HTTP status.

```python
import threading
from flagsvc.connect_service import ConnectService, ServiceConfiguration
from flagsvc.http_metrics import InMemoryMetricsRecorder

svc = ConnectService(StaticEvaluator(), InMemoryMetricsRecorder())
stop = threading.Event()
config = ServiceConfiguration(port=8013, management_port=8014, cors=["*"])
threading.Thread(target=svc.serve, args=(config, stop), daemon=True).start()
svc.ready.wait()
# ... later
svc.shutdown()   # readiness off, SHUTDOWN sent to every event stream
stop.set()
```

`ServiceConfiguration` also takes `host`, `socket_path` (listen on a Unix
socket instead of TCP), `cert_path` and `key_path` (TLS), `service_name` and
`readiness_probe`. On the management port, `/healthz` always answers `200`,
`/readyz` answers `200` only while the service is serving and the probe
returns true (otherwise `412`), and `/metrics` gives plain-text counters when
the recorder is an `InMemoryMetricsRecorder`.

`build_app(config)` returns the evaluation WSGI application without starting
a server. `add_middleware(middleware)` wraps the built application, and
`notify(notification)` sends a notification to every event stream.

## Notifications

```python
import queue
from flagsvc.eventing import EventBus, Notification, NotificationType

bus = EventBus()
inbox = queue.Queue()
bus.subscribe("client-1", inbox)
bus.emit_to_all(Notification(NotificationType.CONFIGURATION_CHANGE, {"flags": {}}))
inbox.get().type          # NotificationType.CONFIGURATION_CHANGE
bus.unsubscribe("client-1")
```

## Flag sync

A `Multiplexer` is built from a flag store and the list of known source
names. The store is either a mapping of flag key to flag, or an object with a
`get_all()` method that returns one. A flag is a mapping or a dataclass, and
its `source` says where it came from.

```python
from flagsvc.sync_multiplexer import Multiplexer

store = {
    "flagA": {"state": "ENABLED", "defaultVariant": "false", "source": "A"},
    "flagB": {"state": "ENABLED", "defaultVariant": "true", "source": "B"},
}
mux = Multiplexer(store, ["A", "B", "C"])

mux.get_all_flags("")      # every flag, as a JSON document
mux.get_all_flags("A")     # only flags whose source is "A"
mux.get_all_flags("C")     # '{"flags":{}}'
mux.sources_as_metadata()  # "A,B,C"
```

An unknown source raises `UnknownSourceError`. `register(sub_id, source,
queue)` puts the current configuration on the queue straight away, and each
`publish()` re-reads the store and sends it again. An empty source subscribes
to all flags. `unregister(sub_id, selector)` ends a subscription.

`SyncService(store, sources)` holds a multiplexer (`mux`) and a `SyncHandler`
(`handler`). `emit(is_resync, source)` marks a source as synced and publishes
unless the emit is a resync. `wait_ready(timeout)` waits until every known
source has synced once and returns `False` on timeout. `SyncHandler` offers
`sync_flags(selector, stop)` (a generator of configuration documents),
`fetch_all_flags(selector)` and `get_metadata()`.

## Middleware

A middleware takes a WSGI application and returns a wrapped one:

```python
from flagsvc.middleware import CorsMiddleware
from flagsvc.http_metrics import HTTPMetricsMiddleware, MetricsConfig, InMemoryMetricsRecorder

app = CorsMiddleware(["https://app.example.com"]).handler(app)
app = HTTPMetricsMiddleware(MetricsConfig(metric_recorder=InMemoryMetricsRecorder(), service="svc")).handler(app)
```

`CorsMiddleware` answers preflight requests and adds CORS headers for the
allowed origins (`*` or an empty list allows all; an origin may contain one
`*` wildcard). `HTTPMetricsMiddleware` records in-flight count, duration and
response size, with the status grouped as `2xx` when `grouped_status` is set.

## What this package does not do

- It has no command-line program; servers are started from Python with
  `ConnectService.serve`.
- It contains no flag evaluation engine, flag store or flag sources. The
  evaluator and the store are supplied by the caller.
- `SyncService` does not listen on the network; its handler is called from
  Python.

## Running the tests

Install the `test` extra, then run `pytest` from the project root.