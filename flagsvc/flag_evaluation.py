"""Typed flag resolution, bulk resolution and event streaming for evaluation clients."""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Hashable, Iterator, Protocol

from flagsvc.eventing import EventBus, Notification, NotificationType
from flagsvc.http_metrics import MetricsRecorder, NoopMetricsRecorder

_log = logging.getLogger(__name__)

DEFAULT_REASON = "DEFAULT"
ERROR_REASON = "ERROR"
STATIC_REASON = "STATIC"

OLD_SCHEMA = "schema.v1"
EVALUATION_SCHEMA = "flagd.evaluation.v1"


class ErrorCode(str, Enum):
    """Error codes an evaluator reports as the text of its errors."""

    FLAG_NOT_FOUND = "FLAG_NOT_FOUND"
    PARSE_ERROR = "PARSE_ERROR"
    TYPE_MISMATCH = "TYPE_MISMATCH"
    GENERAL = "GENERAL"
    FLAG_DISABLED = "FLAG_DISABLED"
    INVALID_CONTEXT = "INVALID_CONTEXT"


_READABLE_MESSAGES = {
    ErrorCode.FLAG_NOT_FOUND.value: "Flag not found",
    ErrorCode.PARSE_ERROR.value: "Error parsing input or configuration",
    ErrorCode.TYPE_MISMATCH.value: "Type mismatch error",
    ErrorCode.GENERAL.value: "General error",
    ErrorCode.FLAG_DISABLED.value: "Flag is disabled",
    ErrorCode.INVALID_CONTEXT.value: "Invalid context provided",
}


def readable_error_message(code: str) -> str:
    """Human-readable text for an error code; unknown codes are returned unchanged."""
    key = code.value if isinstance(code, ErrorCode) else str(code)
    return _READABLE_MESSAGES.get(key, key)


class Code(str, Enum):
    """Status codes of the RPC protocol."""

    CANCELED = "canceled"
    UNKNOWN = "unknown"
    INVALID_ARGUMENT = "invalid_argument"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    PERMISSION_DENIED = "permission_denied"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    FAILED_PRECONDITION = "failed_precondition"
    ABORTED = "aborted"
    OUT_OF_RANGE = "out_of_range"
    UNIMPLEMENTED = "unimplemented"
    INTERNAL = "internal"
    UNAVAILABLE = "unavailable"
    DATA_LOSS = "data_loss"
    UNAUTHENTICATED = "unauthenticated"


class ConnectError(Exception):
    """An error carrying an RPC status code for the client."""

    def __init__(self, code: Code, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ResolveAllError(RuntimeError):
    """Bulk resolution failed; the details are only in the server log."""

    def __init__(self, tracking_id: str) -> None:
        super().__init__(f"error resolving flags. Tracking ID: {tracking_id}")
        self.tracking_id = tracking_id


_CODE_FOR_ERROR = {
    ErrorCode.FLAG_NOT_FOUND.value: Code.NOT_FOUND,
    ErrorCode.FLAG_DISABLED.value: Code.NOT_FOUND,
    ErrorCode.TYPE_MISMATCH.value: Code.INVALID_ARGUMENT,
    ErrorCode.PARSE_ERROR.value: Code.DATA_LOSS,
    ErrorCode.GENERAL.value: Code.UNKNOWN,
}


def err_format(error: BaseException) -> BaseException:
    """Map an evaluator error to a ConnectError; unknown errors are returned as they are."""
    text = str(error)
    code = _CODE_FOR_ERROR.get(text)
    if code is None:
        return error
    return ConnectError(code, readable_error_message(text))


def _struct_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, (list, tuple)):
        return [_struct_value(item) for item in value]
    if isinstance(value, dict):
        return _to_struct(value)
    raise ValueError(f"invalid type: {type(value).__name__}")


def _to_struct(mapping: dict[str, Any] | None) -> dict[str, Any]:
    """Validate and copy a mapping into the JSON-object form sent to clients."""
    if mapping is None:
        return {}
    if not isinstance(mapping, dict):
        raise ValueError(f"invalid type: {type(mapping).__name__}")
    out = {}
    for key, value in mapping.items():
        if not isinstance(key, str):
            raise ValueError(f"invalid key type: {type(key).__name__}")
        out[key] = _struct_value(value)
    return out


@dataclass
class AnyValue:
    """Outcome of evaluating one flag."""

    value: Any = None
    variant: str = ""
    reason: str = ""
    flag_key: str = ""
    metadata: dict[str, Any] | None = None
    error: BaseException | None = None


@dataclass
class ResolveResponse:
    """Response to a single typed resolution."""

    value: Any = None
    variant: str = ""
    reason: str = ""
    metadata: dict[str, Any] | None = None
    structured: bool = field(default=False, compare=False, repr=False)

    def set_result(self, value: Any, variant: str, reason: str, metadata: dict[str, Any] | None) -> None:
        """Fill the response; raises ValueError when metadata or an object value cannot be sent."""
        try:
            meta = _to_struct(metadata)
        except ValueError as exc:
            raise ValueError(f"failure to wrap metadata {exc}") from exc
        if self.structured:
            self.reason = reason
            try:
                converted = _to_struct(value)
            except ValueError as exc:
                raise ValueError(f"struct response construction: {exc}") from exc
            self.value = converted
        else:
            self.value = value
            self.reason = reason
        self.variant = variant
        self.metadata = meta


@dataclass
class AnyFlag:
    """One entry of a bulk resolution."""

    reason: str
    variant: str
    value: Any


class Evaluator(Protocol):
    def resolve_all_values(self, request_id: str, context: dict[str, Any]) -> list[AnyValue]: ...
    def resolve_boolean_value(self, request_id: str, flag_key: str, context: dict[str, Any]) -> AnyValue: ...
    def resolve_string_value(self, request_id: str, flag_key: str, context: dict[str, Any]) -> AnyValue: ...
    def resolve_int_value(self, request_id: str, flag_key: str, context: dict[str, Any]) -> AnyValue: ...
    def resolve_float_value(self, request_id: str, flag_key: str, context: dict[str, Any]) -> AnyValue: ...
    def resolve_object_value(self, request_id: str, flag_key: str, context: dict[str, Any]) -> AnyValue: ...


Resolver = Callable[[str, str, dict[str, Any]], AnyValue]


def resolve(
    resolver: Resolver,
    flag_key: str,
    context: dict[str, Any] | None,
    response: ResolveResponse,
    metrics: MetricsRecorder | None,
) -> ResolveResponse:
    """Resolve one flag into ``response``; evaluator errors are raised after it is filled."""
    request_id = uuid.uuid4().hex
    ctx = dict(context or {})
    _log.debug("[%s] flag-key=%s context-keys=%s", request_id, flag_key, list(ctx))

    try:
        result = resolver(request_id, flag_key, ctx)
    except Exception as exc:  # evaluator failures are reported like returned errors
        result = AnyValue(flag_key=flag_key, error=exc)

    reason = result.reason
    eval_err = result.error
    formatted: BaseException | None = None
    if eval_err is not None:
        _log.warning("[%s] returning error response, reason: %s", request_id, eval_err)
        reason = ERROR_REASON
        formatted = err_format(eval_err)

    if metrics is not None:
        metrics.record_evaluation(eval_err, reason, result.variant, flag_key)

    try:
        response.set_result(result.value, result.variant, reason, result.metadata)
    except ValueError as exc:
        if eval_err is None:
            _log.error("[%s] %s", request_id, exc)
            raise ValueError(f"error setting response result: {exc}") from exc

    if formatted is not None:
        if formatted is eval_err:
            raise formatted
        raise formatted from eval_err
    return response


class FlagEvaluationService:
    """Flag evaluation endpoints for one schema version."""

    def __init__(
        self,
        evaluator: Evaluator,
        events: EventBus | None = None,
        metrics: MetricsRecorder | None = None,
        schema: str = EVALUATION_SCHEMA,
    ) -> None:
        self._evaluator = evaluator
        self._events = events if events is not None else EventBus()
        self._metrics: MetricsRecorder = metrics if metrics is not None else NoopMetricsRecorder()
        self.schema = schema
        self._log = _log.getChild(schema)

    def resolve_all(self, context: dict[str, Any] | None = None) -> dict[str, AnyFlag]:
        """Resolve every flag; values of unsupported types are left out."""
        request_id = uuid.uuid4().hex
        try:
            values = self._evaluator.resolve_all_values(request_id, dict(context or {}))
        except Exception as exc:
            self._log.warning("[%s] error resolving all flags: %s", request_id, exc)
            raise ResolveAllError(request_id) from exc

        flags: dict[str, AnyFlag] = {}
        for item in values:
            self._metrics.record_evaluation(item.error, item.reason, item.variant, item.flag_key)
            value = item.value
            if isinstance(value, (bool, str)):
                converted: Any = value
            elif isinstance(value, (int, float)):
                converted = float(value)
            elif isinstance(value, dict):
                try:
                    converted = _to_struct(value)
                except ValueError as exc:
                    self._log.error("[%s] struct response construction: %s", request_id, exc)
                    continue
            else:
                continue
            flags[item.flag_key] = AnyFlag(reason=item.reason, variant=item.variant, value=converted)
        return flags

    def event_stream(
        self,
        request_id: Hashable | None = None,
        stop: threading.Event | None = None,
        keep_alive: float = 20.0,
    ) -> Iterator[Notification]:
        """Yield notifications for one subscriber, with keep-alives during quiet periods."""
        sub_id = request_id if request_id is not None else uuid.uuid4().hex
        stop = stop if stop is not None else threading.Event()
        inbox: queue.Queue[Notification] = queue.Queue(maxsize=1)
        self._events.subscribe(sub_id, inbox)
        try:
            inbox.put(Notification(NotificationType.PROVIDER_READY))
            deadline = time.monotonic() + keep_alive
            while not stop.is_set():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    yield Notification(NotificationType.KEEP_ALIVE)
                    deadline = time.monotonic() + keep_alive
                    continue
                try:
                    notification = inbox.get(timeout=min(remaining, 0.05))
                except queue.Empty:
                    continue
                try:
                    data = _to_struct(notification.data)
                except ValueError as exc:
                    self._log.error("%s", exc)
                    data = {}
                yield Notification(notification.type, data)
                deadline = time.monotonic() + keep_alive
        finally:
            self._events.unsubscribe(sub_id)

    def _resolve(self, resolver: Resolver, flag_key: str, context, structured: bool = False) -> ResolveResponse:
        return resolve(resolver, flag_key, context, ResolveResponse(structured=structured), self._metrics)

    def resolve_boolean(self, flag_key: str, context: dict[str, Any] | None = None) -> ResolveResponse:
        return self._resolve(self._evaluator.resolve_boolean_value, flag_key, context)

    def resolve_string(self, flag_key: str, context: dict[str, Any] | None = None) -> ResolveResponse:
        return self._resolve(self._evaluator.resolve_string_value, flag_key, context)

    def resolve_int(self, flag_key: str, context: dict[str, Any] | None = None) -> ResolveResponse:
        return self._resolve(self._evaluator.resolve_int_value, flag_key, context)

    def resolve_float(self, flag_key: str, context: dict[str, Any] | None = None) -> ResolveResponse:
        return self._resolve(self._evaluator.resolve_float_value, flag_key, context)

    def resolve_object(self, flag_key: str, context: dict[str, Any] | None = None) -> ResolveResponse:
        return self._resolve(self._evaluator.resolve_object_value, flag_key, context, structured=True)