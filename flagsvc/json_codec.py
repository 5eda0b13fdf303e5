"""JSON codec for service messages with configurable field emission."""

from __future__ import annotations

import base64
import dataclasses
import json
from enum import Enum
from typing import Any


class CodecError(ValueError):
    """Raised when a message cannot be encoded or decoded."""


def _is_message(obj: Any) -> bool:
    return isinstance(obj, dict) or (dataclasses.is_dataclass(obj) and not isinstance(obj, type))


def _not_message(obj: Any) -> CodecError:
    return CodecError(f"{type(obj).__name__} is not a message")


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _is_zero(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (bool, int, float, str, bytes, list, tuple, dict)):
        return not value
    return False


def _to_json(value: Any, emit_unpopulated: bool) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        out = {}
        for f in dataclasses.fields(value):
            item = getattr(value, f.name)
            if not emit_unpopulated and _is_zero(item):
                continue
            out[_camel(f.name)] = _to_json(item, emit_unpopulated)
        return out
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _to_json(v, emit_unpopulated) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(v, emit_unpopulated) for v in value]
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    return value


def _assign(message: Any, obj: dict[str, Any], discard_unknown: bool) -> None:
    by_name = {}
    for f in dataclasses.fields(message):
        by_name[f.name] = f.name
        by_name[_camel(f.name)] = f.name
    for key, value in obj.items():
        name = by_name.get(key)
        if name is None:
            if discard_unknown:
                continue
            raise CodecError(f"unknown field {key!r} in {type(message).__name__}")
        current = getattr(message, name)
        if isinstance(value, dict) and dataclasses.is_dataclass(current) and not isinstance(current, type):
            _assign(current, value, discard_unknown)
        else:
            try:
                setattr(message, name, value)
            except dataclasses.FrozenInstanceError as exc:
                raise CodecError(f"{type(message).__name__} is not mutable") from exc


class JsonCodec:
    """Encodes messages (dataclass instances or dicts) as JSON text."""

    def __init__(self, name: str = "json", emit_unpopulated: bool = False, discard_unknown: bool = False) -> None:
        self.name = name
        self.emit_unpopulated = emit_unpopulated
        self.discard_unknown = discard_unknown

    def is_binary(self) -> bool:
        return False

    def marshal(self, message: Any) -> bytes:
        """Encode ``message``; the whitespace of the output is not guaranteed."""
        return self.marshal_append(None, message)

    def marshal_append(self, dst: bytes | None, message: Any) -> bytes:
        """Return ``dst`` followed by the encoding of ``message``."""
        if not _is_message(message):
            raise _not_message(message)
        encoded = json.dumps(
            _to_json(message, self.emit_unpopulated), separators=(", ", ": "), ensure_ascii=False
        ).encode("utf-8")
        return bytes(dst or b"") + encoded

    def unmarshal(self, data: bytes, message: Any) -> None:
        """Decode ``data`` into the mutable ``message``."""
        if not _is_message(message):
            raise _not_message(message)
        if not data:
            raise CodecError("zero-length payload is not a valid JSON object")
        try:
            parsed = json.loads(data)
        except (ValueError, UnicodeDecodeError) as exc:
            raise CodecError(f"invalid JSON payload: {exc}") from exc
        if not isinstance(parsed, dict):
            raise CodecError("JSON payload is not an object")
        if isinstance(message, dict):
            message.clear()
            message.update(parsed)
        else:
            _assign(message, parsed, self.discard_unknown)

    def marshal_stable(self, message: Any) -> bytes:
        """Encode ``message`` with all insignificant whitespace removed."""
        encoded = self.marshal(message)
        compact = json.dumps(json.loads(encoded), separators=(",", ":"), ensure_ascii=False)
        return compact.encode("utf-8")


def json_codecs(emit_unpopulated: bool, discard_unknown: bool) -> tuple[JsonCodec, JsonCodec]:
    """Codecs for the plain and charset-qualified JSON content types."""
    return (
        JsonCodec("json", emit_unpopulated, discard_unknown),
        JsonCodec("json; charset=utf-8", emit_unpopulated, discard_unknown),
    )