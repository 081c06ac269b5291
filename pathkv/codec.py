"""
Type-preserving codec.

``encode`` turns a value into an ``Envelope`` (``{"type_tag", "raw"}``) whose
``raw`` is JSON-native; containers hold nested envelopes. ``dumps``/``loads``
give the string form that providers persist.
"""

from __future__ import annotations

import base64
import datetime as dt
import decimal
import json
import math
import re
import uuid
from typing import Any, Callable, Mapping

from pydantic import BaseModel, ValidationError

from .errors import CodecError


class Envelope(BaseModel):
    type_tag: str
    raw: Any = None


def _float_raw(value: float) -> float | str:
    # JSON has no nan/inf.
    if math.isfinite(value):
        return value
    return repr(value)


def _encode_float(value: float) -> Envelope:
    return Envelope(type_tag="float", raw=_float_raw(value))


def _encode_mapping(value: Mapping) -> Envelope:
    if all(isinstance(k, str) for k in value):
        return Envelope(type_tag="object", raw={k: _dump(v) for k, v in value.items()})
    return Envelope(type_tag="map", raw=[[_dump(k), _dump(v)] for k, v in value.items()])


def _encode_set(tag: str, value: set | frozenset) -> Envelope:
    items = [_dump(item) for item in value]
    # Stable output for identical sets.
    items.sort(key=lambda item: json.dumps(item, sort_keys=True))
    return Envelope(type_tag=tag, raw=items)


def _encode_timedelta(value: dt.timedelta) -> Envelope:
    return Envelope(
        type_tag="timedelta",
        raw=[value.days, value.seconds, value.microseconds],
    )


def _encode_regex(value: re.Pattern) -> Envelope:
    if isinstance(value.pattern, bytes):
        raise CodecError("Byte-string regular expressions are not supported")
    return Envelope(type_tag="regex", raw={"pattern": value.pattern, "flags": int(value.flags)})


def _dump(value: Any) -> dict[str, Any]:
    return encode(value).model_dump(mode="json")


def encode(value: Any) -> Envelope:
    """Encode value; raises ``CodecError`` for types outside the supported set."""
    # Order matters: bool before int, datetime before date.
    if value is None:
        return Envelope(type_tag="null", raw=None)
    if isinstance(value, bool):
        return Envelope(type_tag="bool", raw=value)
    if isinstance(value, int):
        return Envelope(type_tag="int", raw=value)
    if isinstance(value, float):
        return _encode_float(value)
    if isinstance(value, str):
        return Envelope(type_tag="str", raw=value)
    if isinstance(value, list):
        return Envelope(type_tag="list", raw=[_dump(item) for item in value])
    if isinstance(value, tuple):
        return Envelope(type_tag="tuple", raw=[_dump(item) for item in value])
    if isinstance(value, Mapping):
        return _encode_mapping(value)
    if isinstance(value, frozenset):
        return _encode_set("frozenset", value)
    if isinstance(value, set):
        return _encode_set("set", value)
    if isinstance(value, dt.datetime):
        return Envelope(type_tag="datetime", raw=value.isoformat())
    if isinstance(value, dt.date):
        return Envelope(type_tag="date", raw=value.isoformat())
    if isinstance(value, dt.time):
        return Envelope(type_tag="time", raw=value.isoformat())
    if isinstance(value, dt.timedelta):
        return _encode_timedelta(value)
    if isinstance(value, (bytes, bytearray)):
        return Envelope(type_tag="bytes", raw=base64.b64encode(bytes(value)).decode("ascii"))
    if isinstance(value, re.Pattern):
        return _encode_regex(value)
    if isinstance(value, decimal.Decimal):
        return Envelope(type_tag="decimal", raw=str(value))
    if isinstance(value, uuid.UUID):
        return Envelope(type_tag="uuid", raw=str(value))
    raise CodecError(f"Cannot encode value of type {type(value).__name__}")


def _expect(raw: Any, kind: type | tuple[type, ...], tag: str) -> Any:
    if not isinstance(raw, kind):
        raise CodecError(f"Invalid raw value for {tag!r}: {raw!r}")
    return raw


def _decode_int(raw: Any) -> int:
    if isinstance(raw, bool):
        raise CodecError(f"Invalid raw value for 'int': {raw!r}")
    return _expect(raw, int, "int")


def _decode_float(raw: Any) -> float:
    if isinstance(raw, bool):
        raise CodecError(f"Invalid raw value for 'float': {raw!r}")
    if isinstance(raw, str):
        if raw not in ("nan", "inf", "-inf"):
            raise CodecError(f"Invalid raw value for 'float': {raw!r}")
        return float(raw)
    return float(_expect(raw, (int, float), "float"))


def _decode_object(raw: Any) -> dict[str, Any]:
    items = _expect(raw, dict, "object")
    return {str(k): decode(v) for k, v in items.items()}


def _decode_map(raw: Any) -> dict[Any, Any]:
    out: dict[Any, Any] = {}
    for pair in _expect(raw, list, "map"):
        if not isinstance(pair, list) or len(pair) != 2:
            raise CodecError(f"Invalid map entry: {pair!r}")
        out[decode(pair[0])] = decode(pair[1])
    return out


def _decode_timedelta(raw: Any) -> dt.timedelta:
    parts = _expect(raw, list, "timedelta")
    if len(parts) != 3 or not all(isinstance(p, int) and not isinstance(p, bool) for p in parts):
        raise CodecError(f"Invalid raw value for 'timedelta': {raw!r}")
    days, seconds, microseconds = parts
    return dt.timedelta(days=days, seconds=seconds, microseconds=microseconds)


def _decode_regex(raw: Any) -> re.Pattern:
    body = _expect(raw, dict, "regex")
    pattern, flags = body.get("pattern"), body.get("flags", 0)
    if not isinstance(pattern, str) or not isinstance(flags, int):
        raise CodecError(f"Invalid raw value for 'regex': {raw!r}")
    return re.compile(pattern, flags)


def _decode_bytes(raw: Any) -> bytes:
    return base64.b64decode(_expect(raw, str, "bytes"), validate=True)


def _decode_null(raw: Any) -> None:
    if raw is not None:
        raise CodecError(f"Invalid raw value for 'null': {raw!r}")
    return None


_DECODERS: dict[str, Callable[[Any], Any]] = {
    "null": _decode_null,
    "bool": lambda raw: _expect(raw, bool, "bool"),
    "int": _decode_int,
    "float": _decode_float,
    "str": lambda raw: _expect(raw, str, "str"),
    "list": lambda raw: [decode(item) for item in _expect(raw, list, "list")],
    "tuple": lambda raw: tuple(decode(item) for item in _expect(raw, list, "tuple")),
    "object": _decode_object,
    "map": _decode_map,
    "set": lambda raw: {decode(item) for item in _expect(raw, list, "set")},
    "frozenset": lambda raw: frozenset(decode(item) for item in _expect(raw, list, "frozenset")),
    "datetime": lambda raw: dt.datetime.fromisoformat(_expect(raw, str, "datetime")),
    "date": lambda raw: dt.date.fromisoformat(_expect(raw, str, "date")),
    "time": lambda raw: dt.time.fromisoformat(_expect(raw, str, "time")),
    "timedelta": _decode_timedelta,
    "bytes": _decode_bytes,
    "regex": _decode_regex,
    "decimal": lambda raw: decimal.Decimal(_expect(raw, str, "decimal")),
    "uuid": lambda raw: uuid.UUID(_expect(raw, str, "uuid")),
}


def decode(envelope: Envelope | Mapping[str, Any]) -> Any:
    """Inverse of ``encode``; raises ``CodecError`` on unknown tags or malformed raw values."""
    if not isinstance(envelope, Envelope):
        if not isinstance(envelope, Mapping):
            raise CodecError(f"Not an envelope: {envelope!r}")
        try:
            envelope = Envelope.model_validate(envelope)
        except ValidationError as e:
            raise CodecError(f"Malformed envelope: {envelope!r}") from e

    decoder = _DECODERS.get(envelope.type_tag)
    if decoder is None:
        raise CodecError(f"Unknown type tag: {envelope.type_tag!r}")
    try:
        return decoder(envelope.raw)
    except CodecError:
        raise
    except (ValueError, TypeError, re.error, decimal.InvalidOperation) as e:
        raise CodecError(f"Corrupt {envelope.type_tag!r} envelope: {e}") from e


def dumps(value: Any) -> str:
    return json.dumps(_dump(value), separators=(",", ":"))


def loads(text: str | bytes) -> Any:
    try:
        doc = json.loads(text)
    except (TypeError, ValueError) as e:
        raise CodecError(f"Stored value is not valid JSON: {e}") from e
    return decode(doc)
