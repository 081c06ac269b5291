"""
JSON shapes for carrying payloads over HTTP.

A request names its Method in the URL (``POST /stores/{name}/{method}``) and
sends the payload's request fields as a ``WireRequest``. Every caller value
(``value``, ``default``, ``operand``, entry values) travels as a codec
envelope, so extended types survive the trip. Hooks never leave the process.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from . import codec
from .errors import StoreError, error_from_kind
from .keypath import ABSENT, format_path, parse_path
from .protocol import (
    HOOK_METHODS,
    PAYLOAD_TYPES,
    MathOperator,
    Method,
    Payload,
    SetEntry,
)

# Methods a remote store answers. Hook Methods stay client-side.
REMOTE_METHODS = frozenset(m for m in Method if m not in HOOK_METHODS)

_ENVELOPED = frozenset({"value", "default", "operand"})
_LOCAL_ONLY = frozenset({"data", "error", "hook", "name"})


class WireError(BaseModel):
    kind: str
    message: str


class WireEntry(BaseModel):
    key: str
    path: str = ""
    value: dict[str, Any] | None = None


class WireRequest(BaseModel):
    key: str | None = None
    keys: list[str] | None = None
    path: str | None = None
    value: dict[str, Any] | None = None
    default: dict[str, Any] | None = None
    operator: MathOperator | None = None
    operand: dict[str, Any] | None = None
    count: int | None = None
    duplicates: bool | None = None
    allow_duplicates: bool | None = None
    overwrite: bool | None = None
    entries: list[WireEntry] | None = None


class WireResponse(BaseModel):
    found: bool = False
    data: dict[str, Any] | None = None
    error: WireError | None = None


def _envelope(value: Any) -> dict[str, Any]:
    return codec.encode(value).model_dump(mode="json")


# ---- client side ------------------------------------------------------------


def request_from_payload(payload: Payload) -> WireRequest:
    fields: dict[str, Any] = {}
    for name in type(payload).model_fields:
        if name in _LOCAL_ONLY:
            continue
        value = getattr(payload, name)
        if value is ABSENT:
            continue
        if name == "path":
            fields[name] = format_path(value)
        elif name in _ENVELOPED:
            fields[name] = _envelope(value)
        elif name == "entries":
            fields[name] = [
                WireEntry(key=entry.key, path=format_path(entry.path), value=_envelope(entry.value))
                for entry in value
            ]
        else:
            fields[name] = value
    return WireRequest(**fields)


def apply_response(payload: Payload, response: WireResponse) -> Payload:
    """Copy a response onto the payload; remote errors are raised as their own class."""
    if response.error is not None:
        raise error_from_kind(response.error.kind, response.error.message)
    if response.found and response.data is not None:
        payload.data = codec.decode(response.data)
    return payload


# ---- server side ------------------------------------------------------------


def payload_from_request(method: Method, request: WireRequest) -> Payload:
    """
    Build the Method's payload from a request. Raises ``CodecError`` for a
    bad envelope and pydantic's ``ValidationError`` for missing fields.
    """
    cls = PAYLOAD_TYPES[method]
    fields: dict[str, Any] = {}
    for name, value in request:
        if value is None or name not in cls.model_fields:
            continue
        if name == "path":
            fields[name] = parse_path(value)
        elif name in _ENVELOPED:
            fields[name] = codec.decode(value)
        elif name == "entries":
            fields[name] = [
                SetEntry(
                    key=entry.key,
                    path=parse_path(entry.path),
                    value=None if entry.value is None else codec.decode(entry.value),
                )
                for entry in value
            ]
        else:
            fields[name] = value
    return cls(**fields)


def response_from_value(value: Any) -> WireResponse:
    return WireResponse(found=True, data=_envelope(value))


def response_from_payload(payload: Payload) -> WireResponse:
    if not payload.has_data():
        return WireResponse()
    return response_from_value(payload.data)


def response_from_error(error: StoreError) -> WireResponse:
    return WireResponse(error=WireError(kind=type(error).__name__, message=str(error)))
