from __future__ import annotations

import datetime as dt
import decimal
import math
import re
import uuid

import pytest

from pathkv import codec
from pathkv.errors import CodecError


def test_round_trip_preserves_extended_types():
    value = {
        "when": dt.datetime(2024, 5, 1, 12, 30, tzinfo=dt.timezone.utc),
        "day": dt.date(2024, 5, 1),
        "span": dt.timedelta(days=2, seconds=5, microseconds=7),
        "tags": {"b", "a"},
        "frozen": frozenset({1, 2}),
        "pair": (1, "two"),
        "blob": b"\x00\xffdata",
        "pattern": re.compile(r"^a+$", re.IGNORECASE),
        "price": decimal.Decimal("19.99"),
        "id": uuid.UUID("12345678-1234-5678-1234-567812345678"),
        "by_number": {1: "one", 2: "two"},
        "nested": [None, True, 1, 1.5, "s", {"x": [1, 2]}],
    }
    restored = codec.loads(codec.dumps(value))
    assert restored == value
    assert isinstance(restored["pair"], tuple)
    assert isinstance(restored["tags"], set)
    assert restored["pattern"].flags & re.IGNORECASE


def test_bool_and_int_stay_distinct():
    assert codec.encode(True).type_tag == "bool"
    assert codec.encode(1).type_tag == "int"
    assert codec.decode(codec.encode(True)) is True


def test_non_finite_floats_round_trip():
    assert math.isnan(codec.loads(codec.dumps(float("nan"))))
    assert codec.loads(codec.dumps(float("-inf"))) == float("-inf")


def test_set_encoding_is_stable():
    assert codec.dumps({3, 1, 2}) == codec.dumps({2, 3, 1})


def test_mapping_key_order_survives_dumps():
    assert list(codec.loads(codec.dumps({"z": 1, "a": 2}))) == ["z", "a"]
    nested = codec.loads(codec.dumps({"outer": {"b": 1, "a": 2}}))
    assert list(nested["outer"]) == ["b", "a"]


def test_envelope_wire_shape():
    assert codec.encode("x").model_dump() == {"type_tag": "str", "raw": "x"}
    assert codec.encode([1]).model_dump(mode="json") == {
        "type_tag": "list",
        "raw": [{"type_tag": "int", "raw": 1}],
    }


def test_unsupported_value_is_rejected():
    with pytest.raises(CodecError):
        codec.encode(object())


@pytest.mark.parametrize(
    "envelope",
    [
        {"type_tag": "nope", "raw": 1},
        {"type_tag": "int", "raw": "1"},
        {"type_tag": "int", "raw": True},
        {"type_tag": "date", "raw": "not-a-date"},
        {"type_tag": "bytes", "raw": "***"},
        {"type_tag": "regex", "raw": {"pattern": "("}},
        {"type_tag": "decimal", "raw": "abc"},
        {"raw": 1},
        "plain string",
    ],
)
def test_corrupt_envelopes_raise_codec_error(envelope):
    with pytest.raises(CodecError):
        codec.decode(envelope)


def test_loads_rejects_invalid_json():
    with pytest.raises(CodecError):
        codec.loads("{not json")
