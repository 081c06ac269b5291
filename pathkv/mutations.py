"""
Pure value transformations behind the composite Methods.

Providers call these inside their own read-modify-write (e.g. one SQLite
transaction); the ``Store`` calls them when it synthesizes a Method from
Get + Set. Nothing here touches storage.
"""

from __future__ import annotations

import decimal
import random
from typing import Any, Iterable, Mapping, Sequence

from .errors import MethodNotImplementedError, MissingDataError, StoreTypeError
from .keypath import ABSENT, PathLike, format_path, resolve
from .protocol import (
    ByDataPayload,
    ByHookPayload,
    DecPayload,
    EachPayload,
    EnsurePayload,
    EveryByDataPayload,
    EveryByHookPayload,
    FilterByDataPayload,
    FilterByHookPayload,
    FindByDataPayload,
    FindByHookPayload,
    IncludesPayload,
    IncPayload,
    KeyedPayload,
    MapByHookPayload,
    MapByPathPayload,
    MathOperator,
    MathPayload,
    Method,
    PartitionByDataPayload,
    PartitionByHookPayload,
    Payload,
    PushPayload,
    RemovePayload,
    SomeByDataPayload,
    SomeByHookPayload,
    UpdateByDataPayload,
    call_hook,
)


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float, decimal.Decimal)) and not isinstance(value, bool)


def deep_equal(left: Any, right: Any) -> bool:
    """``==`` that keeps ``True`` and ``1`` apart at every depth."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        return (
            type(left) is type(right)
            and len(left) == len(right)
            and all(deep_equal(a, b) for a, b in zip(left, right))
        )
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        return left.keys() == right.keys() and all(deep_equal(left[k], right[k]) for k in left)
    return left == right


def _describe(key: str, path: PathLike) -> str:
    rendered = format_path(path)
    return f"{key!r} at path {rendered!r}" if rendered else repr(key)


def step(current: Any, delta: int, *, key: str, path: PathLike) -> Any:
    """Inc/Dec: an absent value counts as 0."""
    if current is ABSENT:
        current = 0
    if not is_number(current):
        raise StoreTypeError(f"Cannot increment non-numeric value for {_describe(key, path)}: {current!r}")
    return current + delta


def apply_math(current: Any, operator: MathOperator | str, operand: Any, *, key: str, path: PathLike) -> Any:
    if current is ABSENT:
        raise MissingDataError(f"No value stored for {_describe(key, path)}")
    if not is_number(current):
        raise StoreTypeError(f"Cannot apply math to non-numeric value for {_describe(key, path)}: {current!r}")
    if not is_number(operand):
        raise StoreTypeError(f"Math operand must be numeric, got {operand!r}")

    op = MathOperator(operator)
    try:
        if op is MathOperator.ADD:
            return current + operand
        if op is MathOperator.SUBTRACT:
            return current - operand
        if op is MathOperator.MULTIPLY:
            return current * operand
        if op is MathOperator.DIVIDE:
            if isinstance(current, int) and isinstance(operand, int) and operand and current % operand == 0:
                return current // operand
            return current / operand
        if op is MathOperator.REMAINDER:
            return current % operand
        return current**operand
    except (ZeroDivisionError, decimal.DivisionByZero, decimal.InvalidOperation) as e:
        raise StoreTypeError(f"Cannot {op.value} {current!r} by {operand!r}: {e}") from e
    except (TypeError, OverflowError) as e:
        raise StoreTypeError(f"Cannot {op.value} {current!r} with {operand!r}: {e}") from e


def as_sequence(current: Any, *, key: str, path: PathLike, method: str) -> list:
    if not isinstance(current, list):
        raise StoreTypeError(f"Cannot {method} on non-sequence value for {_describe(key, path)}: {current!r}")
    return current


def push(current: Any, value: Any, *, allow_duplicates: bool, key: str, path: PathLike) -> list:
    """Append value; an absent location starts as an empty sequence."""
    items = [] if current is ABSENT else list(as_sequence(current, key=key, path=path, method="push"))
    if allow_duplicates or not includes(items, value):
        items.append(value)
    return items


def remove_equal(current: Any, value: Any, *, key: str, path: PathLike) -> list:
    items = as_sequence(current, key=key, path=path, method="remove")
    return [item for item in items if not deep_equal(item, value)]


def remove_flagged(current: Any, flags: Sequence[Any], *, key: str, path: PathLike) -> list:
    """Drop items whose hook result (in ``flags``, same order) was truthy."""
    items = as_sequence(current, key=key, path=path, method="remove")
    return [item for item, flag in zip(items, flags) if not flag]


def includes(current: Any, value: Any) -> bool:
    if not isinstance(current, (list, tuple)):
        return False
    return any(deep_equal(item, value) for item in current)


def merge_update(current: Any, data: Any, *, key: str, path: PathLike) -> dict:
    """Shallow merge mapping ``data`` into the mapping at the target location."""
    if not isinstance(data, Mapping):
        raise StoreTypeError(f"Update data must be a mapping, got {type(data).__name__}")
    if current is ABSENT or current is None:
        return dict(data)
    if not isinstance(current, dict):
        raise StoreTypeError(f"Cannot merge into non-mapping value for {_describe(key, path)}: {current!r}")
    merged = dict(current)
    merged.update(data)
    return merged


def matches(document: Any, path: PathLike, value: Any) -> bool:
    """ByData predicate: the value at path exists and deep-equals ``value``."""
    found = resolve(document, path)
    return found is not ABSENT and deep_equal(found, value)


def sample(items: Sequence[Any], count: int, duplicates: bool, rng: random.Random | None = None) -> list:
    """
    ``min(count, len(items))`` distinct picks, or ``count`` picks with
    replacement when duplicates are allowed.
    """
    if count < 1 or not items:
        return []
    rng = rng or random
    if duplicates:
        return [items[rng.randrange(len(items))] for _ in range(count)]
    return rng.sample(list(items), min(count, len(items)))


# Methods that read one location, maybe write it back, and answer from it.
KEYED_METHODS = frozenset(
    {
        Method.INC,
        Method.DEC,
        Method.MATH,
        Method.PUSH,
        Method.REMOVE,
        Method.INCLUDES,
        Method.UPDATE_BY_DATA,
        Method.ENSURE,
    }
)


def apply_keyed(payload: KeyedPayload, current: Any) -> tuple[Any, Any]:
    """
    Evaluate a keyed Method against the value currently at ``payload.path``.

    Returns ``(new_value, data)``; ``new_value`` is ``ABSENT`` when nothing
    must be written. Hook-based removal is async and handled by callers.
    """
    key, path = payload.key, payload.path
    if isinstance(payload, IncPayload):
        new = step(current, 1, key=key, path=path)
        return new, new
    if isinstance(payload, DecPayload):
        new = step(current, -1, key=key, path=path)
        return new, new
    if isinstance(payload, MathPayload):
        new = apply_math(current, payload.operator, payload.operand, key=key, path=path)
        return new, new
    if isinstance(payload, PushPayload):
        return push(current, payload.value, allow_duplicates=payload.allow_duplicates, key=key, path=path), None
    if isinstance(payload, RemovePayload):
        if current is ABSENT:
            return ABSENT, None
        return remove_equal(current, payload.value, key=key, path=path), None
    if isinstance(payload, IncludesPayload):
        return ABSENT, includes(current, payload.value)
    if isinstance(payload, UpdateByDataPayload):
        new = merge_update(current, payload.value, key=key, path=path)
        return new, new
    if isinstance(payload, EnsurePayload):
        if current is ABSENT:
            return payload.default, payload.default
        return ABSENT, current
    raise MethodNotImplementedError(f"{payload.method.value!r} is not a keyed method")


SCAN_METHODS = frozenset(
    {
        Method.FILTER_BY_DATA,
        Method.FILTER_BY_HOOK,
        Method.FIND_BY_DATA,
        Method.FIND_BY_HOOK,
        Method.SOME_BY_DATA,
        Method.SOME_BY_HOOK,
        Method.EVERY_BY_DATA,
        Method.EVERY_BY_HOOK,
        Method.PARTITION_BY_DATA,
        Method.PARTITION_BY_HOOK,
        Method.MAP_BY_PATH,
        Method.MAP_BY_HOOK,
        Method.EACH,
    }
)


async def _predicate(payload: Payload, key: str, value: Any) -> bool:
    if isinstance(payload, ByHookPayload):
        return bool(await call_hook(payload.hook, value, key))
    if not isinstance(payload, ByDataPayload):
        raise MethodNotImplementedError(f"{payload.method.value} is not a scan Method")
    return matches(value, payload.path, payload.value)


async def run_scan(payload: Payload, entries: Iterable[tuple[str, Any]]) -> Any:
    """
    Evaluate a full-keyspace Method over ``entries`` in the given order.

    Find answers with the first match in that order, whatever the backend
    happens to yield.
    """
    if isinstance(payload, (FilterByDataPayload, FilterByHookPayload)):
        return {key: value for key, value in entries if await _predicate(payload, key, value)}
    if isinstance(payload, (FindByDataPayload, FindByHookPayload)):
        for key, value in entries:
            if await _predicate(payload, key, value):
                return key, value
        return None, None
    if isinstance(payload, (SomeByDataPayload, SomeByHookPayload)):
        for key, value in entries:
            if await _predicate(payload, key, value):
                return True
        return False
    if isinstance(payload, (EveryByDataPayload, EveryByHookPayload)):
        for key, value in entries:
            if not await _predicate(payload, key, value):
                return False
        return True
    if isinstance(payload, (PartitionByDataPayload, PartitionByHookPayload)):
        truthy: dict[str, Any] = {}
        falsy: dict[str, Any] = {}
        for key, value in entries:
            (truthy if await _predicate(payload, key, value) else falsy)[key] = value
        return truthy, falsy
    if isinstance(payload, MapByPathPayload):
        found = (resolve(value, payload.path) for _, value in entries)
        return [value for value in found if value is not ABSENT]
    if isinstance(payload, MapByHookPayload):
        return [await call_hook(payload.hook, value, key) for key, value in entries]
    if isinstance(payload, EachPayload):
        for key, value in entries:
            await call_hook(payload.hook, value, key)
        return None
    raise MethodNotImplementedError(f"{payload.method.value!r} is not a scan method")
