"""
Request/response protocol between ``Store`` and persistence providers.

Every operation is a ``Method``. A call travels as that Method's payload
model: the ``Store`` fills the request fields, the provider handler fills
``data`` (or ``error``) and hands the same payload back.

Providers declare what they support by decorating async handlers::

    class MyProvider(Provider):
        @handles(Method.GET)
        async def get(self, payload: GetPayload) -> GetPayload:
            ...

``Provider.capabilities`` is derived from those decorations once per class.
"""

from __future__ import annotations

import enum
import inspect
from typing import Any, Awaitable, Callable, ClassVar, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .errors import (
    LifecycleError,
    MethodNotImplementedError,
    MigrationError,
    NeedsMigrationError,
    StoreError,
)
from .keypath import ABSENT, Segment

Hook = Callable[[Any, str], Any]


class Method(str, enum.Enum):
    GET = "get"
    GET_ALL = "get_all"
    GET_MANY = "get_many"
    SET = "set"
    SET_MANY = "set_many"
    DELETE = "delete"
    DELETE_MANY = "delete_many"
    HAS = "has"
    INC = "inc"
    DEC = "dec"
    MATH = "math"
    PUSH = "push"
    REMOVE = "remove"
    INCLUDES = "includes"
    FILTER_BY_DATA = "filter_by_data"
    FILTER_BY_HOOK = "filter_by_hook"
    FIND_BY_DATA = "find_by_data"
    FIND_BY_HOOK = "find_by_hook"
    SOME_BY_DATA = "some_by_data"
    SOME_BY_HOOK = "some_by_hook"
    EVERY_BY_DATA = "every_by_data"
    EVERY_BY_HOOK = "every_by_hook"
    UPDATE_BY_DATA = "update_by_data"
    UPDATE_BY_HOOK = "update_by_hook"
    KEYS = "keys"
    VALUES = "values"
    ENTRIES = "entries"
    SIZE = "size"
    RANDOM = "random"
    RANDOM_KEY = "random_key"
    AUTO_KEY = "auto_key"
    CLEAR = "clear"
    INIT = "init"
    MIGRATE = "migrate"
    ENSURE = "ensure"
    EACH = "each"
    MAP_BY_PATH = "map_by_path"
    MAP_BY_HOOK = "map_by_hook"
    PARTITION_BY_DATA = "partition_by_data"
    PARTITION_BY_HOOK = "partition_by_hook"


HOOK_METHODS = frozenset(
    {
        Method.FILTER_BY_HOOK,
        Method.FIND_BY_HOOK,
        Method.SOME_BY_HOOK,
        Method.EVERY_BY_HOOK,
        Method.UPDATE_BY_HOOK,
        Method.EACH,
        Method.MAP_BY_HOOK,
        Method.PARTITION_BY_HOOK,
    }
)


class MathOperator(str, enum.Enum):
    ADD = "add"
    SUBTRACT = "subtract"
    MULTIPLY = "multiply"
    DIVIDE = "divide"
    REMAINDER = "remainder"
    EXPONENT = "exponent"


async def call_hook(hook: Hook, value: Any, key: str) -> Any:
    """Run a caller hook that may be sync or async."""
    result = hook(value, key)
    if inspect.isawaitable(result):
        result = await result
    return result


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class Payload(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    method: ClassVar[Method]

    data: Any = ABSENT
    error: StoreError | None = None

    def has_data(self) -> bool:
        return self.data is not ABSENT


class KeyedPayload(Payload):
    key: str
    path: tuple[Segment, ...] = ()


class ByDataPayload(Payload):
    path: tuple[Segment, ...] = ()
    value: Any = None


class ByHookPayload(Payload):
    hook: Hook


class CountPayload(Payload):
    count: int = 1
    duplicates: bool = False


class InitPayload(Payload):
    method: ClassVar[Method] = Method.INIT
    name: str


class MigratePayload(Payload):
    method: ClassVar[Method] = Method.MIGRATE
    name: str


class GetPayload(KeyedPayload):
    method: ClassVar[Method] = Method.GET


class GetAllPayload(Payload):
    method: ClassVar[Method] = Method.GET_ALL


class GetManyPayload(Payload):
    method: ClassVar[Method] = Method.GET_MANY
    keys: list[str]


class SetPayload(KeyedPayload):
    method: ClassVar[Method] = Method.SET
    value: Any = None


class SetEntry(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    key: str
    path: tuple[Segment, ...] = ()
    value: Any = None


class SetManyPayload(Payload):
    method: ClassVar[Method] = Method.SET_MANY
    entries: list[SetEntry] = Field(default_factory=list)
    overwrite: bool = True


class DeletePayload(KeyedPayload):
    method: ClassVar[Method] = Method.DELETE


class DeleteManyPayload(Payload):
    method: ClassVar[Method] = Method.DELETE_MANY
    keys: list[str]


class HasPayload(KeyedPayload):
    method: ClassVar[Method] = Method.HAS


class IncPayload(KeyedPayload):
    method: ClassVar[Method] = Method.INC


class DecPayload(KeyedPayload):
    method: ClassVar[Method] = Method.DEC


class MathPayload(KeyedPayload):
    method: ClassVar[Method] = Method.MATH
    operator: MathOperator
    operand: Any


class PushPayload(KeyedPayload):
    method: ClassVar[Method] = Method.PUSH
    value: Any = None
    allow_duplicates: bool = True


class RemovePayload(KeyedPayload):
    """Remove by deep equality with ``value``, or every element ``hook`` accepts."""

    method: ClassVar[Method] = Method.REMOVE
    value: Any = ABSENT
    hook: Hook | None = None


class IncludesPayload(KeyedPayload):
    method: ClassVar[Method] = Method.INCLUDES
    value: Any = None


class FilterByDataPayload(ByDataPayload):
    method: ClassVar[Method] = Method.FILTER_BY_DATA


class FilterByHookPayload(ByHookPayload):
    method: ClassVar[Method] = Method.FILTER_BY_HOOK


class FindByDataPayload(ByDataPayload):
    method: ClassVar[Method] = Method.FIND_BY_DATA


class FindByHookPayload(ByHookPayload):
    method: ClassVar[Method] = Method.FIND_BY_HOOK


class SomeByDataPayload(ByDataPayload):
    method: ClassVar[Method] = Method.SOME_BY_DATA


class SomeByHookPayload(ByHookPayload):
    method: ClassVar[Method] = Method.SOME_BY_HOOK


class EveryByDataPayload(ByDataPayload):
    method: ClassVar[Method] = Method.EVERY_BY_DATA


class EveryByHookPayload(ByHookPayload):
    method: ClassVar[Method] = Method.EVERY_BY_HOOK


class PartitionByDataPayload(ByDataPayload):
    method: ClassVar[Method] = Method.PARTITION_BY_DATA


class PartitionByHookPayload(ByHookPayload):
    method: ClassVar[Method] = Method.PARTITION_BY_HOOK


class UpdateByDataPayload(KeyedPayload):
    method: ClassVar[Method] = Method.UPDATE_BY_DATA
    value: Any = None


class UpdateByHookPayload(KeyedPayload):
    method: ClassVar[Method] = Method.UPDATE_BY_HOOK
    hook: Hook


class KeysPayload(Payload):
    method: ClassVar[Method] = Method.KEYS


class ValuesPayload(Payload):
    method: ClassVar[Method] = Method.VALUES


class EntriesPayload(Payload):
    method: ClassVar[Method] = Method.ENTRIES


class SizePayload(Payload):
    method: ClassVar[Method] = Method.SIZE


class ClearPayload(Payload):
    method: ClassVar[Method] = Method.CLEAR


class AutoKeyPayload(Payload):
    method: ClassVar[Method] = Method.AUTO_KEY


class RandomPayload(CountPayload):
    method: ClassVar[Method] = Method.RANDOM


class RandomKeyPayload(CountPayload):
    method: ClassVar[Method] = Method.RANDOM_KEY


class EnsurePayload(KeyedPayload):
    method: ClassVar[Method] = Method.ENSURE
    default: Any = None


class EachPayload(ByHookPayload):
    method: ClassVar[Method] = Method.EACH


class MapByPathPayload(Payload):
    method: ClassVar[Method] = Method.MAP_BY_PATH
    path: tuple[Segment, ...] = ()


class MapByHookPayload(ByHookPayload):
    method: ClassVar[Method] = Method.MAP_BY_HOOK


PAYLOAD_TYPES: dict[Method, type[Payload]] = {
    cls.method: cls
    for cls in (
        InitPayload,
        MigratePayload,
        GetPayload,
        GetAllPayload,
        GetManyPayload,
        SetPayload,
        SetManyPayload,
        DeletePayload,
        DeleteManyPayload,
        HasPayload,
        IncPayload,
        DecPayload,
        MathPayload,
        PushPayload,
        RemovePayload,
        IncludesPayload,
        FilterByDataPayload,
        FilterByHookPayload,
        FindByDataPayload,
        FindByHookPayload,
        SomeByDataPayload,
        SomeByHookPayload,
        EveryByDataPayload,
        EveryByHookPayload,
        PartitionByDataPayload,
        PartitionByHookPayload,
        UpdateByDataPayload,
        UpdateByHookPayload,
        KeysPayload,
        ValuesPayload,
        EntriesPayload,
        SizePayload,
        ClearPayload,
        AutoKeyPayload,
        RandomPayload,
        RandomKeyPayload,
        EnsurePayload,
        EachPayload,
        MapByPathPayload,
        MapByHookPayload,
    )
}


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

PayloadT = TypeVar("PayloadT", bound=Payload)
HandlerT = TypeVar("HandlerT", bound=Callable[..., Awaitable[Any]])

# Layout version written by the bundled providers.
CURRENT_SCHEMA_VERSION = 2

# Errors that abort the call instead of travelling on the payload.
FAIL_FAST_ERRORS = (LifecycleError, NeedsMigrationError, MigrationError)


def handles(*methods: Method) -> Callable[[HandlerT], HandlerT]:
    """Mark an async provider method as the handler for one or more Methods."""

    def mark(fn: HandlerT) -> HandlerT:
        fn.__pathkv_methods__ = methods  # type: ignore[attr-defined]
        return fn

    return mark


class Provider:
    """
    Base class for persistence backends.

    Subclasses implement one ``@handles`` coroutine per Method they support.
    Anything left out is either synthesized by the ``Store`` from primitives
    or reported as ``MethodNotImplementedError``.

    ``schema_version`` is the layout version this provider writes. ``init``
    answers with the version it found on storage; when that is older, the
    ``Store`` must call ``migrate`` before anything else.
    """

    schema_version: ClassVar[int] = 1
    _handler_names: ClassVar[dict[Method, str]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        names: dict[Method, str] = {}
        for klass in reversed(cls.__mro__):
            for attr, fn in vars(klass).items():
                for method in getattr(fn, "__pathkv_methods__", ()):
                    names[method] = attr
        cls._handler_names = names

    @property
    def capabilities(self) -> frozenset[Method]:
        return frozenset(self._handler_names)

    def handler_for(self, method: Method) -> Callable[[Payload], Awaitable[Payload]] | None:
        name = self._handler_names.get(method)
        return getattr(self, name) if name is not None else None

    async def dispatch(self, payload: PayloadT) -> PayloadT:
        handler = self.handler_for(payload.method)
        if handler is None:
            raise MethodNotImplementedError(f"{type(self).__name__} does not handle {payload.method.value!r}")
        try:
            return await handler(payload)
        except FAIL_FAST_ERRORS:
            raise
        except StoreError as e:
            payload.error = e
            return payload

    @handles(Method.INIT)
    async def init(self, payload: InitPayload) -> InitPayload:
        payload.data = self.schema_version
        return payload

    @handles(Method.MIGRATE)
    async def migrate(self, payload: MigratePayload) -> MigratePayload:
        raise MigrationError(f"{type(self).__name__} has no migrations")

    async def close(self) -> None:
        return None
