"""
Caller-facing store.

A ``Store`` turns each call into the Method's payload, pushes it through a
per-store FIFO queue and hands it to the provider, or to a fallback built
from the provider's primitives when the provider does not handle the Method
itself. Which of the two serves each Method is decided once, in
``__init__``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from typing import Any, Awaitable, Callable, Iterable, Mapping

from . import mutations
from .errors import (
    LifecycleError,
    MethodNotImplementedError,
    MigrationError,
    MissingDataError,
    NeedsMigrationError,
    StoreError,
    StoreTypeError,
)
from .keypath import ABSENT, PathLike, parse_path, resolve
from .locks import OperationQueue
from .protocol import (
    AutoKeyPayload,
    ClearPayload,
    DecPayload,
    DeleteManyPayload,
    DeletePayload,
    EachPayload,
    EnsurePayload,
    EntriesPayload,
    EveryByDataPayload,
    EveryByHookPayload,
    FilterByDataPayload,
    FilterByHookPayload,
    FindByDataPayload,
    FindByHookPayload,
    GetAllPayload,
    GetManyPayload,
    GetPayload,
    HasPayload,
    Hook,
    IncludesPayload,
    IncPayload,
    InitPayload,
    KeyedPayload,
    KeysPayload,
    MapByHookPayload,
    MapByPathPayload,
    MathOperator,
    MathPayload,
    Method,
    MigratePayload,
    PartitionByDataPayload,
    PartitionByHookPayload,
    Payload,
    PayloadT,
    Provider,
    PushPayload,
    RandomKeyPayload,
    RandomPayload,
    RemovePayload,
    SetEntry,
    SetManyPayload,
    SetPayload,
    SizePayload,
    SomeByDataPayload,
    SomeByHookPayload,
    UpdateByDataPayload,
    UpdateByHookPayload,
    ValuesPayload,
    call_hook,
)

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9_\-]+$")

Handler = Callable[[Payload], Awaitable[Payload]]


class StoreState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    MIGRATION_NEEDED = "migration_needed"
    CLOSED = "closed"


# Primitives every fallback is built from. A fallback is only offered when
# the provider handles all of the primitives it needs.
_SCAN = frozenset({Method.ENTRIES})
_READ = frozenset({Method.GET})
_READ_WRITE = frozenset({Method.GET, Method.SET})

FALLBACK_REQUIREMENTS: dict[Method, frozenset[Method]] = {
    Method.HAS: _READ,
    Method.GET_MANY: _READ,
    Method.GET_ALL: _SCAN,
    Method.KEYS: _SCAN,
    Method.VALUES: _SCAN,
    Method.SIZE: _SCAN,
    Method.SET_MANY: _READ_WRITE,
    Method.DELETE_MANY: frozenset({Method.DELETE}),
    Method.CLEAR: frozenset({Method.ENTRIES, Method.DELETE}),
    Method.RANDOM: _SCAN,
    Method.RANDOM_KEY: _SCAN,
    Method.UPDATE_BY_HOOK: _READ_WRITE,
    **{method: _READ_WRITE for method in mutations.KEYED_METHODS},
    **{method: _SCAN for method in mutations.SCAN_METHODS},
}


class Store:
    """
    A named key/value collection backed by a ``Provider``.

    Every operation is a coroutine. Paths accept the string syntax of
    ``pathkv.keypath`` or a sequence of segments; ``""`` is the whole value.

    Usage::

        async with Store("users", SQLiteProvider(data_dir=path)) as users:
            await users.set("alice", "", {"visits": 0})
            await users.inc("alice", "visits")
    """

    def __init__(
        self,
        name: str,
        provider: Provider,
        *,
        auto_migrate: bool = False,
        debug_log_payloads: bool = False,
    ):
        if not _NAME_RE.match(name):
            raise ValueError(f"Invalid store name {name!r}: use letters, digits, '_' or '-'")
        self.name = name
        self.provider = provider
        self.auto_migrate = auto_migrate
        self.debug_log_payloads = debug_log_payloads

        self._state = StoreState.UNINITIALIZED
        self._schema_version: int | None = None
        self._queue = OperationQueue()
        self._handlers = self._negotiate()

    # ------------------------------------------------------------------
    # Capability negotiation
    # ------------------------------------------------------------------

    def _negotiate(self) -> dict[Method, Handler]:
        native = self.provider.capabilities
        handlers: dict[Method, Handler] = {}
        for method in Method:
            if method in native:
                handlers[method] = self.provider.dispatch
            elif method in FALLBACK_REQUIREMENTS and FALLBACK_REQUIREMENTS[method] <= native:
                handlers[method] = self._fallback
            else:
                handlers[method] = self._unsupported
        synthesized = sorted(m.value for m, h in handlers.items() if h == self._fallback)
        if synthesized:
            logger.debug("Store %r synthesizes %s for %s", self.name, ", ".join(synthesized), type(self.provider).__name__)
        return handlers

    def native_methods(self) -> frozenset[Method]:
        return frozenset(m for m, h in self._handlers.items() if h == self.provider.dispatch)

    def supported_methods(self) -> frozenset[Method]:
        return frozenset(m for m, h in self._handlers.items() if h != self._unsupported)

    async def _unsupported(self, payload: Payload) -> Payload:
        raise MethodNotImplementedError(
            f"{type(self.provider).__name__} does not support {payload.method.value!r} and it cannot be synthesized"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def schema_version(self) -> int | None:
        return self._schema_version

    async def __aenter__(self) -> "Store":
        return await self.init()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def init(self) -> "Store":
        if self._state is not StoreState.UNINITIALIZED:
            raise LifecycleError(f"Store {self.name!r} is {self._state.value}; init() runs once")
        async with self._queue.slot():
            try:
                await self._init_locked()
            except BaseException:
                # A failed init leaves the store UNINITIALIZED and the provider closed.
                self._state = StoreState.UNINITIALIZED
                self._schema_version = None
                await self.provider.close()
                raise
        logger.info("Store %r initialized (%s, state=%s)", self.name, type(self.provider).__name__, self._state.value)
        return self

    async def _init_locked(self) -> None:
        payload = await self.provider.dispatch(InitPayload(name=self.name))
        if payload.error is not None:
            raise payload.error
        found = int(payload.data)
        current = self.provider.schema_version
        self._schema_version = found
        if found > current:
            raise MigrationError(
                f"Store {self.name!r} uses schema v{found}, newer than supported v{current}"
            )
        if found < current:
            logger.info("Store %r is at schema v%s (current v%s); migration needed", self.name, found, current)
            self._state = StoreState.MIGRATION_NEEDED
            if self.auto_migrate:
                await self._migrate_locked()
        else:
            self._state = StoreState.READY

    async def migrate(self) -> int:
        """Bring the on-disk layout to the provider's current schema version."""
        if self._state is StoreState.READY:
            return self._schema_version or self.provider.schema_version
        if self._state is not StoreState.MIGRATION_NEEDED:
            raise LifecycleError(f"Store {self.name!r} is {self._state.value}; cannot migrate")
        async with self._queue.slot():
            if self._state is StoreState.MIGRATION_NEEDED:
                await self._migrate_locked()
        return self._schema_version or self.provider.schema_version

    async def _migrate_locked(self) -> None:
        logger.info("Migrating store %r from schema v%s", self.name, self._schema_version)
        payload = await self.provider.dispatch(MigratePayload(name=self.name))
        if payload.error is not None:
            raise MigrationError(f"Migration of store {self.name!r} failed: {payload.error}") from payload.error
        self._schema_version = int(payload.data)
        self._state = StoreState.READY
        logger.info("Store %r migrated to schema v%s", self.name, self._schema_version)

    async def close(self) -> None:
        if self._state is StoreState.CLOSED:
            return
        async with self._queue.slot():
            if self._state is StoreState.CLOSED:
                return
            self._state = StoreState.CLOSED
            await self.provider.close()
        logger.info("Store %r closed", self.name)

    def _check_ready(self) -> None:
        if self._state is StoreState.READY:
            return
        if self._state is StoreState.MIGRATION_NEEDED:
            raise NeedsMigrationError(
                f"Store {self.name!r} is at schema v{self._schema_version}; call migrate() first"
            )
        raise LifecycleError(f"Store {self.name!r} is {self._state.value}")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def execute(self, payload: PayloadT) -> PayloadT:
        """Run a prepared payload through the queue; raises the error it comes back with."""
        self._check_ready()
        # Shielded: a caller that gives up (e.g. a timeout) abandons the
        # work, it does not interrupt it halfway through a read-modify-write.
        task = asyncio.ensure_future(self._execute(payload))
        try:
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(self._log_abandoned)
            raise
        if result.error is not None:
            raise result.error
        return result

    def _log_abandoned(self, task: "asyncio.Future[Any]") -> None:
        if task.cancelled():
            return
        exc = task.exception() or task.result().error
        if exc is not None:
            logger.warning("Store %r: abandoned operation failed: %s", self.name, exc)

    async def _execute(self, payload: PayloadT) -> PayloadT:
        async with self._queue.slot():
            self._check_ready()
            if self.debug_log_payloads:
                logger.debug("Store %r -> %s %r", self.name, payload.method.value, payload)
            result = await self._handlers[payload.method](payload)
            if self.debug_log_payloads:
                logger.debug("Store %r <- %s data=%r error=%r", self.name, payload.method.value, result.data, result.error)
            return result  # type: ignore[return-value]

    async def _native(self, payload: PayloadT) -> PayloadT:
        result = await self.provider.dispatch(payload)
        if result.error is not None:
            raise result.error
        return result

    async def _read(self, key: str, path: PathLike = ()) -> Any:
        return (await self._native(GetPayload(key=key, path=parse_path(path)))).data

    async def _write(self, key: str, path: PathLike, value: Any) -> None:
        await self._native(SetPayload(key=key, path=parse_path(path), value=value))

    async def _entries(self) -> list[tuple[str, Any]]:
        return list((await self._native(EntriesPayload())).data)

    async def _fallback(self, payload: Payload) -> Payload:
        try:
            payload.data = await self._synthesize(payload)
        except (LifecycleError, NeedsMigrationError, MigrationError):
            raise
        except StoreError as e:
            payload.error = e
        return payload

    async def _synthesize(self, payload: Payload) -> Any:
        method = payload.method

        if method in mutations.KEYED_METHODS:
            return await self._synthesize_keyed(payload)  # type: ignore[arg-type]
        if method in mutations.SCAN_METHODS:
            return await mutations.run_scan(payload, await self._entries())

        if isinstance(payload, HasPayload):
            return await self._read(payload.key, payload.path) is not ABSENT
        if isinstance(payload, GetManyPayload):
            found = {}
            for key in payload.keys:
                value = await self._read(key)
                found[key] = None if value is ABSENT else value
            return found
        if isinstance(payload, GetAllPayload):
            return dict(await self._entries())
        if isinstance(payload, KeysPayload):
            return [key for key, _ in await self._entries()]
        if isinstance(payload, ValuesPayload):
            return [value for _, value in await self._entries()]
        if isinstance(payload, SizePayload):
            return len(await self._entries())
        if isinstance(payload, SetManyPayload):
            for entry in payload.entries:
                if not payload.overwrite and await self._read(entry.key, entry.path) is not ABSENT:
                    continue
                await self._write(entry.key, entry.path, entry.value)
            return None
        if isinstance(payload, DeleteManyPayload):
            for key in payload.keys:
                await self._native(DeletePayload(key=key))
            return None
        if isinstance(payload, ClearPayload):
            for key, _ in await self._entries():
                await self._native(DeletePayload(key=key))
            return None
        if isinstance(payload, RandomPayload):
            values = [value for _, value in await self._entries()]
            return mutations.sample(values, payload.count, payload.duplicates)
        if isinstance(payload, RandomKeyPayload):
            keys = [key for key, _ in await self._entries()]
            return mutations.sample(keys, payload.count, payload.duplicates)
        if isinstance(payload, UpdateByHookPayload):
            document = await self._read(payload.key)
            current = resolve(document, payload.path) if document is not ABSENT else ABSENT
            if current is ABSENT:
                raise MissingDataError(f"No value stored for {payload.key!r}")
            updated = await call_hook(payload.hook, current, payload.key)
            await self._write(payload.key, payload.path, updated)
            return updated
        raise MethodNotImplementedError(f"No fallback for {method.value!r}")

    async def _synthesize_keyed(self, payload: KeyedPayload) -> Any:
        current = await self._read(payload.key, payload.path)
        if isinstance(payload, RemovePayload) and payload.hook is not None:
            if current is ABSENT:
                return None
            items = mutations.as_sequence(current, key=payload.key, path=payload.path, method="remove")
            flags = [await call_hook(payload.hook, item, payload.key) for item in items]
            await self._write(payload.key, payload.path, mutations.remove_flagged(items, flags, key=payload.key, path=payload.path))
            return None
        new_value, data = mutations.apply_keyed(payload, current)
        if new_value is not ABSENT:
            await self._write(payload.key, payload.path, new_value)
        return data

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, key: str, path: PathLike = "", default: Any = None) -> Any:
        payload = await self.execute(GetPayload(key=key, path=parse_path(path)))
        return payload.data if payload.has_data() else default

    async def get_all(self) -> dict[str, Any]:
        return (await self.execute(GetAllPayload())).data

    async def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        """Values for each key; keys with nothing stored map to ``None``."""
        return (await self.execute(GetManyPayload(keys=list(keys)))).data

    async def has(self, key: str, path: PathLike = "") -> bool:
        return bool((await self.execute(HasPayload(key=key, path=parse_path(path)))).data)

    async def keys(self) -> list[str]:
        return list((await self.execute(KeysPayload())).data)

    async def values(self) -> list[Any]:
        return list((await self.execute(ValuesPayload())).data)

    async def entries(self) -> list[tuple[str, Any]]:
        return list((await self.execute(EntriesPayload())).data)

    async def size(self) -> int:
        return int((await self.execute(SizePayload())).data)

    async def random(self, count: int = 1, *, duplicates: bool = False) -> list[Any]:
        return list((await self.execute(RandomPayload(count=count, duplicates=duplicates))).data)

    async def random_key(self, count: int = 1, *, duplicates: bool = False) -> list[str]:
        return list((await self.execute(RandomKeyPayload(count=count, duplicates=duplicates))).data)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set(self, key: str, path: PathLike, value: Any) -> None:
        await self.execute(SetPayload(key=key, path=parse_path(path), value=value))

    async def set_many(
        self,
        entries: Mapping[str, Any] | Iterable[tuple[str, PathLike, Any]],
        *,
        overwrite: bool = True,
    ) -> None:
        """
        Write several values. ``entries`` is either ``{key: value}`` (whole
        documents) or ``(key, path, value)`` triples. With ``overwrite=False``
        locations that already hold a value are left alone.
        """
        if isinstance(entries, Mapping):
            items = [SetEntry(key=key, value=value) for key, value in entries.items()]
        else:
            items = [SetEntry(key=key, path=parse_path(path), value=value) for key, path, value in entries]
        await self.execute(SetManyPayload(entries=items, overwrite=overwrite))

    async def delete(self, key: str, path: PathLike = "") -> None:
        await self.execute(DeletePayload(key=key, path=parse_path(path)))

    async def delete_many(self, keys: Iterable[str]) -> None:
        await self.execute(DeleteManyPayload(keys=list(keys)))

    async def clear(self) -> None:
        await self.execute(ClearPayload())

    async def ensure(self, key: str, default: Any, path: PathLike = "") -> Any:
        """Return the stored value, writing ``default`` first if there is none."""
        return (await self.execute(EnsurePayload(key=key, path=parse_path(path), default=default))).data

    async def auto_key(self) -> str:
        return str((await self.execute(AutoKeyPayload())).data)

    # ------------------------------------------------------------------
    # Read-modify-write
    # ------------------------------------------------------------------

    async def inc(self, key: str, path: PathLike = "") -> Any:
        return (await self.execute(IncPayload(key=key, path=parse_path(path)))).data

    async def dec(self, key: str, path: PathLike = "") -> Any:
        return (await self.execute(DecPayload(key=key, path=parse_path(path)))).data

    async def math(self, key: str, path: PathLike, operator: MathOperator | str, operand: Any) -> Any:
        try:
            op = MathOperator(operator)
        except ValueError as e:
            raise StoreTypeError(f"Unknown math operator: {operator!r}") from e
        payload = MathPayload(key=key, path=parse_path(path), operator=op, operand=operand)
        return (await self.execute(payload)).data

    async def push(self, key: str, path: PathLike, value: Any, *, allow_duplicates: bool = True) -> None:
        await self.execute(PushPayload(key=key, path=parse_path(path), value=value, allow_duplicates=allow_duplicates))

    async def remove(self, key: str, path: PathLike, value: Any) -> None:
        """Drop every element deep-equal to ``value`` from the sequence at path."""
        await self.execute(RemovePayload(key=key, path=parse_path(path), value=value))

    async def remove_by_hook(self, key: str, path: PathLike, hook: Hook) -> None:
        await self.execute(RemovePayload(key=key, path=parse_path(path), hook=hook))

    async def includes(self, key: str, path: PathLike, value: Any) -> bool:
        return bool((await self.execute(IncludesPayload(key=key, path=parse_path(path), value=value))).data)

    async def update_by_data(self, key: str, path: PathLike, data: Mapping[str, Any]) -> Any:
        return (await self.execute(UpdateByDataPayload(key=key, path=parse_path(path), value=data))).data

    async def update_by_hook(self, key: str, hook: Hook, path: PathLike = "") -> Any:
        return (await self.execute(UpdateByHookPayload(key=key, path=parse_path(path), hook=hook))).data

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    async def filter_by_data(self, path: PathLike, value: Any) -> dict[str, Any]:
        return (await self.execute(FilterByDataPayload(path=parse_path(path), value=value))).data

    async def filter_by_hook(self, hook: Hook) -> dict[str, Any]:
        return (await self.execute(FilterByHookPayload(hook=hook))).data

    async def find_by_data(self, path: PathLike, value: Any) -> tuple[str | None, Any]:
        """First match in provider iteration order, or ``(None, None)``."""
        return tuple((await self.execute(FindByDataPayload(path=parse_path(path), value=value))).data)  # type: ignore[return-value]

    async def find_by_hook(self, hook: Hook) -> tuple[str | None, Any]:
        return tuple((await self.execute(FindByHookPayload(hook=hook))).data)  # type: ignore[return-value]

    async def some_by_data(self, path: PathLike, value: Any) -> bool:
        return bool((await self.execute(SomeByDataPayload(path=parse_path(path), value=value))).data)

    async def some_by_hook(self, hook: Hook) -> bool:
        return bool((await self.execute(SomeByHookPayload(hook=hook))).data)

    async def every_by_data(self, path: PathLike, value: Any) -> bool:
        return bool((await self.execute(EveryByDataPayload(path=parse_path(path), value=value))).data)

    async def every_by_hook(self, hook: Hook) -> bool:
        return bool((await self.execute(EveryByHookPayload(hook=hook))).data)

    async def partition_by_data(self, path: PathLike, value: Any) -> tuple[dict[str, Any], dict[str, Any]]:
        truthy, falsy = (await self.execute(PartitionByDataPayload(path=parse_path(path), value=value))).data
        return truthy, falsy

    async def partition_by_hook(self, hook: Hook) -> tuple[dict[str, Any], dict[str, Any]]:
        truthy, falsy = (await self.execute(PartitionByHookPayload(hook=hook))).data
        return truthy, falsy

    async def map_by_path(self, path: PathLike) -> list[Any]:
        return list((await self.execute(MapByPathPayload(path=parse_path(path)))).data)

    async def map_by_hook(self, hook: Hook) -> list[Any]:
        return list((await self.execute(MapByHookPayload(hook=hook))).data)

    async def each(self, hook: Hook) -> None:
        await self.execute(EachPayload(hook=hook))
