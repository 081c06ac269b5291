from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Mapping, TypeVar

from pydantic import BaseModel, Field

from .. import codec
from ..errors import LifecycleError, MigrationError, StorageError, StoreError
from ..json_store import atomic_write_json, read_json
from ..keypath import ABSENT, assign, remove, resolve
from ..locks import GLOBAL_PATH_LOCKS
from ..paths import data_dir as default_data_dir
from ..paths import store_file
from ..protocol import (
    CURRENT_SCHEMA_VERSION,
    AutoKeyPayload,
    ClearPayload,
    DeleteManyPayload,
    DeletePayload,
    EntriesPayload,
    GetManyPayload,
    GetPayload,
    HasPayload,
    InitPayload,
    KeysPayload,
    Method,
    MigratePayload,
    Provider,
    SetManyPayload,
    SetPayload,
    SizePayload,
    ValuesPayload,
    handles,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreFileDoc(BaseModel):
    """
    Mirrors the on-disk <name>.json schema:
      {
        "name": "<store>",
        "schema_version": 2,
        "auto_key_count": 0,
        "entries": { "<key>": {"type_tag": ..., "raw": ...} }
      }
    """

    name: str
    schema_version: int = CURRENT_SCHEMA_VERSION
    auto_key_count: int = 0
    entries: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @classmethod
    def from_disk_doc(cls, name: str, doc: Mapping[str, Any]) -> "StoreFileDoc":
        # Legacy v1: a flat { "<key>": <plain JSON value>, "::autonum": N } file.
        if "schema_version" not in doc:
            return cls(
                name=name,
                schema_version=1,
                auto_key_count=int(doc.get("::autonum", 0) or 0),
                entries={},
            )
        return cls.model_validate(doc)

    def to_disk_doc(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class JsonFileProvider(Provider):
    """
    Stores a whole store as one JSON document on disk.

    - Every operation reloads the file, so separate processes see each other's writes.
    - Writes are atomic (temp file + replace) and serialized per file.
    - Documents are kept as codec envelopes, so non-JSON types round-trip.
    """

    schema_version = CURRENT_SCHEMA_VERSION

    def __init__(self, *, data_dir: Path | None = None):
        self._data_dir = data_dir
        self._path: Path | None = None
        self._name: str | None = None

    @property
    def path(self) -> Path:
        if self._path is None:
            raise LifecycleError("JsonFileProvider used before init()")
        return self._path

    # -- file access (runs in a worker thread) --------------------------------

    def _load(self) -> StoreFileDoc:
        raw = read_json(self.path)
        if not isinstance(raw, dict):
            return StoreFileDoc(name=self._name or "")
        return StoreFileDoc.from_disk_doc(self._name or "", raw)

    def _save(self, doc: StoreFileDoc) -> None:
        atomic_write_json(self.path, doc.to_disk_doc(), sort_keys=False)

    def _read(self, fn: Callable[[StoreFileDoc], T]) -> T:
        with GLOBAL_PATH_LOCKS.lock_for(self.path):
            return fn(self._load())

    def _write(self, fn: Callable[[StoreFileDoc], T]) -> T:
        with GLOBAL_PATH_LOCKS.lock_for(self.path):
            doc = self._load()
            result = fn(doc)
            self._save(doc)
            return result

    async def _in_thread(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(fn, *args)

    @staticmethod
    def _decoded(doc: StoreFileDoc, key: str) -> Any:
        envelope = doc.entries.get(key)
        return ABSENT if envelope is None else codec.decode(envelope)

    # -- lifecycle ------------------------------------------------------------

    @handles(Method.INIT)
    async def init(self, payload: InitPayload) -> InitPayload:
        self._name = payload.name
        base = self._data_dir or default_data_dir()
        self._path = store_file(base, payload.name, ".json")

        def _open() -> int:
            with GLOBAL_PATH_LOCKS.lock_for(self.path):
                raw = read_json(self.path)
                if raw is None:
                    self._save(StoreFileDoc(name=payload.name))
                    return CURRENT_SCHEMA_VERSION
                if not isinstance(raw, dict):
                    raise StorageError(f"{self.path} does not hold a store document")
                return StoreFileDoc.from_disk_doc(payload.name, raw).schema_version

        payload.data = await self._in_thread(_open)
        return payload

    @handles(Method.MIGRATE)
    async def migrate(self, payload: MigratePayload) -> MigratePayload:
        def _run() -> int:
            with GLOBAL_PATH_LOCKS.lock_for(self.path):
                raw = read_json(self.path) or {}
                if "schema_version" in raw:
                    return int(raw["schema_version"])
                counter = raw.get("::autonum", 0)
                try:
                    entries = {
                        str(key): codec.encode(value).model_dump(mode="json")
                        for key, value in raw.items()
                        if key != "::autonum"
                    }
                    doc = StoreFileDoc(
                        name=payload.name,
                        auto_key_count=int(counter or 0),
                        entries=entries,
                    )
                except (StoreError, TypeError, ValueError) as e:
                    raise MigrationError(f"Cannot migrate {self.path}: {e}") from e
                # Single atomic replace: either the old file or the new one.
                self._save(doc)
                logger.info("Migrated %s to schema v%s (%d keys)", self.path, CURRENT_SCHEMA_VERSION, len(entries))
                return CURRENT_SCHEMA_VERSION

        payload.data = await self._in_thread(_run)
        return payload

    # -- primitives -----------------------------------------------------------

    @handles(Method.GET)
    async def get(self, payload: GetPayload) -> GetPayload:
        def _get(doc: StoreFileDoc) -> Any:
            value = self._decoded(doc, payload.key)
            return ABSENT if value is ABSENT else resolve(value, payload.path)

        found = await self._in_thread(self._read, _get)
        if found is not ABSENT:
            payload.data = found
        return payload

    @handles(Method.HAS)
    async def has(self, payload: HasPayload) -> HasPayload:
        def _has(doc: StoreFileDoc) -> bool:
            value = self._decoded(doc, payload.key)
            return value is not ABSENT and resolve(value, payload.path) is not ABSENT

        payload.data = await self._in_thread(self._read, _has)
        return payload

    @handles(Method.GET_MANY)
    async def get_many(self, payload: GetManyPayload) -> GetManyPayload:
        def _get_many(doc: StoreFileDoc) -> dict[str, Any]:
            found = {}
            for key in payload.keys:
                value = self._decoded(doc, key)
                found[key] = None if value is ABSENT else value
            return found

        payload.data = await self._in_thread(self._read, _get_many)
        return payload

    @handles(Method.SET)
    async def set(self, payload: SetPayload) -> SetPayload:
        def _set(doc: StoreFileDoc) -> None:
            current = self._decoded(doc, payload.key)
            updated = assign(None if current is ABSENT else current, payload.path, payload.value)
            doc.entries[payload.key] = codec.encode(updated).model_dump(mode="json")

        await self._in_thread(self._write, _set)
        return payload

    @handles(Method.SET_MANY)
    async def set_many(self, payload: SetManyPayload) -> SetManyPayload:
        def _set_many(doc: StoreFileDoc) -> None:
            for entry in payload.entries:
                current = self._decoded(doc, entry.key)
                if not payload.overwrite and current is not ABSENT and resolve(current, entry.path) is not ABSENT:
                    continue
                updated = assign(None if current is ABSENT else current, entry.path, entry.value)
                doc.entries[entry.key] = codec.encode(updated).model_dump(mode="json")

        await self._in_thread(self._write, _set_many)
        return payload

    @handles(Method.DELETE)
    async def delete(self, payload: DeletePayload) -> DeletePayload:
        def _delete(doc: StoreFileDoc) -> None:
            if not payload.path:
                doc.entries.pop(payload.key, None)
                return
            current = self._decoded(doc, payload.key)
            if current is not ABSENT:
                doc.entries[payload.key] = codec.encode(remove(current, payload.path)).model_dump(mode="json")

        await self._in_thread(self._write, _delete)
        return payload

    @handles(Method.DELETE_MANY)
    async def delete_many(self, payload: DeleteManyPayload) -> DeleteManyPayload:
        def _delete_many(doc: StoreFileDoc) -> None:
            for key in payload.keys:
                doc.entries.pop(key, None)

        await self._in_thread(self._write, _delete_many)
        return payload

    @handles(Method.CLEAR)
    async def clear(self, payload: ClearPayload) -> ClearPayload:
        def _clear(doc: StoreFileDoc) -> None:
            doc.entries.clear()

        await self._in_thread(self._write, _clear)
        return payload

    @handles(Method.KEYS)
    async def keys(self, payload: KeysPayload) -> KeysPayload:
        payload.data = await self._in_thread(self._read, lambda doc: list(doc.entries))
        return payload

    @handles(Method.VALUES)
    async def values(self, payload: ValuesPayload) -> ValuesPayload:
        payload.data = await self._in_thread(
            self._read, lambda doc: [codec.decode(env) for env in doc.entries.values()]
        )
        return payload

    @handles(Method.ENTRIES)
    async def entries(self, payload: EntriesPayload) -> EntriesPayload:
        payload.data = await self._in_thread(
            self._read, lambda doc: [(key, codec.decode(env)) for key, env in doc.entries.items()]
        )
        return payload

    @handles(Method.SIZE)
    async def size(self, payload: SizePayload) -> SizePayload:
        payload.data = await self._in_thread(self._read, lambda doc: len(doc.entries))
        return payload

    @handles(Method.AUTO_KEY)
    async def auto_key(self, payload: AutoKeyPayload) -> AutoKeyPayload:
        def _next(doc: StoreFileDoc) -> str:
            doc.auto_key_count += 1
            return str(doc.auto_key_count)

        # The counter is on disk before the key is handed out.
        payload.data = await self._in_thread(self._write, _next)
        return payload
