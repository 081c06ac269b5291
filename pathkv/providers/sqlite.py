from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, TypeVar

from .. import codec, mutations
from ..errors import LifecycleError
from ..keypath import ABSENT, Segment, assign, remove, resolve
from ..locks import GLOBAL_PATH_LOCKS
from ..paths import data_dir as default_data_dir
from ..paths import store_file
from ..protocol import (
    AutoKeyPayload,
    ClearPayload,
    DeleteManyPayload,
    DeletePayload,
    EntriesPayload,
    GetAllPayload,
    GetManyPayload,
    GetPayload,
    HasPayload,
    InitPayload,
    KeyedPayload,
    KeysPayload,
    Method,
    MigratePayload,
    Payload,
    Provider,
    RandomKeyPayload,
    RandomPayload,
    RemovePayload,
    SetEntry,
    SetManyPayload,
    SetPayload,
    SizePayload,
    ValuesPayload,
    call_hook,
    handles,
)
from .sqlite_schema import (
    CURRENT_SCHEMA_VERSION,
    METADATA_TABLE,
    detect_schema_version,
    ensure_current_layout,
    open_db,
    quote_ident,
    run_migrations,
    storage_errors,
    transaction,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SegmentPath = tuple[Segment, ...]


class SQLiteDocuments:
    """
    Synchronous access to one store's table.

    Every public method takes the connection lock; the ones that read and
    write run inside a single ``BEGIN IMMEDIATE`` transaction.
    """

    def __init__(self, conn: sqlite3.Connection, table: str, lock: threading.RLock):
        self.conn = conn
        self.table = table
        self._q = quote_ident(table)
        self._lock = lock

    def close(self) -> None:
        with self._lock, storage_errors("close"):
            self.conn.close()

    # -- rows -----------------------------------------------------------------

    def _load(self, key: str) -> Any:
        row = self.conn.execute(f"SELECT value FROM {self._q} WHERE key = ?", (key,)).fetchone()
        return ABSENT if row is None else codec.loads(row["value"])

    def _store(self, key: str, document: Any) -> None:
        self.conn.execute(
            f"INSERT INTO {self._q} (key, value) VALUES (?, ?) "
            "ON CONFLICT (key) DO UPDATE SET value = excluded.value",
            (key, codec.dumps(document)),
        )

    def _assign(self, key: str, path: SegmentPath, value: Any) -> None:
        current = self._load(key)
        self._store(key, assign(None if current is ABSENT else current, path, value))

    def _rows(self) -> list[tuple[str, Any]]:
        rows = self.conn.execute(f"SELECT key, value FROM {self._q} ORDER BY rowid").fetchall()
        return [(row["key"], codec.loads(row["value"])) for row in rows]

    # -- reads ----------------------------------------------------------------

    def get(self, key: str, path: SegmentPath) -> Any:
        with self._lock, storage_errors("get"):
            document = self._load(key)
        return ABSENT if document is ABSENT else resolve(document, path)

    def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        found: dict[str, Any] = {}
        with self._lock, storage_errors("get_many"):
            for key in keys:
                document = self._load(key)
                found[key] = None if document is ABSENT else document
        return found

    def entries(self) -> list[tuple[str, Any]]:
        with self._lock, storage_errors("entries"):
            return self._rows()

    def keys(self) -> list[str]:
        with self._lock, storage_errors("keys"):
            return [row["key"] for row in self.conn.execute(f"SELECT key FROM {self._q} ORDER BY rowid")]

    def size(self) -> int:
        with self._lock, storage_errors("size"):
            return int(self.conn.execute(f"SELECT COUNT(*) FROM {self._q}").fetchone()[0])

    def random_rows(self, count: int, duplicates: bool) -> list[tuple[str, Any]]:
        if count < 1:
            return []
        with self._lock, storage_errors("random"):
            if duplicates:
                return mutations.sample(self._rows(), count, True)
            rows = self.conn.execute(
                f"SELECT key, value FROM {self._q} ORDER BY RANDOM() LIMIT ?",
                (count,),
            ).fetchall()
            return [(row["key"], codec.loads(row["value"])) for row in rows]

    # -- writes ---------------------------------------------------------------

    def set(self, key: str, path: SegmentPath, value: Any) -> None:
        with self._lock, storage_errors("set"), transaction(self.conn):
            self._assign(key, path, value)

    def set_many(self, entries: Iterable[SetEntry], overwrite: bool) -> None:
        with self._lock, storage_errors("set_many"), transaction(self.conn):
            for entry in entries:
                if not overwrite:
                    current = self._load(entry.key)
                    if current is not ABSENT and resolve(current, entry.path) is not ABSENT:
                        continue
                self._assign(entry.key, entry.path, entry.value)

    def delete(self, key: str, path: SegmentPath) -> None:
        with self._lock, storage_errors("delete"), transaction(self.conn):
            if not path:
                self.conn.execute(f"DELETE FROM {self._q} WHERE key = ?", (key,))
                return
            document = self._load(key)
            if document is not ABSENT:
                self._store(key, remove(document, path))

    def delete_many(self, keys: Iterable[str]) -> None:
        with self._lock, storage_errors("delete_many"), transaction(self.conn):
            self.conn.executemany(f"DELETE FROM {self._q} WHERE key = ?", [(key,) for key in keys])

    def clear(self) -> None:
        # The metadata row and its counter survive.
        with self._lock, storage_errors("clear"), transaction(self.conn):
            self.conn.execute(f"DELETE FROM {self._q}")

    def modify(self, key: str, path: SegmentPath, fn: Callable[[Any], tuple[Any, Any]]) -> Any:
        """
        Read the value at path, let ``fn`` compute ``(new_value, data)`` and
        write ``new_value`` back unless it is ``ABSENT``; one transaction.
        """
        with self._lock, storage_errors("update"), transaction(self.conn):
            document = self._load(key)
            current = ABSENT if document is ABSENT else resolve(document, path)
            new_value, data = fn(current)
            if new_value is not ABSENT:
                self._store(key, assign(None if document is ABSENT else document, path, new_value))
            return data

    def auto_key(self) -> str:
        with self._lock, storage_errors("auto_key"), transaction(self.conn):
            self.conn.execute(
                f"UPDATE {METADATA_TABLE} SET auto_key_count = auto_key_count + 1 WHERE name = ?",
                (self.table,),
            )
            row = self.conn.execute(
                f"SELECT auto_key_count FROM {METADATA_TABLE} WHERE name = ?",
                (self.table,),
            ).fetchone()
        return str(row["auto_key_count"])

    def migrate(self) -> int:
        with self._lock:
            with storage_errors("version check"):
                start = detect_schema_version(self.conn, self.table)
            if start is None or start >= CURRENT_SCHEMA_VERSION:
                return start or CURRENT_SCHEMA_VERSION
            return run_migrations(self.conn, self.table, start)


class SQLiteProvider(Provider):
    """
    Reference backend: one SQLite table per store plus a shared
    ``internal_metadata`` table holding schema version and auto-key counter.

    Options:
      - data_dir: where ``<table>.sqlite`` lives (defaults to ``paths.data_dir()``)
      - persistent: False keeps everything in ``:memory:``
      - wal: journal mode for file databases
      - table_name: defaults to the store name
    """

    schema_version = CURRENT_SCHEMA_VERSION

    def __init__(
        self,
        *,
        data_dir: Path | None = None,
        persistent: bool = True,
        wal: bool = True,
        table_name: str | None = None,
    ):
        self._data_dir = data_dir
        self._persistent = persistent
        self._wal = wal
        self._table_name = table_name
        self._docs: SQLiteDocuments | None = None
        self._location: str | None = None

    @property
    def docs(self) -> SQLiteDocuments:
        if self._docs is None:
            raise LifecycleError("SQLiteProvider used before init() or after close()")
        return self._docs

    @property
    def location(self) -> str | None:
        return self._location

    async def _in_thread(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(fn, *args)

    # -- lifecycle ------------------------------------------------------------

    @handles(Method.INIT)
    async def init(self, payload: InitPayload) -> InitPayload:
        table = self._table_name or payload.name
        await self.close()

        def _open() -> tuple[SQLiteDocuments, int]:
            if self._persistent:
                path = store_file(self._data_dir or default_data_dir(), table, ".sqlite")
                location, lock = str(path), GLOBAL_PATH_LOCKS.lock_for(path)
            else:
                location, lock = ":memory:", threading.RLock()
            self._location = location
            with lock:
                conn = open_db(location, wal=self._wal and self._persistent)
                try:
                    with storage_errors("init"):
                        version = detect_schema_version(conn, table)
                        if version is None:
                            version = ensure_current_layout(conn, table).schema_version
                except BaseException:
                    conn.close()
                    raise
            return SQLiteDocuments(conn, table, lock), version

        self._docs, version = await self._in_thread(_open)
        logger.info("Opened %s table %r at schema v%s", self._location, table, version)
        payload.data = version
        return payload

    @handles(Method.MIGRATE)
    async def migrate(self, payload: MigratePayload) -> MigratePayload:
        payload.data = await self._in_thread(self.docs.migrate)
        return payload

    async def close(self) -> None:
        if self._docs is None:
            return
        docs, self._docs = self._docs, None
        await self._in_thread(docs.close)

    # -- primitives -----------------------------------------------------------

    @handles(Method.GET)
    async def get(self, payload: GetPayload) -> GetPayload:
        found = await self._in_thread(self.docs.get, payload.key, payload.path)
        if found is not ABSENT:
            payload.data = found
        return payload

    @handles(Method.HAS)
    async def has(self, payload: HasPayload) -> HasPayload:
        payload.data = await self._in_thread(self.docs.get, payload.key, payload.path) is not ABSENT
        return payload

    @handles(Method.GET_MANY)
    async def get_many(self, payload: GetManyPayload) -> GetManyPayload:
        payload.data = await self._in_thread(self.docs.get_many, payload.keys)
        return payload

    @handles(Method.GET_ALL)
    async def get_all(self, payload: GetAllPayload) -> GetAllPayload:
        payload.data = dict(await self._in_thread(self.docs.entries))
        return payload

    @handles(Method.SET)
    async def set(self, payload: SetPayload) -> SetPayload:
        await self._in_thread(self.docs.set, payload.key, payload.path, payload.value)
        return payload

    @handles(Method.SET_MANY)
    async def set_many(self, payload: SetManyPayload) -> SetManyPayload:
        await self._in_thread(self.docs.set_many, payload.entries, payload.overwrite)
        return payload

    @handles(Method.DELETE)
    async def delete(self, payload: DeletePayload) -> DeletePayload:
        await self._in_thread(self.docs.delete, payload.key, payload.path)
        return payload

    @handles(Method.DELETE_MANY)
    async def delete_many(self, payload: DeleteManyPayload) -> DeleteManyPayload:
        await self._in_thread(self.docs.delete_many, payload.keys)
        return payload

    @handles(Method.CLEAR)
    async def clear(self, payload: ClearPayload) -> ClearPayload:
        await self._in_thread(self.docs.clear)
        return payload

    @handles(Method.KEYS)
    async def keys(self, payload: KeysPayload) -> KeysPayload:
        payload.data = await self._in_thread(self.docs.keys)
        return payload

    @handles(Method.VALUES)
    async def values(self, payload: ValuesPayload) -> ValuesPayload:
        payload.data = [value for _, value in await self._in_thread(self.docs.entries)]
        return payload

    @handles(Method.ENTRIES)
    async def entries(self, payload: EntriesPayload) -> EntriesPayload:
        payload.data = await self._in_thread(self.docs.entries)
        return payload

    @handles(Method.SIZE)
    async def size(self, payload: SizePayload) -> SizePayload:
        payload.data = await self._in_thread(self.docs.size)
        return payload

    @handles(Method.RANDOM)
    async def random(self, payload: RandomPayload) -> RandomPayload:
        rows = await self._in_thread(self.docs.random_rows, payload.count, payload.duplicates)
        payload.data = [value for _, value in rows]
        return payload

    @handles(Method.RANDOM_KEY)
    async def random_key(self, payload: RandomKeyPayload) -> RandomKeyPayload:
        rows = await self._in_thread(self.docs.random_rows, payload.count, payload.duplicates)
        payload.data = [key for key, _ in rows]
        return payload

    @handles(Method.AUTO_KEY)
    async def auto_key(self, payload: AutoKeyPayload) -> AutoKeyPayload:
        payload.data = await self._in_thread(self.docs.auto_key)
        return payload

    # -- read-modify-write ----------------------------------------------------

    @handles(
        Method.INC,
        Method.DEC,
        Method.MATH,
        Method.PUSH,
        Method.REMOVE,
        Method.INCLUDES,
        Method.UPDATE_BY_DATA,
        Method.ENSURE,
    )
    async def keyed(self, payload: KeyedPayload) -> KeyedPayload:
        if isinstance(payload, RemovePayload) and payload.hook is not None:
            payload.data = await self._remove_by_hook(payload)
            return payload
        payload.data = await self._in_thread(
            self.docs.modify,
            payload.key,
            payload.path,
            lambda current: mutations.apply_keyed(payload, current),
        )
        return payload

    async def _remove_by_hook(self, payload: RemovePayload) -> None:
        # Hooks may be coroutines, so they run here between the read and the
        # write; the Store's queue keeps both steps ordered in-process.
        current = await self._in_thread(self.docs.get, payload.key, payload.path)
        if current is ABSENT:
            return None
        items = mutations.as_sequence(current, key=payload.key, path=payload.path, method="remove")
        flags = [await call_hook(payload.hook, item, payload.key) for item in items]
        kept = mutations.remove_flagged(items, flags, key=payload.key, path=payload.path)
        await self._in_thread(self.docs.set, payload.key, payload.path, kept)
        return None

    # -- scans ----------------------------------------------------------------

    @handles(*sorted(mutations.SCAN_METHODS, key=lambda m: m.value))
    async def scan(self, payload: Payload) -> Payload:
        payload.data = await mutations.run_scan(payload, await self._in_thread(self.docs.entries))
        return payload
