from __future__ import annotations

import asyncio
import datetime as dt
import sqlite3
from contextlib import closing
from pathlib import Path

import pytest

from pathkv.engine import Store, StoreState
from pathkv.errors import LifecycleError, MigrationError, NeedsMigrationError, StoreTypeError
from pathkv.protocol import InitPayload, Method
from pathkv.providers.sqlite import SQLiteProvider
from pathkv.providers.sqlite_schema import (
    CURRENT_SCHEMA_VERSION,
    collapse_legacy_rows,
    open_db,
    read_metadata,
    run_migrations,
)


def _legacy_db(path: Path, table: str, rows: list[tuple[str, str, str]], lastnum: int | None) -> None:
    with closing(sqlite3.connect(path)) as conn:
        conn.execute(f'CREATE TABLE "{table}" (key TEXT, path TEXT, value TEXT, PRIMARY KEY (key, path))')
        conn.executemany(f'INSERT INTO "{table}" (key, path, value) VALUES (?, ?, ?)', rows)
        if lastnum is not None:
            conn.execute('CREATE TABLE "internal::autonum" (josh TEXT PRIMARY KEY, lastnum INTEGER)')
            conn.execute('INSERT INTO "internal::autonum" (josh, lastnum) VALUES (?, ?)', (table, lastnum))
        conn.commit()


def _metadata(path: Path, table: str):
    with closing(sqlite3.connect(path)) as conn:
        conn.row_factory = sqlite3.Row
        return read_metadata(conn, table)


def _columns(path: Path, table: str) -> list[str]:
    with closing(sqlite3.connect(path)) as conn:
        return [row[1] for row in conn.execute(f'PRAGMA table_info("{table}")')]


def test_new_store_creates_current_layout(sandbox_data_dir):
    async def _run():
        async with Store("fresh", SQLiteProvider(data_dir=sandbox_data_dir)) as store:
            assert store.state is StoreState.READY
            assert store.schema_version == CURRENT_SCHEMA_VERSION
            assert store.native_methods() == set(Method) - {Method.UPDATE_BY_HOOK}

        db = sandbox_data_dir / "fresh.sqlite"
        assert _columns(db, "fresh") == ["key", "value"]
        record = _metadata(db, "fresh")
        assert record is not None
        assert (record.schema_version, record.auto_key_count) == (CURRENT_SCHEMA_VERSION, 0)

    asyncio.run(_run())


def test_values_survive_reopen_with_their_types(sandbox_data_dir):
    doc = {
        "when": dt.datetime(2024, 1, 2, 3, 4, 5),
        "tags": {"x", "y"},
        "blob": b"\x01\x02",
        "nested": {"list": [1, (2, 3)]},
    }

    async def _run():
        async with Store("typed", SQLiteProvider(data_dir=sandbox_data_dir)) as store:
            await store.set("k", "", doc)
            await store.set("k", "nested.list[0]", 10)

        async with Store("typed", SQLiteProvider(data_dir=sandbox_data_dir)) as store:
            got = await store.get("k")
            assert got["when"] == doc["when"]
            assert got["tags"] == {"x", "y"}
            assert got["blob"] == b"\x01\x02"
            assert got["nested"]["list"] == [10, (2, 3)]

    asyncio.run(_run())


def test_mapping_key_order_survives_storage(sandbox_data_dir):
    async def _run():
        async with Store("ordered", SQLiteProvider(persistent=False)) as store:
            await store.set("k", "", {"z": 1, "a": 2})
            assert list(await store.get("k")) == ["z", "a"]

        async with Store("ordered", SQLiteProvider(data_dir=sandbox_data_dir)) as store:
            await store.set("k", "", {"z": 1, "a": {"y": 1, "b": 2}})
        async with Store("ordered", SQLiteProvider(data_dir=sandbox_data_dir)) as store:
            got = await store.get("k")
            assert list(got) == ["z", "a"]
            assert list(got["a"]) == ["y", "b"]

    asyncio.run(_run())


def test_auto_key_is_increasing_and_durable(sandbox_data_dir):
    async def _run():
        async with Store("ids", SQLiteProvider(data_dir=sandbox_data_dir)) as store:
            keys = [await store.auto_key() for _ in range(5)]
            assert keys == ["1", "2", "3", "4", "5"]
            await store.clear()

        async with Store("ids", SQLiteProvider(data_dir=sandbox_data_dir)) as store:
            assert await store.auto_key() == "6"

    asyncio.run(_run())


def test_math_and_filter_scenarios_in_memory():
    async def _run():
        async with Store("scratch", SQLiteProvider(persistent=False)) as store:
            await store.set("n", "", 10)
            await store.math("n", "", "multiply", 2)
            assert await store.get("n") == 20
            await store.math("n", "", "divide", 4)
            assert await store.get("n") == 5

            await store.set("a", "", {"x": 1})
            await store.set("b", "", {"x": 2})
            assert await store.filter_by_data("x", 1) == {"a": {"x": 1}}
            assert await store.find_by_hook(lambda v, k: v == {"x": 2}) == ("b", {"x": 2})
            assert await store.map_by_path("x") == [1, 2]

    asyncio.run(_run())


def test_failed_read_modify_write_rolls_back():
    async def _run():
        async with Store("atomic", SQLiteProvider(persistent=False)) as store:
            await store.set("doc", "", {"name": "x", "items": [1, 2]})
            with pytest.raises(StoreTypeError):
                await store.math("doc", "name", "add", 1)
            with pytest.raises(StoreTypeError):
                await store.update_by_data("doc", "items", {"a": 1})
            assert await store.get("doc") == {"name": "x", "items": [1, 2]}

    asyncio.run(_run())


def test_keyed_and_bulk_methods(sandbox_data_dir):
    async def _run():
        async with Store("bulk", SQLiteProvider(data_dir=sandbox_data_dir, wal=False)) as store:
            await store.set_many({"a": {"n": 1}, "b": {"n": 2}})
            await store.set_many([("a", "n", 100), ("c", "", 3)], overwrite=False)
            assert await store.get_all() == {"a": {"n": 1}, "b": {"n": 2}, "c": 3}
            assert await store.get_many(["a", "missing"]) == {"a": {"n": 1}, "missing": None}

            assert await store.inc("a", "n") == 2
            await store.push("a", "tags", "t1")
            await store.push("a", "tags", "t2")
            await store.remove_by_hook("a", "tags", lambda v, k: v == "t1")
            assert await store.get("a", "tags") == ["t2"]
            assert await store.includes("a", "tags", "t2")
            assert await store.ensure("a", {}, "meta") == {}

            assert await store.update_by_hook("c", lambda v, k: v * 2) == 6

            await store.delete_many(["b", "c"])
            assert await store.keys() == ["a"]
            assert len(await store.random_key(3, duplicates=True)) == 3
            assert await store.random_key(3) == ["a"]

    asyncio.run(_run())


def test_table_name_option(sandbox_data_dir):
    async def _run():
        provider = SQLiteProvider(data_dir=sandbox_data_dir, table_name="custom")
        async with Store("logical", provider) as store:
            await store.set("k", "", 1)
        assert provider.location == str(sandbox_data_dir / "custom.sqlite")
        assert _columns(sandbox_data_dir / "custom.sqlite", "custom") == ["key", "value"]

    asyncio.run(_run())


def test_legacy_layout_migrates_keys_and_counter(sandbox_data_dir):
    db = sandbox_data_dir / "legacy.sqlite"
    _legacy_db(
        db,
        "legacy",
        [("1", "::NULL::", '"one"'), ("2", "::NULL::", "2"), ("3", "::NULL::", '{"x": [1, 2]}')],
        lastnum=10,
    )

    async def _run():
        store = Store("legacy", SQLiteProvider(data_dir=sandbox_data_dir))
        await store.init()
        assert store.state is StoreState.MIGRATION_NEEDED
        assert store.schema_version == 1
        with pytest.raises(NeedsMigrationError):
            await store.size()

        assert await store.migrate() == CURRENT_SCHEMA_VERSION
        assert store.schema_version == CURRENT_SCHEMA_VERSION
        assert await store.size() == 3
        assert await store.get("1") == "one"
        assert await store.get("3", "x[1]") == 2

        record = _metadata(db, "legacy")
        assert record is not None
        assert record.auto_key_count == 10

        assert await store.auto_key() == "11"
        await store.close()

    asyncio.run(_run())
    assert _columns(db, "legacy") == ["key", "value"]


def test_auto_migrate_on_init(sandbox_data_dir):
    _legacy_db(sandbox_data_dir / "old.sqlite", "old", [("k", "::NULL::", "[1]")], lastnum=None)

    async def _run():
        async with Store("old", SQLiteProvider(data_dir=sandbox_data_dir), auto_migrate=True) as store:
            assert store.state is StoreState.READY
            assert await store.get("k") == [1]
            assert await store.auto_key() == "1"

    asyncio.run(_run())


def test_failed_migration_rolls_back_everything(sandbox_data_dir):
    db = sandbox_data_dir / "broken.sqlite"
    _legacy_db(db, "broken", [("1", "::NULL::", "1"), ("2", "::NULL::", "{not json")], lastnum=4)

    async def _run():
        store = Store("broken", SQLiteProvider(data_dir=sandbox_data_dir))
        await store.init()
        with pytest.raises(MigrationError):
            await store.migrate()
        assert store.state is StoreState.MIGRATION_NEEDED
        await store.close()

    asyncio.run(_run())

    assert _columns(db, "broken") == ["key", "path", "value"]
    with closing(sqlite3.connect(db)) as conn:
        assert conn.execute('SELECT lastnum FROM "internal::autonum" WHERE josh = ?', ("broken",)).fetchone()[0] == 4
        assert conn.execute("SELECT COUNT(*) FROM sqlite_master WHERE name = 'internal_metadata'").fetchone()[0] == 0


def test_newer_schema_is_refused(sandbox_data_dir):
    async def _run():
        async with Store("future", SQLiteProvider(data_dir=sandbox_data_dir)):
            pass
        with closing(sqlite3.connect(sandbox_data_dir / "future.sqlite")) as conn:
            conn.execute("UPDATE internal_metadata SET schema_version = 99 WHERE name = 'future'")
            conn.commit()

        store = Store("future", SQLiteProvider(data_dir=sandbox_data_dir))
        with pytest.raises(MigrationError):
            await store.init()
        await store.close()

    asyncio.run(_run())


def test_failed_init_closes_the_connection_and_can_be_retried(sandbox_data_dir):
    async def _run():
        async with Store("later", SQLiteProvider(data_dir=sandbox_data_dir)) as store:
            await store.set("k", "", 1)
        db = sandbox_data_dir / "later.sqlite"
        with closing(sqlite3.connect(db)) as conn:
            conn.execute("UPDATE internal_metadata SET schema_version = 99 WHERE name = 'later'")
            conn.commit()

        provider = SQLiteProvider(data_dir=sandbox_data_dir)
        store = Store("later", provider)
        with pytest.raises(MigrationError):
            await store.init()
        assert store.state is StoreState.UNINITIALIZED
        assert store.schema_version is None
        with pytest.raises(LifecycleError):
            provider.docs

        with closing(sqlite3.connect(db)) as conn:
            conn.execute("UPDATE internal_metadata SET schema_version = 2 WHERE name = 'later'")
            conn.commit()
        await store.init()
        assert await store.get("k") == 1
        await store.close()

    asyncio.run(_run())


def test_provider_init_replaces_an_open_connection():
    async def _run():
        provider = SQLiteProvider(persistent=False)
        await provider.dispatch(InitPayload(name="twice"))
        first = provider.docs
        await provider.dispatch(InitPayload(name="twice"))
        assert provider.docs is not first
        with pytest.raises(sqlite3.ProgrammingError):
            first.conn.execute("SELECT 1")
        await provider.close()

    asyncio.run(_run())


def test_collapse_rebuilds_documents_from_path_rows():
    rows = [
        {"key": "a", "path": "profile.name", "value": '"Ann"'},
        {"key": "a", "path": "profile", "value": '{"age": 3}'},
        {"key": "a", "path": "tags[1]", "value": '"t"'},
        {"key": "b", "path": "::NULL::", "value": '{"whole": true}'},
        {"key": "b", "path": "ignored", "value": "1"},
    ]
    assert collapse_legacy_rows(rows) == {
        "a": {"profile": {"age": 3, "name": "Ann"}, "tags": [None, "t"]},
        "b": {"whole": True},
    }


def test_missing_migration_step_is_an_error():
    with closing(open_db(":memory:", wal=False)) as conn:
        with pytest.raises(MigrationError):
            run_migrations(conn, "t", 0, 2, migrations={})
