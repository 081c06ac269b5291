from __future__ import annotations

import asyncio
import datetime as dt
import json

import pytest

from pathkv.engine import Store, StoreState
from pathkv.errors import MissingDataError, StorageError
from pathkv.protocol import Method
from pathkv.providers.json_file import JsonFileProvider


def test_json_file_round_trip_and_layout(sandbox_data_dir):
    async def _run():
        async with Store("notes", JsonFileProvider(data_dir=sandbox_data_dir)) as store:
            await store.set("n1", "", {"title": "hi", "at": dt.date(2024, 2, 3)})
            await store.set("n1", "tags[0]", "x")
            assert await store.auto_key() == "1"

        async with Store("notes", JsonFileProvider(data_dir=sandbox_data_dir)) as store:
            assert await store.get("n1") == {"title": "hi", "at": dt.date(2024, 2, 3), "tags": ["x"]}
            assert await store.auto_key() == "2"

    asyncio.run(_run())

    doc = json.loads((sandbox_data_dir / "notes.json").read_text(encoding="utf-8"))
    assert doc["name"] == "notes"
    assert doc["schema_version"] == 2
    assert doc["auto_key_count"] == 2
    assert doc["entries"]["n1"]["type_tag"] == "object"


def test_json_file_keeps_key_order(sandbox_data_dir):
    async def _run():
        async with Store("order", JsonFileProvider(data_dir=sandbox_data_dir)) as store:
            await store.set("second", "", {"z": 1, "a": 2})
            await store.set("first", "", 0)

        async with Store("order", JsonFileProvider(data_dir=sandbox_data_dir)) as store:
            assert list(await store.get("second")) == ["z", "a"]
            assert await store.keys() == ["second", "first"]

    asyncio.run(_run())


def test_json_file_uses_default_data_dir(sandbox_data_dir):
    async def _run():
        async with Store("defaults", JsonFileProvider()) as store:
            await store.set("k", "", 1)

    asyncio.run(_run())
    assert (sandbox_data_dir / "defaults.json").exists()


def test_json_file_native_and_synthesized_methods(sandbox_data_dir):
    async def _run():
        async with Store("mixed", JsonFileProvider(data_dir=sandbox_data_dir)) as store:
            assert {Method.GET, Method.SET_MANY, Method.SIZE} <= store.native_methods()
            assert Method.INC not in store.native_methods()

            await store.set_many({"a": {"n": 1}, "b": {"n": 2}})
            assert await store.inc("a", "n") == 2
            assert await store.filter_by_data("n", 2) == {"a": {"n": 2}, "b": {"n": 2}}
            assert await store.get_many(["a", "zzz"]) == {"a": {"n": 2}, "zzz": None}
            assert await store.has("b", "n")
            await store.delete("b", "n")
            assert await store.get("b") == {}
            await store.delete_many(["a"])
            assert await store.keys() == ["b"]
            await store.clear()
            assert await store.size() == 0
            with pytest.raises(MissingDataError):
                await store.math("a", "n", "add", 1)

    asyncio.run(_run())


def test_legacy_flat_file_migrates(sandbox_data_dir):
    legacy = {"a": 1, "b": {"x": [1, 2]}, "::autonum": 5}
    (sandbox_data_dir / "old.json").write_text(json.dumps(legacy), encoding="utf-8")

    async def _run():
        store = Store("old", JsonFileProvider(data_dir=sandbox_data_dir))
        await store.init()
        assert store.state is StoreState.MIGRATION_NEEDED
        await store.migrate()
        assert await store.get_all() == {"a": 1, "b": {"x": [1, 2]}}
        assert await store.auto_key() == "6"
        await store.close()

    asyncio.run(_run())


def test_non_document_file_is_a_storage_error(sandbox_data_dir):
    (sandbox_data_dir / "weird.json").write_text("[1, 2, 3]", encoding="utf-8")

    async def _run():
        store = Store("weird", JsonFileProvider(data_dir=sandbox_data_dir))
        with pytest.raises(StorageError):
            await store.init()

    asyncio.run(_run())
