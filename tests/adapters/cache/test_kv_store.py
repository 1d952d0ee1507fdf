from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from txnsync.adapters.cache.kv_store import FileKeyValueStore, InMemoryKeyValueStore


def provoke_atomic_write_failure(store: FileKeyValueStore, key: str, payload: str) -> None:
    try:
        with store._atomic_writer(key) as tmp_file:  # noqa: SLF001 (intentional private use)
            tmp_file.write(payload)
            raise RuntimeError("boom")
    except RuntimeError:
        pass


def test_file_store_set_get_round_trip(tmp_path: Path) -> None:
    store = FileKeyValueStore(base_dir=str(tmp_path))

    async def _impl():
        await store.set("transaction_cache:abc", '{"a": 1}')
        return await store.get("transaction_cache:abc"), await store.get("missing")

    assert asyncio.run(_impl()) == ('{"a": 1}', None)


def test_file_store_lists_and_removes_keys(tmp_path: Path) -> None:
    store = FileKeyValueStore(base_dir=str(tmp_path))

    async def _impl():
        for key in ("b", "a", "c"):
            await store.set(key, key.upper())
        listed = await store.list_keys()
        await store.remove_many(["a", "c", "never-written"])
        await store.remove("missing")
        return listed, await store.list_keys()

    listed, remaining = asyncio.run(_impl())

    assert listed == ["a", "b", "c"]
    assert remaining == ["b"]


def test_file_store_skips_corrupt_records(tmp_path: Path) -> None:
    store = FileKeyValueStore(base_dir=str(tmp_path))

    async def _impl():
        await store.set("good", "value")
        await store.set("bad", "value")
        Path(store.path_for("bad")).write_text("{truncated", encoding="utf-8")
        return await store.get("bad"), await store.list_keys()

    value, keys = asyncio.run(_impl())

    assert value is None
    assert keys == ["good"]


def test_atomic_writer_cleans_temp_on_exception(tmp_path: Path) -> None:
    store = FileKeyValueStore(base_dir=str(tmp_path))

    provoke_atomic_write_failure(store, "key", "partial")

    assert list(tmp_path.iterdir()) == []


def test_file_store_rejects_blank_key(tmp_path: Path) -> None:
    store = FileKeyValueStore(base_dir=str(tmp_path))

    with pytest.raises(ValueError):
        store.path_for("  ")


def test_in_memory_store_operations() -> None:
    store = InMemoryKeyValueStore({"x": "1"})

    async def _impl():
        await store.set("y", "2")
        await store.remove_many(["x", "z"])
        return await store.list_keys(), await store.get("y")

    assert asyncio.run(_impl()) == (["y"], "2")
