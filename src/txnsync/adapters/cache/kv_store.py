from __future__ import annotations

import asyncio
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
import hashlib
import json
import os
from pathlib import Path
import tempfile
from typing import Protocol, TextIO

from loguru import logger

from txnsync.core.errors import CacheError

__all__ = ["FileKeyValueStore", "InMemoryKeyValueStore", "KeyValueStore"]


class KeyValueStore(Protocol):
    """Persistent string key-value store consumed by the cache."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...

    async def remove_many(self, keys: Iterable[str]) -> None: ...

    async def list_keys(self) -> list[str]: ...


class InMemoryKeyValueStore:
    """Dict-backed store for tests and ephemeral runs."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def remove(self, key: str) -> None:
        self.data.pop(key, None)

    async def remove_many(self, keys: Iterable[str]) -> None:
        for key in keys:
            self.data.pop(key, None)

    async def list_keys(self) -> list[str]:
        return sorted(self.data)


class FileKeyValueStore:
    """
    JSON-file store with atomic writes and deterministic paths.

    - Each key maps to one file named by the SHA-256 of the key.
    - The file holds {"key": ..., "value": ...} so keys can be listed back.
    - Writes are atomic via write-to-temp + os.replace().
    """

    def __init__(self, base_dir: str = ".cache/txnsync") -> None:
        self.base_dir = Path(base_dir).expanduser().resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    # -------- Public API --------

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._get_sync, key)

    async def set(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._set_sync, key, value)
        except OSError as e:
            raise CacheError(f"Failed to write {key}: {e}") from e

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove_sync, key)

    async def remove_many(self, keys: Iterable[str]) -> None:
        try:
            await asyncio.to_thread(self._remove_many_sync, list(keys))
        except OSError as e:
            raise CacheError(f"Failed to remove keys: {e}") from e

    async def list_keys(self) -> list[str]:
        return await asyncio.to_thread(self._list_keys_sync)

    def path_for(self, key: str) -> str:
        return str(self._key_path(key))

    # -------- Internal helpers --------

    def _get_sync(self, key: str) -> str | None:
        path = self._key_path(key)
        if not path.exists():
            return None
        record = self._read_record(path)
        if record is None:
            return None
        return record[1]

    def _set_sync(self, key: str, value: str) -> None:
        serialized = json.dumps({"key": key, "value": value}, ensure_ascii=True)
        with self._atomic_writer(key) as tmp_file:
            tmp_file.write(serialized)

    def _remove_sync(self, key: str) -> None:
        path = self._key_path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return

    def _remove_many_sync(self, keys: list[str]) -> None:
        for key in keys:
            self._remove_sync(key)

    def _list_keys_sync(self) -> list[str]:
        keys: list[str] = []
        for entry in self.base_dir.iterdir():
            if not (entry.is_file() and entry.suffix == ".json"):
                continue
            record = self._read_record(entry)
            if record is not None:
                keys.append(record[0])
        keys.sort()
        return keys

    def _read_record(self, path: Path) -> tuple[str, str] | None:
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError:
            logger.debug("FileKeyValueStore JSON decode failed at {}", path)
            return None
        except OSError as exc:
            logger.debug("FileKeyValueStore read failed at {}: {}", path, exc)
            return None
        if (
            not isinstance(data, dict)
            or not isinstance(data.get("key"), str)
            or not isinstance(data.get("value"), str)
        ):
            logger.debug("FileKeyValueStore record malformed at {}", path)
            return None
        return data["key"], data["value"]

    def _key_path(self, key: str) -> Path:
        if not isinstance(key, str) or not key.strip():
            raise ValueError("key must be a non-empty string")
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.base_dir / f"{digest}.json"

    @contextmanager
    def _atomic_writer(self, key: str) -> Iterator[TextIO]:
        final_path = self._key_path(key)
        tmp_file = tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            delete=False,
            dir=str(self.base_dir),
            prefix=".tmp",
        )
        try:
            try:
                yield tmp_file
            finally:
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
                tmp_file.close()

            os.replace(tmp_file.name, final_path)
        except Exception:
            if os.path.exists(tmp_file.name):
                os.unlink(tmp_file.name)
            raise
