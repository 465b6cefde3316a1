"""Memory and disk tiers for card artwork."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import OrderedDict
from pathlib import Path

from ..utils import sanitize_cache_key

logger = logging.getLogger(__name__)


class MemoryImageCache:
    """Thread-safe LRU bounded by both entry count and total bytes."""

    def __init__(self, max_items: int = 100, max_bytes: int = 50 * 1024 * 1024):
        self._max_items = max_items
        self._max_bytes = max_bytes
        self._entries: OrderedDict[str, bytes] = OrderedDict()
        self._total_bytes = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    @property
    def total_bytes(self) -> int:
        with self._lock:
            return self._total_bytes

    def get(self, key: str) -> bytes | None:
        with self._lock:
            data = self._entries.get(key)
            if data is not None:
                self._entries.move_to_end(key)
            return data

    def put(self, key: str, data: bytes) -> None:
        size = len(data)
        if not data or size > self._max_bytes:
            return
        with self._lock:
            previous = self._entries.pop(key, None)
            if previous is not None:
                self._total_bytes -= len(previous)
            self._entries[key] = data
            self._total_bytes += size
            while self._entries and (
                len(self._entries) > self._max_items or self._total_bytes > self._max_bytes
            ):
                _, evicted = self._entries.popitem(last=False)
                self._total_bytes -= len(evicted)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._entries.pop(key, None)
            if data is not None:
                self._total_bytes -= len(data)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._total_bytes = 0


class DiskImageCache:
    """Directory of PNG files named by sanitized lookup key."""

    suffix = ".png"

    def __init__(self, directory: Path | str):
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, key: str) -> Path:
        return self._directory / f"{sanitize_cache_key(key)}{self.suffix}"

    async def read(self, key: str) -> bytes | None:
        return await self.read_path(self.path_for(key))

    async def read_path(self, path: Path | str) -> bytes | None:
        path = Path(path)
        try:
            return await asyncio.to_thread(self._read_file, path)
        except OSError as exc:
            logger.warning("Failed to read cached image %s: %s", path, exc)
            return None

    async def write(self, key: str, data: bytes) -> Path | None:
        path = self.path_for(key)
        try:
            await asyncio.to_thread(self._write_file, path, data)
        except OSError as exc:
            logger.warning("Failed to write cached image %s: %s", path, exc)
            return None
        return path

    async def remove(self, key: str) -> None:
        path = self.path_for(key)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove cached image %s: %s", path, exc)

    async def clear(self) -> int:
        return await asyncio.to_thread(self._clear_directory)

    @staticmethod
    def _read_file(path: Path) -> bytes | None:
        if not path.is_file():
            return None
        data = path.read_bytes()
        return data or None

    def _write_file(self, path: Path, data: bytes) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        temporary = path.with_name(f"{path.name}.tmp")
        temporary.write_bytes(data)
        temporary.replace(path)

    def _clear_directory(self) -> int:
        if not self._directory.is_dir():
            return 0
        removed = 0
        for path in self._directory.glob(f"*{self.suffix}"):
            try:
                path.unlink()
                removed += 1
            except OSError as exc:
                logger.warning("Failed to remove cached image %s: %s", path, exc)
        return removed
