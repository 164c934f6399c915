from __future__ import annotations

import logging
import threading
from pathlib import Path, PurePosixPath
from typing import Dict, Protocol

logger = logging.getLogger(__name__)


class StorageNotFound(FileNotFoundError):
    """Raised when a path does not exist in storage."""


class Storage(Protocol):
    def get(self, path: str) -> bytes: ...

    def put(self, path: str, data: bytes) -> str: ...

    def exists(self, path: str) -> bool: ...

    def delete(self, path: str) -> None: ...

    def size(self, path: str) -> int: ...


def _normalize(path: str) -> str:
    normalized = PurePosixPath(path.replace("\\", "/"))
    if normalized.is_absolute() or ".." in normalized.parts:
        raise ValueError(f"Storage paths must be relative and stay inside the root: {path!r}")
    return str(normalized)


class LocalStorage:
    """Filesystem storage rooted at ``root``; paths are relative POSIX strings."""

    def __init__(self, root: Path) -> None:
        self.root = root
        root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        return self.root / _normalize(path)

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError as exc:
            raise StorageNotFound(path) from exc

    def put(self, path: str, data: bytes) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(target)
        logger.debug("Stored %s bytes at %s", len(data), target)
        return _normalize(path)

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def delete(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)

    def size(self, path: str) -> int:
        try:
            return self._resolve(path).stat().st_size
        except FileNotFoundError as exc:
            raise StorageNotFound(path) from exc


class MemoryStorage:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.files: Dict[str, bytes] = {}

    def get(self, path: str) -> bytes:
        with self._lock:
            try:
                return self.files[_normalize(path)]
            except KeyError as exc:
                raise StorageNotFound(path) from exc

    def put(self, path: str, data: bytes) -> str:
        key = _normalize(path)
        with self._lock:
            self.files[key] = bytes(data)
        return key

    def exists(self, path: str) -> bool:
        with self._lock:
            return _normalize(path) in self.files

    def delete(self, path: str) -> None:
        with self._lock:
            self.files.pop(_normalize(path), None)

    def size(self, path: str) -> int:
        return len(self.get(path))
