from __future__ import annotations

import base64
import hashlib
import json
import logging
import math
import time
import zlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..config import CacheSettings
from ..models import ImageFormat, Size, TranscodeResult

logger = logging.getLogger(__name__)


def format_bytes(size: float) -> str:
    units = ["B", "KB", "MB", "GB"]
    size = max(size, 0)
    power = min(int(math.log(size, 1024)) if size >= 1 else 0, len(units) - 1)
    return f"{round(size / 1024**power, 2):g} {units[power]}"


class OptimizationCache:
    """Checksum-keyed cache of encoded variants.

    Identical uploads (same checksum) reuse earlier outputs instead of being
    re-encoded. Entries are JSON documents, optionally zlib compressed, stored
    one file per ``(checksum, variant, format)`` and expired after ``ttl``.
    """

    def __init__(self, settings: CacheSettings, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock
        if settings.enabled and settings.directory is None:
            raise ValueError("Cache directory must be set when the image cache is enabled")
        if self.enabled:
            settings.directory.mkdir(parents=True, exist_ok=True)

    @property
    def enabled(self) -> bool:
        return self.settings.enabled and self.settings.directory is not None

    def checksum(self, data: bytes) -> str:
        return hashlib.new(self.settings.hash_algo, data, usedforsecurity=False).hexdigest()

    def _entry_path(self, checksum: str, variant: str, fmt: ImageFormat) -> Path:
        return self.settings.directory / f"{self.settings.key_prefix}_{checksum}_{variant}_{fmt.value}.bin"

    def get(self, checksum: str, variant: str, fmt: ImageFormat) -> Optional[TranscodeResult]:
        if not self.enabled:
            return None
        path = self._entry_path(checksum, variant, fmt)
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None
        if stat.st_mtime + self.settings.ttl < self._clock():
            logger.debug("Cache entry %s expired", path.name)
            path.unlink(missing_ok=True)
            return None

        raw = path.read_bytes()
        try:
            if self.settings.compress:
                raw = zlib.decompress(raw)
            payload = json.loads(raw.decode("utf-8"))
            result = TranscodeResult(
                data=base64.b64decode(payload["data"]),
                driver=payload["driver"],
                requested_format=ImageFormat(payload["requested_format"]),
                format=ImageFormat(payload["format"]),
                size=Size(payload["width"], payload["height"]),
            )
        except (zlib.error, ValueError, KeyError) as exc:
            logger.warning("Discarding unreadable cache entry %s: %s", path.name, exc)
            path.unlink(missing_ok=True)
            return None
        logger.info("Cache hit for image optimization checksum=%s variant=%s format=%s", checksum, variant, fmt.value)
        return result

    def put(self, checksum: str, variant: str, fmt: ImageFormat, result: TranscodeResult) -> None:
        if not self.enabled:
            return
        payload: Dict[str, Any] = {
            "driver": result.driver,
            "requested_format": result.requested_format.value,
            "format": result.format.value,
            "width": result.size.width,
            "height": result.size.height,
            "cached_at": datetime.now(timezone.utc).isoformat(),
            "data": base64.b64encode(result.data).decode("ascii"),
        }
        raw = json.dumps(payload).encode("utf-8")
        if self.settings.compress:
            raw = zlib.compress(raw)
        path = self._entry_path(checksum, variant, fmt)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(raw)
        tmp.replace(path)
        logger.info(
            "Stored image optimization in cache checksum=%s size_bytes=%s compressed=%s",
            checksum,
            len(raw),
            self.settings.compress,
        )

    def stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "enabled": self.enabled,
            "total_keys": 0,
            "total_bytes": 0,
            "ttl": self.settings.ttl,
            "compression_enabled": self.settings.compress,
            "hash_algorithm": self.settings.hash_algo,
        }
        if not self.enabled:
            return stats
        for entry in self.settings.directory.glob(f"{self.settings.key_prefix}_*.bin"):
            stats["total_keys"] += 1
            stats["total_bytes"] += entry.stat().st_size
        stats["total_human"] = format_bytes(stats["total_bytes"])
        return stats

    def clear(self) -> int:
        if not self.enabled:
            return 0
        removed = 0
        for entry in self.settings.directory.glob(f"{self.settings.key_prefix}_*.bin"):
            entry.unlink(missing_ok=True)
            removed += 1
        logger.info("Cleared %s image cache entries", removed)
        return removed
