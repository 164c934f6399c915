from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from ..models import ImageFormat, OptimizedVariant, SourceImage

logger = logging.getLogger(__name__)

VariantKey = Tuple[str, str, ImageFormat]


class SourceNotFound(KeyError):
    """Raised when no source image exists for an id."""


class PictureRepository(Protocol):
    def get_source(self, source_id: str) -> SourceImage: ...

    def find_by_checksum(self, checksum: str) -> Optional[SourceImage]: ...

    def add_source(self, source: SourceImage) -> None: ...

    def update_source(self, source: SourceImage) -> None: ...

    def list_sources(self) -> List[SourceImage]: ...

    def variants_for(self, source_id: str) -> List[OptimizedVariant]: ...

    def add_variant(self, variant: OptimizedVariant) -> bool: ...

    def delete_source(self, source_id: str) -> List[OptimizedVariant]: ...


class InMemoryPictureRepository:
    """Thread-safe store of source images and their variants.

    Variants are unique per ``(source_id, variant, format)`` and are removed
    together with their source.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sources: Dict[str, SourceImage] = {}
        self._variants: Dict[VariantKey, OptimizedVariant] = {}

    def get_source(self, source_id: str) -> SourceImage:
        with self._lock:
            try:
                return self._sources[source_id]
            except KeyError as exc:
                raise SourceNotFound(source_id) from exc

    def find_by_checksum(self, checksum: str) -> Optional[SourceImage]:
        with self._lock:
            for source in self._sources.values():
                if source.checksum == checksum:
                    return source
        return None

    def add_source(self, source: SourceImage) -> None:
        with self._lock:
            if source.id in self._sources:
                raise ValueError(f"Source image {source.id} already exists")
            self._sources[source.id] = source
            self._changed()

    def update_source(self, source: SourceImage) -> None:
        with self._lock:
            if source.id not in self._sources:
                raise SourceNotFound(source.id)
            self._sources[source.id] = source
            self._changed()

    def list_sources(self) -> List[SourceImage]:
        with self._lock:
            return list(self._sources.values())

    def variants_for(self, source_id: str) -> List[OptimizedVariant]:
        with self._lock:
            return [variant for key, variant in self._variants.items() if key[0] == source_id]

    def add_variant(self, variant: OptimizedVariant) -> bool:
        with self._lock:
            if variant.source_id not in self._sources:
                raise SourceNotFound(variant.source_id)
            if variant.key in self._variants:
                return False
            self._variants[variant.key] = variant
            self._changed()
            return True

    def delete_source(self, source_id: str) -> List[OptimizedVariant]:
        with self._lock:
            if self._sources.pop(source_id, None) is None:
                raise SourceNotFound(source_id)
            removed = [self._variants.pop(key) for key in list(self._variants) if key[0] == source_id]
            self._changed()
            return removed

    def _changed(self) -> None:
        """Hook for persistent subclasses; called with the lock held."""


def _variant_from_dict(raw: Dict[str, Any]) -> OptimizedVariant:
    encoded = raw.get("encoded_format")
    return OptimizedVariant(
        source_id=raw["source_id"],
        variant=raw["variant"],
        format=ImageFormat(raw["format"]),
        path=raw["path"],
        byte_size=raw["byte_size"],
        width=raw["width"],
        height=raw["height"],
        encoded_format=ImageFormat(encoded) if encoded else None,
        driver=raw.get("driver"),
    )


def _variant_to_dict(variant: OptimizedVariant) -> Dict[str, Any]:
    raw = asdict(variant)
    raw["format"] = variant.format.value
    raw["encoded_format"] = variant.encoded_format.value if variant.encoded_format else None
    return raw


class JsonPictureRepository(InMemoryPictureRepository):
    """Same semantics as the in-memory store, persisted to a JSON manifest."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        if path.exists():
            self._load()

    def _load(self) -> None:
        payload = json.loads(self.path.read_text(encoding="utf-8"))
        for raw in payload.get("sources", []):
            source = SourceImage(**raw)
            self._sources[source.id] = source
        for raw in payload.get("variants", []):
            variant = _variant_from_dict(raw)
            self._variants[variant.key] = variant
        logger.debug("Loaded %s sources from %s", len(self._sources), self.path)

    def _changed(self) -> None:
        payload = {
            "sources": [asdict(source) for source in self._sources.values()],
            "variants": [_variant_to_dict(variant) for variant in self._variants.values()],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self.path)
