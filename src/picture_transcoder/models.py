from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from .errors import TranscodingErrorKind, TranscodingFailure


class ImageFormat(str, Enum):
    AVIF = "avif"
    WEBP = "webp"
    JPEG = "jpeg"
    PNG = "png"
    GIF = "gif"
    BMP = "bmp"
    TIFF = "tiff"

    @property
    def extension(self) -> str:
        if self is ImageFormat.JPEG:
            return "jpg"
        return self.value

    @property
    def mime_type(self) -> str:
        return f"image/{self.value}"

    @property
    def supports_alpha(self) -> bool:
        return self not in (ImageFormat.JPEG, ImageFormat.BMP)

    @classmethod
    def parse(cls, value: "str | ImageFormat") -> "ImageFormat":
        if isinstance(value, ImageFormat):
            return value
        normalized = value.strip().lower().lstrip(".")
        normalized = _FORMAT_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValueError(f"Unknown image format: {value!r}") from exc


_FORMAT_ALIASES = {"jpg": "jpeg", "jpe": "jpeg", "tif": "tiff"}


class DriverId(str, Enum):
    IMAGICK = "imagick"
    PILLOW = "pillow"
    OPENCV = "opencv"

    @classmethod
    def parse(cls, value: "str | DriverId") -> "DriverId":
        if isinstance(value, DriverId):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown image driver: {value!r}") from exc


@dataclass(frozen=True, slots=True)
class Size:
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    @property
    def longest_side(self) -> int:
        return max(self.width, self.height)

    def fits_within(self, max_dimension: int) -> bool:
        return self.width <= max_dimension and self.height <= max_dimension

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True, slots=True)
class VariantSpec:
    """A named size bucket; ``max_dimension=None`` keeps the original size."""

    name: str
    max_dimension: Optional[int] = None

    @property
    def is_full(self) -> bool:
        return self.max_dimension is None


@dataclass(frozen=True, slots=True)
class SourceImage:
    """An original upload. Its bytes live in storage at ``path``."""

    id: str
    filename: str
    path: str
    checksum: str
    byte_size: int
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def dimensions_known(self) -> bool:
        return self.width is not None and self.height is not None

    @property
    def size(self) -> Optional[Size]:
        if self.width is None or self.height is None:
            return None
        return Size(self.width, self.height)


@dataclass(frozen=True, slots=True)
class OptimizedVariant:
    """One materialized output, unique per (source, variant, format)."""

    source_id: str
    variant: str
    format: ImageFormat
    path: str
    byte_size: int
    width: int
    height: int
    encoded_format: Optional[ImageFormat] = None
    driver: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, ImageFormat]:
        return (self.source_id, self.variant, self.format)


@dataclass(frozen=True, slots=True)
class AttemptRecord:
    driver: str
    format: ImageFormat
    kind: TranscodingErrorKind
    message: str

    def to_dict(self) -> dict:
        return {
            "driver": self.driver,
            "format": self.format.value,
            "kind": self.kind.value,
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class TranscodeResult:
    data: bytes
    driver: str
    requested_format: ImageFormat
    format: ImageFormat
    size: Size
    attempts: Tuple[AttemptRecord, ...] = ()

    @property
    def fallback_used(self) -> bool:
        return bool(self.attempts) or self.format is not self.requested_format


@dataclass(slots=True)
class MaterializeReport:
    source_id: str
    created: List[OptimizedVariant] = field(default_factory=list)
    skipped: List[Tuple[str, ImageFormat]] = field(default_factory=list)
    failures: List[Tuple[str, ImageFormat, TranscodingFailure]] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failures

    def failure_kinds(self) -> List[TranscodingErrorKind]:
        return [failure.kind for _, _, failure in self.failures]
