"""Process-wide transcoder configuration.

Built once at start-up (usually through :func:`load_config`) and passed into
every component constructor. Validation happens on construction so that a bad
fallback map or an unknown driver is reported before any image is touched.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

from .errors import ConfigurationError
from .models import DriverId, ImageFormat, VariantSpec

logger = logging.getLogger(__name__)

_ALL_FORMATS: Tuple[ImageFormat, ...] = tuple(ImageFormat)


@dataclass(frozen=True, slots=True)
class DriverLimits:
    max_width: Optional[int] = None
    max_height: Optional[int] = None
    max_area: Optional[int] = None

    def tightened(self, other: "DriverLimits") -> "DriverLimits":
        return DriverLimits(
            max_width=_tighter(self.max_width, other.max_width),
            max_height=_tighter(self.max_height, other.max_height),
            max_area=_tighter(self.max_area, other.max_area),
        )

    def as_dict(self) -> Dict[str, Optional[int]]:
        return {"max_width": self.max_width, "max_height": self.max_height, "max_area": self.max_area}


def _tighter(first: Optional[int], second: Optional[int]) -> Optional[int]:
    if first is None:
        return second
    if second is None:
        return first
    return min(first, second)


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    max_width: Optional[int] = 16000
    max_height: Optional[int] = 16000
    max_area: Optional[int] = 128_000_000
    max_memory: Optional[int] = None
    max_source_bytes: Optional[int] = None
    per_driver: Mapping[DriverId, DriverLimits] = field(default_factory=dict)
    prefer_live_limits: bool = True

    def __post_init__(self) -> None:
        if self.max_width is None and self.max_height is None and self.max_area is None:
            raise ConfigurationError("At least one backend-agnostic ceiling (width, height or area) is required")
        for name in ("max_width", "max_height", "max_area", "max_memory", "max_source_bytes"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")

    def for_driver(self, driver: DriverId) -> DriverLimits:
        base = DriverLimits(self.max_width, self.max_height, self.max_area)
        override = self.per_driver.get(driver)
        if override is None:
            return base
        return base.tightened(override)


@dataclass(frozen=True, slots=True)
class FallbackSettings:
    enabled: bool = True
    max_attempts: int = 6
    log_attempts: bool = True
    notify_on_fallback: bool = True


@dataclass(frozen=True, slots=True)
class CacheSettings:
    enabled: bool = False
    directory: Optional[Path] = None
    ttl: int = 7 * 24 * 3600
    hash_algo: str = "md5"
    compress: bool = True
    key_prefix: str = "image_cache"


DEFAULT_VARIANTS: Tuple[VariantSpec, ...] = (
    VariantSpec("thumbnail", 256),
    VariantSpec("small", 512),
    VariantSpec("medium", 1024),
    VariantSpec("large", 2048),
    VariantSpec("full", None),
)

DEFAULT_FORMAT_SUPPORT: Mapping[DriverId, Tuple[ImageFormat, ...]] = {
    DriverId.IMAGICK: _ALL_FORMATS,
    DriverId.PILLOW: _ALL_FORMATS,
    DriverId.OPENCV: (ImageFormat.WEBP, ImageFormat.JPEG, ImageFormat.PNG, ImageFormat.BMP, ImageFormat.TIFF),
}

DEFAULT_FORMAT_FALLBACKS: Mapping[ImageFormat, ImageFormat] = {
    ImageFormat.AVIF: ImageFormat.WEBP,
    ImageFormat.WEBP: ImageFormat.JPEG,
    ImageFormat.PNG: ImageFormat.JPEG,
}

DEFAULT_QUALITY: Mapping[ImageFormat, Optional[int]] = {
    ImageFormat.JPEG: 85,
    ImageFormat.WEBP: 80,
    ImageFormat.AVIF: 75,
    ImageFormat.PNG: None,
}


@dataclass(frozen=True, slots=True)
class TranscoderConfig:
    drivers: Tuple[DriverId, ...] = (DriverId.PILLOW, DriverId.OPENCV, DriverId.IMAGICK)
    format_support: Mapping[DriverId, Tuple[ImageFormat, ...]] = field(
        default_factory=lambda: dict(DEFAULT_FORMAT_SUPPORT)
    )
    format_fallbacks: Mapping[ImageFormat, ImageFormat] = field(
        default_factory=lambda: dict(DEFAULT_FORMAT_FALLBACKS)
    )
    quality: Mapping[ImageFormat, Optional[int]] = field(default_factory=lambda: dict(DEFAULT_QUALITY))
    variants: Tuple[VariantSpec, ...] = DEFAULT_VARIANTS
    formats: Tuple[ImageFormat, ...] = (ImageFormat.AVIF, ImageFormat.WEBP)
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    fallback: FallbackSettings = field(default_factory=FallbackSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    auto_orient: bool = True
    blending_color: str = "ffffff"
    slow_processing_threshold: float = 30.0
    square_tolerance: float = 0.05
    imagemagick_binary: Optional[str] = None
    subprocess_timeout: Optional[float] = None
    webhook_url: Optional[str] = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not self.drivers:
            raise ConfigurationError("At least one image driver must be configured")
        if len(set(self.drivers)) != len(self.drivers):
            raise ConfigurationError(f"Duplicate entries in driver priority list: {self.drivers}")
        for driver in self.format_support:
            if not isinstance(driver, DriverId):
                raise ConfigurationError(f"Unknown driver in format support matrix: {driver!r}")
        if not self.formats:
            raise ConfigurationError("At least one output format must be configured")
        names = [variant.name for variant in self.variants]
        if not names:
            raise ConfigurationError("At least one variant must be configured")
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate variant names: {names}")
        for variant in self.variants:
            if variant.max_dimension is not None and variant.max_dimension <= 0:
                raise ConfigurationError(f"Variant {variant.name} has a non-positive bound")
        if not re.fullmatch(r"[0-9a-fA-F]{6}", self.blending_color):
            raise ConfigurationError(f"blending_color must be a 6-digit hex colour, got {self.blending_color!r}")
        if self.fallback.max_attempts < 1:
            raise ConfigurationError("fallback.max_attempts must be at least 1")
        check_fallback_chain(self.format_fallbacks)

    def supported_formats(self, driver: DriverId) -> Tuple[ImageFormat, ...]:
        return tuple(self.format_support.get(driver, ()))

    def variant(self, name: str) -> VariantSpec:
        for variant in self.variants:
            if variant.name == name:
                return variant
        raise KeyError(name)


def check_fallback_chain(fallbacks: Mapping[ImageFormat, ImageFormat]) -> None:
    """Reject fallback maps where following the chain can revisit a format."""
    for start in fallbacks:
        seen = [start]
        current = fallbacks.get(start)
        while current is not None:
            if current in seen:
                chain = " -> ".join(fmt.value for fmt in seen + [current])
                raise ConfigurationError(f"Format fallback map contains a cycle: {chain}")
            seen.append(current)
            current = fallbacks.get(current)


_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)(I?B?)\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}


def parse_byte_size(value: str) -> int:
    """Parse ``256MB``, ``128M`` or ``1048576`` into a number of bytes."""
    match = _SIZE_PATTERN.match(value)
    if not match:
        raise ConfigurationError(f"Invalid size value: {value!r}")
    number, unit, _ = match.groups()
    return int(float(number) * _SIZE_UNITS[unit.upper()])


def _parse_bool(key: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"{key} must be a boolean, got {value!r}")


def _parse_int(key: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}") from exc


def _parse_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_variants(value: str) -> Tuple[VariantSpec, ...]:
    """Parse ``thumbnail=256,small=512,full`` into variant specs."""
    variants = []
    for item in _parse_list(value):
        if "=" in item:
            name, raw_bound = item.split("=", 1)
            bound = raw_bound.strip().lower()
            max_dimension = None if bound in {"", "none", "full"} else _parse_int(name, bound)
            variants.append(VariantSpec(name.strip(), max_dimension))
        else:
            defaults = {variant.name: variant for variant in DEFAULT_VARIANTS}
            variants.append(defaults.get(item, VariantSpec(item, None)))
    return tuple(variants)


def read_env_file(path: Path) -> Dict[str, str]:
    values: Dict[str, str] = {}
    if not path.exists():
        return values
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            if "=" not in stripped:
                continue
            key, raw_value = stripped.split("=", 1)
            values[key.strip()] = raw_value.strip().strip('"').strip("'")
    except OSError:
        logger.debug("Unable to read env file %s", path, exc_info=True)
    return values


def load_config(
    env: Optional[Mapping[str, str]] = None,
    env_file: Optional[Path] = Path(".env"),
    base: Optional[TranscoderConfig] = None,
) -> TranscoderConfig:
    """Build the configuration from defaults, a ``.env`` file and the environment.

    Explicit environment variables win over the ``.env`` file, which wins over
    the defaults (or ``base`` when given).
    """
    values: Dict[str, str] = {}
    if env_file is not None:
        values.update(read_env_file(env_file))
    values.update(os.environ if env is None else env)

    config = base or TranscoderConfig()
    changes: Dict[str, object] = {}

    def get(key: str) -> Optional[str]:
        raw = values.get(key)
        if raw is None or not raw.strip():
            return None
        return raw

    try:
        if (raw := get("IMAGE_DRIVERS")) is not None:
            changes["drivers"] = tuple(DriverId.parse(item) for item in _parse_list(raw))
        if (raw := get("IMAGE_FORMATS")) is not None:
            changes["formats"] = tuple(ImageFormat.parse(item) for item in _parse_list(raw))
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc
    if (raw := get("IMAGE_VARIANTS")) is not None:
        changes["variants"] = parse_variants(raw)
    if (raw := get("IMAGEMAGICK_BINARY")) is not None:
        changes["imagemagick_binary"] = raw.strip()
    if (raw := get("IMAGE_NOTIFY_WEBHOOK")) is not None:
        changes["webhook_url"] = raw.strip()

    fallback_changes: Dict[str, object] = {}
    if (raw := get("IMAGE_FALLBACK_ENABLED")) is not None:
        fallback_changes["enabled"] = _parse_bool("IMAGE_FALLBACK_ENABLED", raw)
    if (raw := get("IMAGE_FALLBACK_MAX_ATTEMPTS")) is not None:
        fallback_changes["max_attempts"] = _parse_int("IMAGE_FALLBACK_MAX_ATTEMPTS", raw)
    if fallback_changes:
        changes["fallback"] = replace(config.fallback, **fallback_changes)

    limit_changes: Dict[str, object] = {}
    if (raw := get("IMAGE_MAX_WIDTH")) is not None:
        limit_changes["max_width"] = _parse_int("IMAGE_MAX_WIDTH", raw)
    if (raw := get("IMAGE_MAX_HEIGHT")) is not None:
        limit_changes["max_height"] = _parse_int("IMAGE_MAX_HEIGHT", raw)
    if (raw := get("IMAGE_AREA_LIMIT")) is not None:
        limit_changes["max_area"] = _parse_int("IMAGE_AREA_LIMIT", raw)
    if (raw := get("IMAGE_MEMORY_LIMIT")) is not None:
        limit_changes["max_memory"] = parse_byte_size(raw)
    if (raw := get("IMAGE_MAX_SOURCE_BYTES")) is not None:
        limit_changes["max_source_bytes"] = parse_byte_size(raw)
    if limit_changes:
        changes["limits"] = replace(config.limits, **limit_changes)

    cache_changes: Dict[str, object] = {}
    if (raw := get("IMAGE_CACHE_ENABLED")) is not None:
        cache_changes["enabled"] = _parse_bool("IMAGE_CACHE_ENABLED", raw)
    if (raw := get("IMAGE_CACHE_DIR")) is not None:
        cache_changes["directory"] = Path(raw.strip())
    if (raw := get("IMAGE_CACHE_TTL")) is not None:
        cache_changes["ttl"] = _parse_int("IMAGE_CACHE_TTL", raw)
    if (raw := get("IMAGE_CACHE_HASH")) is not None:
        algo = raw.strip().lower()
        if algo not in {"md5", "sha1", "sha256"}:
            raise ConfigurationError(f"Unsupported IMAGE_CACHE_HASH: {raw!r}")
        cache_changes["hash_algo"] = algo
    if (raw := get("IMAGE_CACHE_COMPRESS")) is not None:
        cache_changes["compress"] = _parse_bool("IMAGE_CACHE_COMPRESS", raw)
    if cache_changes:
        changes["cache"] = replace(config.cache, **cache_changes)

    if not changes:
        return config
    return replace(config, **changes)
