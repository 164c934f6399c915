from .config import CacheSettings, DriverLimits, FallbackSettings, ResourceLimits, TranscoderConfig, load_config
from .drivers.registry import DriverCapabilityRegistry
from .errors import ConfigurationError, NoDriversAvailableError, Severity, TranscodingErrorKind, TranscodingFailure
from .image_processing.catalog import OptimizedVariantCatalog, build_catalog
from .image_processing.dimensions import DimensionAnalyzer
from .image_processing.limits import ResourceLimitGuard
from .image_processing.orchestrator import TranscodingOrchestrator
from .jobs import JobOutcome, MaterializeJob
from .models import (
    DriverId,
    ImageFormat,
    MaterializeReport,
    OptimizedVariant,
    Size,
    SourceImage,
    TranscodeResult,
    VariantSpec,
)

__all__ = [
    "CacheSettings",
    "ConfigurationError",
    "DimensionAnalyzer",
    "DriverCapabilityRegistry",
    "DriverId",
    "DriverLimits",
    "FallbackSettings",
    "ImageFormat",
    "JobOutcome",
    "MaterializeJob",
    "MaterializeReport",
    "NoDriversAvailableError",
    "OptimizedVariant",
    "OptimizedVariantCatalog",
    "ResourceLimitGuard",
    "ResourceLimits",
    "Severity",
    "Size",
    "SourceImage",
    "TranscodeResult",
    "TranscoderConfig",
    "TranscodingErrorKind",
    "TranscodingFailure",
    "TranscodingOrchestrator",
    "VariantSpec",
    "build_catalog",
    "load_config",
]
