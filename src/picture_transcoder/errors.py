from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank


_SEVERITY_ORDER = (Severity.INFO, Severity.WARNING, Severity.ERROR, Severity.CRITICAL)


class TranscodingErrorKind(str, Enum):
    """Stable failure tags emitted by the transcoding subsystem."""

    IMAGICK_ENCODING_FAILED = "imagick_encoding_failed"
    GD_ENCODING_FAILED = "gd_encoding_failed"
    PILLOW_ENCODING_FAILED = "pillow_encoding_failed"
    OPENCV_ENCODING_FAILED = "opencv_encoding_failed"
    DRIVER_NOT_AVAILABLE = "driver_not_available"
    EMPTY_OUTPUT = "empty_output"
    RESOURCE_LIMIT_EXCEEDED = "resource_limit_exceeded"
    UNSUPPORTED_FORMAT = "unsupported_format"
    INVALID_SOURCE = "invalid_source"
    ALL_DRIVERS_FAILED = "all_drivers_failed"
    MEMORY_LIMIT_EXCEEDED = "memory_limit_exceeded"
    IMAGE_TOO_LARGE = "image_too_large"

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]

    @property
    def severity(self) -> Severity:
        if self in _CRITICAL_KINDS:
            return Severity.CRITICAL
        if self in (TranscodingErrorKind.ALL_DRIVERS_FAILED, TranscodingErrorKind.DRIVER_NOT_AVAILABLE):
            return Severity.ERROR
        if self in (
            TranscodingErrorKind.IMAGICK_ENCODING_FAILED,
            TranscodingErrorKind.PILLOW_ENCODING_FAILED,
            TranscodingErrorKind.OPENCV_ENCODING_FAILED,
            TranscodingErrorKind.UNSUPPORTED_FORMAT,
        ):
            return Severity.WARNING
        return Severity.INFO

    @property
    def should_trigger_fallback(self) -> bool:
        return self in (
            TranscodingErrorKind.IMAGICK_ENCODING_FAILED,
            TranscodingErrorKind.PILLOW_ENCODING_FAILED,
            TranscodingErrorKind.OPENCV_ENCODING_FAILED,
            TranscodingErrorKind.EMPTY_OUTPUT,
            TranscodingErrorKind.UNSUPPORTED_FORMAT,
            TranscodingErrorKind.DRIVER_NOT_AVAILABLE,
        )

    @property
    def is_fatal(self) -> bool:
        """Failures tied to the input itself; no other backend can do better."""
        return self in _CRITICAL_KINDS or self is TranscodingErrorKind.INVALID_SOURCE

    @property
    def is_retryable(self) -> bool:
        if self.is_fatal:
            return False
        return self is not TranscodingErrorKind.ALL_DRIVERS_FAILED


_CRITICAL_KINDS = frozenset(
    {
        TranscodingErrorKind.RESOURCE_LIMIT_EXCEEDED,
        TranscodingErrorKind.MEMORY_LIMIT_EXCEEDED,
        TranscodingErrorKind.IMAGE_TOO_LARGE,
    }
)

_DESCRIPTIONS = {
    TranscodingErrorKind.IMAGICK_ENCODING_FAILED: "Encoding with ImageMagick failed",
    TranscodingErrorKind.GD_ENCODING_FAILED: "Encoding with GD failed",
    TranscodingErrorKind.PILLOW_ENCODING_FAILED: "Encoding with Pillow failed",
    TranscodingErrorKind.OPENCV_ENCODING_FAILED: "Encoding with OpenCV failed",
    TranscodingErrorKind.DRIVER_NOT_AVAILABLE: "Image driver not available",
    TranscodingErrorKind.EMPTY_OUTPUT: "Encoding produced an empty result",
    TranscodingErrorKind.RESOURCE_LIMIT_EXCEEDED: "Resource limits exceeded",
    TranscodingErrorKind.UNSUPPORTED_FORMAT: "Image format not supported",
    TranscodingErrorKind.INVALID_SOURCE: "Invalid image source",
    TranscodingErrorKind.ALL_DRIVERS_FAILED: "All available drivers failed",
    TranscodingErrorKind.MEMORY_LIMIT_EXCEEDED: "Memory limit exceeded",
    TranscodingErrorKind.IMAGE_TOO_LARGE: "Image too large to be processed",
}


class ConfigurationError(ValueError):
    """Raised when transcoder configuration is missing or inconsistent."""


class TranscodingFailure(Exception):
    """Structured transcoding error, meant for logs and alerting rather than end users."""

    def __init__(
        self,
        kind: TranscodingErrorKind,
        driver: str,
        message: str = "",
        *,
        fallback_driver: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.kind = kind
        self.driver = driver
        self.fallback_driver = fallback_driver
        self.context: Dict[str, Any] = dict(context or {})
        self.detail = message or kind.description
        super().__init__(self._compose())

    def _compose(self) -> str:
        text = self.detail
        if self.driver:
            text += f" (Driver: {self.driver})"
        if self.fallback_driver:
            text += f" (Fallback attempted: {self.fallback_driver})"
        return text

    def __str__(self) -> str:
        return self._compose()

    @property
    def severity(self) -> Severity:
        return self.kind.severity

    @property
    def should_trigger_fallback(self) -> bool:
        return self.kind.should_trigger_fallback

    @property
    def description(self) -> str:
        return self.kind.description

    @property
    def is_retryable(self) -> bool:
        """Whether re-running the same work later may succeed.

        An exhausted call is retryable when at least one of the attempts it
        aggregates failed for a transient reason.
        """
        if self.kind is TranscodingErrorKind.ALL_DRIVERS_FAILED:
            kinds = []
            for attempt in self.context.get("attempts", []):
                try:
                    kinds.append(TranscodingErrorKind(attempt.get("kind")))
                except ValueError:
                    continue
            return any(kind.is_retryable for kind in kinds)
        return self.kind.is_retryable

    def with_fallback(self, fallback_driver: str) -> "TranscodingFailure":
        self.fallback_driver = fallback_driver
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.kind.value,
            "driver_used": self.driver,
            "fallback_attempted": self.fallback_driver,
            "message": str(self),
            "context": self.context,
            "severity": self.severity.value,
        }

    @classmethod
    def encoding_failed(
        cls,
        kind: TranscodingErrorKind,
        driver: str,
        message: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> "TranscodingFailure":
        return cls(kind, driver, message, context=context)

    @classmethod
    def empty_output(cls, driver: str, context: Optional[Mapping[str, Any]] = None) -> "TranscodingFailure":
        return cls(
            TranscodingErrorKind.EMPTY_OUTPUT,
            driver,
            "Image encoding resulted in empty output (0 bytes)",
            context=context,
        )

    @classmethod
    def unsupported_format(
        cls, fmt: str, driver: str, context: Optional[Mapping[str, Any]] = None
    ) -> "TranscodingFailure":
        return cls(
            TranscodingErrorKind.UNSUPPORTED_FORMAT,
            driver,
            f"Format '{fmt}' is not supported by driver '{driver}'",
            context=context,
        )

    @classmethod
    def driver_not_available(cls, driver: str, context: Optional[Mapping[str, Any]] = None) -> "TranscodingFailure":
        return cls(
            TranscodingErrorKind.DRIVER_NOT_AVAILABLE,
            driver,
            f"Driver '{driver}' is not available on this host",
            context=context,
        )

    @classmethod
    def resource_limit_exceeded(
        cls, driver: str, limit_type: str, context: Optional[Mapping[str, Any]] = None
    ) -> "TranscodingFailure":
        return cls(
            TranscodingErrorKind.RESOURCE_LIMIT_EXCEEDED,
            driver,
            f"Resource limit exceeded: {limit_type}",
            context=context,
        )

    @classmethod
    def memory_limit_exceeded(cls, driver: str, context: Optional[Mapping[str, Any]] = None) -> "TranscodingFailure":
        return cls(
            TranscodingErrorKind.MEMORY_LIMIT_EXCEEDED,
            driver,
            "Estimated decode memory exceeds the configured ceiling",
            context=context,
        )

    @classmethod
    def image_too_large(cls, driver: str, context: Optional[Mapping[str, Any]] = None) -> "TranscodingFailure":
        return cls(
            TranscodingErrorKind.IMAGE_TOO_LARGE,
            driver,
            "Source image exceeds the maximum accepted byte size",
            context=context,
        )

    @classmethod
    def invalid_source(
        cls, driver: str, message: str = "Unable to determine image dimensions", context: Optional[Mapping[str, Any]] = None
    ) -> "TranscodingFailure":
        return cls(TranscodingErrorKind.INVALID_SOURCE, driver, message, context=context)

    @classmethod
    def no_drivers_available(cls, configured: Iterable[str]) -> "NoDriversAvailableError":
        return NoDriversAvailableError(configured)

    @classmethod
    def all_drivers_failed(
        cls, attempts: Iterable[Mapping[str, Any]], context: Optional[Mapping[str, Any]] = None
    ) -> "TranscodingFailure":
        attempt_list = [dict(item) for item in attempts]
        names = ", ".join(f"{item.get('driver')}/{item.get('format')}" for item in attempt_list) or "none"
        merged = dict(context or {})
        merged["attempts"] = attempt_list
        return cls(
            TranscodingErrorKind.ALL_DRIVERS_FAILED,
            "Multiple",
            f"All available drivers failed. Attempts: {names}",
            context=merged,
        )


class NoDriversAvailableError(TranscodingFailure):
    """Fatal startup condition: no configured backend exists on this host."""

    def __init__(self, configured: Iterable[str]) -> None:
        super().__init__(
            TranscodingErrorKind.ALL_DRIVERS_FAILED,
            "",
            "No image processing drivers available",
            context={"error": "No image processing drivers available", "configured": list(configured)},
        )
