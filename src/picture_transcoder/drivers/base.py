from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

from ..errors import TranscodingErrorKind, TranscodingFailure
from ..models import DriverId, ImageFormat, Size

logger = logging.getLogger(__name__)

LIMIT_KINDS = ("area", "width", "height")


@dataclass(frozen=True, slots=True)
class EncodeOptions:
    size: Optional[Size] = None
    quality: Optional[int] = None
    auto_orient: bool = True
    blending_color: str = "ffffff"

    @property
    def background_rgb(self) -> Tuple[int, int, int]:
        value = self.blending_color
        return (int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16))


@dataclass(frozen=True, slots=True)
class EncodeResult:
    """Outcome of a single encode attempt: either ``data`` or ``failure`` is set."""

    data: Optional[bytes] = None
    failure: Optional[TranscodingFailure] = None

    @classmethod
    def ok(cls, data: bytes) -> "EncodeResult":
        return cls(data=data)

    @classmethod
    def failed(cls, failure: TranscodingFailure) -> "EncodeResult":
        return cls(failure=failure)

    @property
    def succeeded(self) -> bool:
        return self.failure is None


class ImageDriver(ABC):
    """A codec backend able to decode source bytes and encode some formats."""

    driver_id: DriverId
    failure_kind: TranscodingErrorKind

    @abstractmethod
    def is_available(self) -> bool:
        """Probe the host for the backend without raising."""

    @abstractmethod
    def encode(self, data: bytes, fmt: ImageFormat, options: EncodeOptions) -> bytes:
        """Decode ``data``, resize to ``options.size`` and encode as ``fmt``."""

    @abstractmethod
    def read_size(self, data: bytes) -> Size:
        """Fully decode ``data`` and report its dimensions."""

    def current_limit(self, kind: str) -> Optional[int]:
        """Live ceiling enforced by the backend itself, ``None`` when it has none."""
        return None

    @property
    def name(self) -> str:
        return self.driver_id.value

    def try_encode(self, data: bytes, fmt: ImageFormat, options: EncodeOptions) -> EncodeResult:
        context = {"format": fmt.value, "size": str(options.size) if options.size else None}
        try:
            encoded = self.encode(data, fmt, options)
        except TranscodingFailure as failure:
            failure.context.update({key: value for key, value in context.items() if key not in failure.context})
            return EncodeResult.failed(failure)
        except Exception as exc:  # noqa: BLE001 - any backend error becomes a recorded attempt
            logger.debug("Driver %s raised while encoding %s", self.name, fmt.value, exc_info=True)
            return EncodeResult.failed(
                TranscodingFailure.encoding_failed(
                    self.failure_kind,
                    self.name,
                    f"{type(exc).__name__}: {exc}",
                    context,
                )
            )
        if not encoded:
            return EncodeResult.failed(TranscodingFailure.empty_output(self.name, context))
        return EncodeResult.ok(encoded)
